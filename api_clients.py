"""Factory function for creating Google API service clients."""

from googleapiclient.discovery import build, Resource
from googleapiclient.errors import HttpError
from google.auth.credentials import Credentials

import config
from utils.logger import get_logger
from utils.error_handler import APIError, AuthenticationError

logger = get_logger()

# Cache for built services to avoid rebuilding them unnecessarily
_service_cache: dict[tuple[str, str, int], Resource] = {}


def build_service(service_name: str, version: str, credentials: Credentials) -> Resource:
    """Builds and returns a Google API service client.

    Uses a cached service object if one exists for the same service, version
    and credentials object.

    Args:
        service_name: The name of the service (e.g., 'sheets', 'drive').
        version: The version of the service (e.g., 'v4', 'v3').
        credentials: User OAuth or service account credentials.

    Returns:
        Resource: The Google API service client resource object.

    Raises:
        AuthenticationError: If no usable credentials are provided.
        APIError: If the service fails to build due to API issues.
    """
    if credentials is None:
        logger.error(f"Attempted to build service '{service_name}' without credentials.")
        raise AuthenticationError(f"No credentials provided for service '{service_name}'. Please authenticate.")
    # Service account credentials only become valid after their first refresh
    if credentials.expired and not getattr(credentials, 'refresh_token', None) and not hasattr(credentials, 'service_account_email'):
        logger.error(f"Attempted to build service '{service_name}' with expired credentials.")
        raise AuthenticationError(f"Expired credentials provided for service '{service_name}'. Please re-authenticate.")

    cache_key = (service_name, version, id(credentials))
    if cache_key in _service_cache:
        logger.debug(f"Using cached service client for {service_name} {version}")
        return _service_cache[cache_key]

    logger.debug(f"Building new service client for {service_name} {version}...")
    try:
        service = build(service_name, version, credentials=credentials, cache_discovery=False)
        logger.info(f"Successfully built service client for {service_name} {version}.")
        _service_cache[cache_key] = service
        return service
    except HttpError as e:
        logger.error(
            f"Failed to build service '{service_name}' {version} due to HTTP error: {e.resp.status} {e.content}",
            exc_info=config.DEBUG
        )
        if e.resp.status in [401, 403]:
            raise AuthenticationError(
                f"Authentication/Authorization error building service '{service_name}': {e.resp.status}. "
                "Check permissions and credentials."
            ) from e
        raise APIError(
            f"Failed to build service '{service_name}' {version} due to HTTP error {e.resp.status}.",
            status_code=e.resp.status,
            service=service_name
        ) from e
    except Exception as e:
        logger.error(
            f"An unexpected error occurred while building service '{service_name}' {version}: {e}",
            exc_info=config.DEBUG
        )
        raise APIError(f"Unexpected error building service '{service_name}': {e}", service=service_name) from e
