"""Handles authentication for Google APIs (OAuth installed-app flow or service account)."""

import os
from typing import Optional

from google.auth.credentials import Credentials as BaseCredentials
from google.auth.exceptions import GoogleAuthError, RefreshError
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

import config
from utils.logger import get_logger
from utils.error_handler import AuthenticationError

logger = get_logger()

OAUTH_LOCAL_PORT = 8081


def _load_service_account(path: str) -> BaseCredentials:
    """Loads service account credentials for unattended (scheduled) runs."""
    logger.info(f"Using service account credentials from {path}")
    if not os.path.exists(path):
        logger.critical(f"Service account file not found: {path}")
        raise FileNotFoundError(f"{path} not found.")
    try:
        return service_account.Credentials.from_service_account_file(path, scopes=config.SCOPES)
    except (ValueError, GoogleAuthError) as e:
        logger.error(f"Invalid service account file {path}: {e}", exc_info=config.DEBUG)
        raise AuthenticationError(f"Could not load service account credentials: {e}") from e


def _load_cached_token(token_file: str) -> Optional[Credentials]:
    if not os.path.exists(token_file):
        return None
    try:
        creds = Credentials.from_authorized_user_file(token_file, config.SCOPES)
        logger.debug(f"Loaded credentials from {token_file} (scopes: {creds.scopes})")
        return creds
    except ValueError as e:
        logger.warning(f"Error loading token file {token_file}: {e}. Proceeding with re-authentication.")
        return None


def _save_token(creds: Credentials, token_file: str) -> None:
    try:
        with open(token_file, "w") as fh:
            fh.write(creds.to_json())
        logger.debug(f"Token saved to {token_file}")
    except OSError as e:
        logger.warning(f"Failed to save token to {token_file}: {e}")


def _run_oauth_flow(client_secrets_file: str) -> Credentials:
    if not os.path.exists(client_secrets_file):
        logger.critical(f"{client_secrets_file} not found. Cannot initiate OAuth flow.")
        logger.critical("Download it from Google Cloud Console and place it in the project directory.")
        raise FileNotFoundError(f"{client_secrets_file} not found.")
    logger.info("No valid credentials found. Starting OAuth flow...")
    try:
        flow = InstalledAppFlow.from_client_secrets_file(client_secrets_file, config.SCOPES)
        creds = flow.run_local_server(port=OAUTH_LOCAL_PORT)
    except Exception as e:
        logger.error(f"OAuth flow failed unexpectedly: {e}", exc_info=config.DEBUG)
        raise AuthenticationError(f"OAuth flow failed: {e}") from e
    if not creds:
        raise AuthenticationError("OAuth flow completed but no credentials were obtained.")
    logger.info("Authentication successful.")
    return creds


def get_credentials(settings: config.Settings) -> BaseCredentials:
    """Gets Google API credentials.

    A service account is used when settings.service_account_file is set, so that
    scheduled batch polling can run without a browser. Otherwise the cached
    user token is used, refreshed if expired, or a new OAuth flow is run.

    Args:
        settings: Application settings.

    Returns:
        Credentials usable with googleapiclient.

    Raises:
        AuthenticationError: If authentication fails or is cancelled.
        FileNotFoundError: If the client secrets / service account file is missing.
    """
    if settings.service_account_file:
        return _load_service_account(settings.service_account_file)

    creds = _load_cached_token(config.TOKEN_FILE)
    if creds and creds.valid:
        logger.info("Credentials are valid. Using cached token.")
        return creds

    if creds and creds.expired and creds.refresh_token:
        logger.info("Credentials expired, attempting refresh...")
        try:
            creds.refresh(Request())
        except RefreshError as e:
            logger.error(f"Credentials refresh failed: {e}", exc_info=config.DEBUG)
            # Delete potentially corrupted token file and force re-auth on the next run
            if os.path.exists(config.TOKEN_FILE):
                os.remove(config.TOKEN_FILE)
            raise AuthenticationError("Failed to refresh token. Please re-authenticate.") from e
        logger.info("Credentials refreshed successfully.")
        _save_token(creds, config.TOKEN_FILE)
        return creds

    creds = _run_oauth_flow(config.CLIENT_SECRETS_FILE)
    _save_token(creds, config.TOKEN_FILE)
    return creds
