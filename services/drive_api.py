"""Wrapper for Google Drive API interactions (the blob store)."""

import io
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload

import config
from utils.logger import get_logger
from utils.error_handler import APIError, FileUnavailableError, ResolutionError
from utils.retry import retry_on_exception
from api_clients import build_service

logger = get_logger()

# Define common retryable errors for Drive
RETRYABLE_DRIVE_ERRORS = (HttpError, TimeoutError, ConnectionError)
RETRYABLE_STATUS_CODES = (403, 429, 500, 502, 503, 504)  # Include 403 for potential rate limits

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

# Drive ids are long runs of word characters and hyphens
FILE_ID_PATTERN = re.compile(r"[-\w]{25,}")


def should_retry_drive(e: BaseException) -> bool:
    """Retries on rate limits (403/429), server errors (5xx) and network errors."""
    if isinstance(e, HttpError):
        return e.resp.status in RETRYABLE_STATUS_CODES
    return isinstance(e, (TimeoutError, ConnectionError))


# MIME types for Google Workspace documents and their export equivalents
GOOGLE_DOCS_MIME_TYPES: Dict[str, str] = {
    "application/vnd.google-apps.document": "text/plain",
    "application/vnd.google-apps.spreadsheet": "text/csv",
    "application/vnd.google-apps.drawing": "image/png",
}


def file_id_from_url(url: Optional[str]) -> Optional[str]:
    """Extracts a Drive file id from a URL-like string.

    The id is the longest run of at least 25 word/hyphen characters.
    Returns None when there is no such run.
    """
    if not url:
        return None
    matches = FILE_ID_PATTERN.findall(str(url))
    if not matches:
        return None
    return max(matches, key=len)


def generated_code_filename(timestamp: Any, email: str, problem_id: Any, extension: str) -> str:
    """Builds '<timestamp digits>_<sanitized email>_<problem id><ext>'."""
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat()
    formatted_timestamp = re.sub(r"[^0-9]", "-", str(timestamp))
    safe_email = str(email).replace("@", "-at-").replace(".", "-")
    return f"{formatted_timestamp}_{safe_email}_{problem_id}{extension}"


def _escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveService:
    """Provides methods to interact with the Google Drive API."""

    SERVICE_NAME = 'drive'
    VERSION = 'v3'

    def __init__(self, credentials: Any, service: Optional[Resource] = None):
        """Initializes the DriveService.

        Args:
            credentials: Google credentials used to build the Drive client.
            service: An already built Drive resource (skips building one).

        Raises:
            AuthenticationError: If credentials are invalid.
            APIError: If the Drive service cannot be built.
        """
        logger.debug("Initializing DriveService...")
        self.service: Resource = service if service is not None else build_service(self.SERVICE_NAME, self.VERSION, credentials)
        self._folder_cache: Dict[str, str] = {}
        logger.debug("DriveService initialized successfully.")

    def _api_error(self, action: str, e: HttpError) -> APIError:
        logger.error(f"Failed to {action}: {e.resp.status} {e.content}", exc_info=config.DEBUG)
        return APIError(f"Failed to {action}: {e.resp.status}", status_code=e.resp.status, service=self.SERVICE_NAME)

    @retry_on_exception(exceptions=RETRYABLE_DRIVE_ERRORS, max_attempts=3, retry_if=should_retry_drive)
    def _execute(self, request: Any) -> Any:
        return request.execute()

    def get_file_metadata(self, file_id: str, fields: str = "id, name, mimeType, parents, webViewLink") -> Dict[str, Any]:
        """Gets metadata for a specific file.

        Raises:
            APIError: If the API call fails after retries, including 404 Not Found.
        """
        logger.debug(f"Getting metadata for file ID: {file_id} with fields: {fields}")
        try:
            return self._execute(self.service.files().get(fileId=file_id, fields=fields, supportsAllDrives=True))
        except HttpError as e:
            raise self._api_error(f"get metadata for file {file_id}", e) from e

    def download_file_content(self, file_id: str) -> Tuple[Optional[str], bytes]:
        """Downloads or exports file content.

        Google Workspace documents are exported to their mapped MIME type.

        Returns:
            A tuple of (content MIME type, content bytes).

        Raises:
            APIError: If the API call fails after retries.
            FileUnavailableError: If the file type cannot be downloaded.
        """
        metadata = self.get_file_metadata(file_id, fields="id, name, mimeType")
        original_mime_type = metadata.get('mimeType')
        file_name = metadata.get('name', 'unknown_file')
        target_mime_type: Optional[str] = original_mime_type

        if original_mime_type in GOOGLE_DOCS_MIME_TYPES:
            target_mime_type = GOOGLE_DOCS_MIME_TYPES[original_mime_type]
            logger.debug(f"Exporting Google Workspace file '{file_name}' as {target_mime_type}...")
            request = self.service.files().export_media(fileId=file_id, mimeType=target_mime_type)
        elif original_mime_type and original_mime_type.startswith('application/vnd.google-apps'):
            logger.warning(f"Cannot download content for Google Workspace type {original_mime_type} ({file_id}).")
            raise FileUnavailableError(f"Unsupported Google Workspace type for download: {original_mime_type}")
        else:
            request = self.service.files().get_media(fileId=file_id, supportsAllDrives=True)

        try:
            fh = io.BytesIO()
            downloader = MediaIoBaseDownload(fh, request)
            done = False
            while not done:
                status, done = downloader.next_chunk()
                if config.DEBUG and status:
                    logger.debug(f"Download progress: {int(status.progress() * 100)}%")
        except HttpError as e:
            raise self._api_error(f"download file {file_id}", e) from e

        content = fh.getvalue()
        logger.info(f"Downloaded {len(content)} bytes for file '{file_name}' ({file_id}), MIME type {target_mime_type}")
        return target_mime_type, content

    def read_text(self, file_id: str) -> str:
        """Returns the content of a text file exactly as stored, decoded as UTF-8."""
        _, content = self.download_file_content(file_id)
        return content.decode('utf-8')

    def read_text_from_url(self, url: str) -> str:
        """Reads a text file given its Drive URL.

        Raises:
            ResolutionError: If the URL does not contain a file id.
            APIError: If the download fails.
        """
        file_id = file_id_from_url(url)
        if not file_id:
            raise ResolutionError(f"Invalid Drive URL format: {url}")
        return self.read_text(file_id)

    def find_files(self, name: Optional[str] = None, folder_id: Optional[str] = None,
                   name_prefix: Optional[str] = None, mime_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Lists non-trashed files by exact name or name prefix, optionally inside a folder."""
        clauses = ["trashed = false"]
        if name is not None:
            clauses.append(f"name = '{_escape_query(name)}'")
        if name_prefix is not None:
            # Drive 'contains' on name is a prefix match
            clauses.append(f"name contains '{_escape_query(name_prefix)}'")
        if folder_id:
            clauses.append(f"'{folder_id}' in parents")
        if mime_type:
            clauses.append(f"mimeType = '{mime_type}'")
        query = " and ".join(clauses)

        files: List[Dict[str, Any]] = []
        page_token = None
        try:
            while True:
                response = self._execute(self.service.files().list(
                    q=query,
                    spaces='drive',
                    fields='nextPageToken, files(id, name, mimeType, createdTime, webViewLink)',
                    orderBy='createdTime',
                    pageSize=config.DEFAULT_PAGE_SIZE,
                    pageToken=page_token,
                ))
                files.extend(response.get('files', []))
                page_token = response.get('nextPageToken')
                if not page_token:
                    break
        except HttpError as e:
            raise self._api_error(f"list files ({query})", e) from e
        logger.debug(f"Found {len(files)} files for query: {query}")
        return files

    def get_or_create_folder(self, folder_name: str) -> str:
        """Returns the id of the folder with this name, creating it if needed."""
        if folder_name in self._folder_cache:
            return self._folder_cache[folder_name]
        folders = self.find_files(name=folder_name, mime_type=FOLDER_MIME_TYPE)
        if folders:
            folder_id = folders[0]['id']
            logger.debug(f"Found existing folder: {folder_name}")
        else:
            try:
                folder = self._execute(self.service.files().create(
                    body={'name': folder_name, 'mimeType': FOLDER_MIME_TYPE}, fields='id'
                ))
            except HttpError as e:
                raise self._api_error(f"create folder {folder_name}", e) from e
            folder_id = folder['id']
            logger.info(f"Created new folder: {folder_name}")
        self._folder_cache[folder_name] = folder_id
        return folder_id

    def create_file(self, name: str, content: bytes | str, mime_type: str = 'text/plain',
                    folder_id: Optional[str] = None) -> Dict[str, Any]:
        """Creates a file and returns its id and webViewLink."""
        data = content.encode('utf-8') if isinstance(content, str) else content
        body: Dict[str, Any] = {'name': name}
        if folder_id:
            body['parents'] = [folder_id]
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=mime_type, resumable=False)
        try:
            created = self._execute(self.service.files().create(
                body=body, media_body=media, fields='id, name, webViewLink', supportsAllDrives=True
            ))
        except HttpError as e:
            raise self._api_error(f"create file {name}", e) from e
        logger.info(f"Created file '{name}' ({created.get('id')}, {len(data)} bytes)")
        return created

    def update_file(self, file_id: str, content: bytes | str, mime_type: str = 'text/plain') -> Dict[str, Any]:
        """Replaces a file's content; the file keeps its id."""
        data = content.encode('utf-8') if isinstance(content, str) else content
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=mime_type, resumable=False)
        try:
            updated = self._execute(self.service.files().update(
                fileId=file_id, media_body=media, fields='id, name, webViewLink', supportsAllDrives=True
            ))
        except HttpError as e:
            raise self._api_error(f"update file {file_id}", e) from e
        logger.debug(f"Updated file {file_id} ({len(data)} bytes)")
        return updated

    def delete_file(self, file_id: str) -> None:
        try:
            self._execute(self.service.files().delete(fileId=file_id, supportsAllDrives=True))
        except HttpError as e:
            raise self._api_error(f"delete file {file_id}", e) from e
        logger.debug(f"Deleted file {file_id}")

    def save_generated_code(self, timestamp: Any, email: str, problem_id: Any, code: str,
                            folder_name: str, extension: str = '.py') -> str:
        """Saves generated code into the given folder and returns the file URL."""
        folder_id = self.get_or_create_folder(folder_name)
        filename = generated_code_filename(timestamp, email, problem_id, extension)
        created = self.create_file(filename, code, mime_type='text/x-python', folder_id=folder_id)
        return created.get('webViewLink') or f"https://drive.google.com/file/d/{created['id']}/view"
