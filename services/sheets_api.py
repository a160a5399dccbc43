"""Wrapper for Google Sheets API interactions (the record store transport)."""

from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError

import config
from utils.logger import get_logger
from utils.error_handler import APIError
from utils.retry import retry_on_exception
from api_clients import build_service

logger = get_logger()

RETRYABLE_SHEETS_ERRORS = (HttpError, TimeoutError, ConnectionError)
RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


def should_retry_sheets(e: BaseException) -> bool:
    """Retries on quota (429), server errors (5xx) and network errors."""
    if isinstance(e, HttpError):
        return e.resp.status in RETRYABLE_STATUS_CODES
    return isinstance(e, (TimeoutError, ConnectionError))


def column_letter(index: int) -> str:
    """Converts a 1-based column index to A1 letters (1 -> A, 27 -> AA)."""
    if index < 1:
        raise ValueError(f"Column index must be >= 1, got {index}")
    letters = ""
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord('A') + remainder) + letters
    return letters


def a1_range(sheet_name: str, row: Optional[int] = None, column: Optional[int] = None) -> str:
    quoted = "'" + sheet_name.replace("'", "''") + "'"
    if row is None:
        return quoted
    return f"{quoted}!{column_letter(column or 1)}{row}"


class SheetsService:
    """Provides methods to read and write one Google spreadsheet."""

    SERVICE_NAME = 'sheets'
    VERSION = 'v4'

    def __init__(self, credentials: Any, spreadsheet_id: str, service: Optional[Resource] = None):
        """Initializes the SheetsService.

        Args:
            credentials: Google credentials used to build the Sheets client.
            spreadsheet_id: The spreadsheet holding all sheets used by the pipeline.
            service: An already built Sheets resource (skips building one).
        """
        logger.debug("Initializing SheetsService...")
        self.spreadsheet_id = spreadsheet_id
        self.service: Resource = service if service is not None else build_service(self.SERVICE_NAME, self.VERSION, credentials)
        logger.debug("SheetsService initialized successfully.")

    def _api_error(self, action: str, e: HttpError) -> APIError:
        logger.error(f"Failed to {action}: {e.resp.status} {e.content}", exc_info=config.DEBUG)
        return APIError(f"Failed to {action}: {e.resp.status}", status_code=e.resp.status, service=self.SERVICE_NAME)

    @retry_on_exception(exceptions=RETRYABLE_SHEETS_ERRORS, max_attempts=3, retry_if=should_retry_sheets)
    def _execute(self, request: Any) -> Any:
        return request.execute()

    def get_sheet_titles(self) -> Set[str]:
        try:
            meta = self._execute(self.service.spreadsheets().get(
                spreadsheetId=self.spreadsheet_id, fields='sheets.properties.title'
            ))
        except HttpError as e:
            raise self._api_error(f"read spreadsheet {self.spreadsheet_id}", e) from e
        return {s['properties']['title'] for s in meta.get('sheets', [])}

    def ensure_sheet(self, sheet_name: str, headers: Sequence[str]) -> bool:
        """Creates the sheet with a header row if it does not exist.

        Returns:
            True if the sheet was created.
        """
        if sheet_name in self.get_sheet_titles():
            return False
        try:
            self._execute(self.service.spreadsheets().batchUpdate(
                spreadsheetId=self.spreadsheet_id,
                body={'requests': [{'addSheet': {'properties': {'title': sheet_name}}}]},
            ))
        except HttpError as e:
            raise self._api_error(f"create sheet {sheet_name}", e) from e
        self.append_row(sheet_name, list(headers))
        logger.info(f"Created sheet '{sheet_name}' with {len(headers)} columns.")
        return True

    def get_values(self, sheet_name: str) -> List[List[Any]]:
        """Returns all rows of a sheet, header row first (formatted values)."""
        try:
            result = self._execute(self.service.spreadsheets().values().get(
                spreadsheetId=self.spreadsheet_id, range=a1_range(sheet_name)
            ))
        except HttpError as e:
            raise self._api_error(f"read sheet {sheet_name}", e) from e
        return result.get('values', [])

    def get_row(self, sheet_name: str, row_number: int) -> List[Any]:
        """Returns one row (1-based) of a sheet."""
        quoted = a1_range(sheet_name)
        try:
            result = self._execute(self.service.spreadsheets().values().get(
                spreadsheetId=self.spreadsheet_id, range=f"{quoted}!{row_number}:{row_number}"
            ))
        except HttpError as e:
            raise self._api_error(f"read row {row_number} of {sheet_name}", e) from e
        values = result.get('values', [])
        return values[0] if values else []

    def append_row(self, sheet_name: str, values: Sequence[Any]) -> None:
        try:
            self._execute(self.service.spreadsheets().values().append(
                spreadsheetId=self.spreadsheet_id,
                range=a1_range(sheet_name),
                valueInputOption='USER_ENTERED',
                insertDataOption='INSERT_ROWS',
                body={'values': [list(values)]},
            ))
        except HttpError as e:
            raise self._api_error(f"append row to {sheet_name}", e) from e

    def update_cells(self, sheet_name: str, cells: Dict[Tuple[int, int], Any]) -> None:
        """Writes individual cells in one request.

        Args:
            sheet_name: Target sheet.
            cells: Mapping of (row, column), both 1-based, to value. Written in insertion order.
        """
        if not cells:
            return
        data = [
            {'range': a1_range(sheet_name, row, column), 'values': [[value]]}
            for (row, column), value in cells.items()
        ]
        try:
            self._execute(self.service.spreadsheets().values().batchUpdate(
                spreadsheetId=self.spreadsheet_id,
                body={'valueInputOption': 'USER_ENTERED', 'data': data},
            ))
        except HttpError as e:
            raise self._api_error(f"update {len(cells)} cells in {sheet_name}", e) from e
