"""Header-addressed access to the master sheet, the problem catalog and form responses."""

from typing import Any, Dict, List, Mapping, Optional, Sequence

import config
from config import Settings
from core.models import INT_FIELDS, Status, SubmissionRecord
from services.sheets_api import SheetsService
from utils.logger import get_logger
from utils.error_handler import ConfigError

logger = get_logger()

# Fields copied from a form response into a new master row
INTAKE_FIELDS = ("timestamp", "email", "problem", "flowchart_url")


def extract_problem_code(raw: Any) -> str:
    """Returns the canonical problem code: the first whitespace-delimited token.

    "FCP045 - Loops and Conditionals" -> "FCP045"

    Unlike a plain split on the first space, leading blanks and tabs are
    ignored, so "  FCP045 x" still gives "FCP045" and not an empty code.
    """
    if raw is None:
        return ""
    tokens = str(raw).split()
    return tokens[0] if tokens else ""


def _header_map(header_row: Sequence[Any], required: Mapping[str, str], sheet_name: str) -> Dict[str, int]:
    """Maps each required field to its 1-based column by header name.

    Raises:
        ConfigError: If a header is missing from the sheet.
    """
    positions = {str(h).strip(): i + 1 for i, h in enumerate(header_row) if str(h).strip()}
    missing = [header for header in required.values() if header not in positions]
    if missing:
        raise ConfigError(f"Sheet '{sheet_name}' is missing column(s): {', '.join(missing)}")
    return {name: positions[header] for name, header in required.items()}


def _cell(row: Sequence[Any], column: int) -> Any:
    return row[column - 1] if column - 1 < len(row) else ""


def _to_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(float(str(value).replace(",", "")))
    except ValueError:
        return None


def _to_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, Status):
        return value.value
    return value


class SubmissionStore:
    """Reads and writes SubmissionRecords in the master sheet."""

    def __init__(self, sheets: SheetsService, settings: Settings):
        self.sheets = sheets
        self.sheet_name = settings.master_sheet
        self.columns = dict(settings.master_columns)
        unknown = set(self.columns) - set(SubmissionRecord.field_names())
        if unknown:
            raise ConfigError(f"Unknown master sheet field(s): {', '.join(sorted(unknown))}")
        self._positions: Optional[Dict[str, int]] = None

    def ensure_master_sheet(self) -> bool:
        """Creates the master sheet with all configured headers if it does not exist."""
        return self.sheets.ensure_sheet(self.sheet_name, list(self.columns.values()))

    def _load_positions(self, header_row: Sequence[Any]) -> Dict[str, int]:
        self._positions = _header_map(header_row, self.columns, self.sheet_name)
        return self._positions

    def _get_positions(self) -> Dict[str, int]:
        if self._positions is None:
            self._load_positions(self.sheets.get_row(self.sheet_name, 1))
        return self._positions

    def _record_from_row(self, row_number: int, row: Sequence[Any], positions: Dict[str, int]) -> SubmissionRecord:
        values: Dict[str, Any] = {}
        for name, column in positions.items():
            raw = _cell(row, column)
            if name == "status":
                values[name] = Status.parse(raw)
            elif name in INT_FIELDS:
                values[name] = _to_int(raw)
            else:
                values[name] = "" if raw is None else str(raw)
        return SubmissionRecord(row_number=row_number, **values)

    def load_records(self) -> List[SubmissionRecord]:
        """Returns every non-blank data row, in sheet order."""
        values = self.sheets.get_values(self.sheet_name)
        if not values:
            raise ConfigError(f"Sheet '{self.sheet_name}' has no header row")
        positions = self._load_positions(values[0])
        records = []
        for index, row in enumerate(values[1:], start=2):
            if not any(str(cell).strip() for cell in row):
                continue
            records.append(self._record_from_row(index, row, positions))
        logger.debug(f"Loaded {len(records)} records from '{self.sheet_name}'.")
        return records

    def get_record(self, row_number: int) -> SubmissionRecord:
        row = self.sheets.get_row(self.sheet_name, row_number)
        return self._record_from_row(row_number, row, self._get_positions())

    def current_status(self, row_number: int) -> Optional[Status]:
        """Re-reads the status cell of one row."""
        positions = self._get_positions()
        row = self.sheets.get_row(self.sheet_name, row_number)
        return Status.parse(_cell(row, positions["status"]))

    def update(self, row_number: int, **fields: Any) -> None:
        """Writes the named fields of one row. The status cell is written last.

        Raises:
            ConfigError: If a field is not mapped to a column.
        """
        positions = self._get_positions()
        unknown = [name for name in fields if name not in positions]
        if unknown:
            raise ConfigError(f"No column configured for field(s): {', '.join(unknown)}")
        ordered = sorted(fields, key=lambda name: name == "status")
        cells = {(row_number, positions[name]): _to_cell(fields[name]) for name in ordered}
        self.sheets.update_cells(self.sheet_name, cells)
        if config.DEBUG:
            logger.debug(f"Row {row_number}: wrote {', '.join(ordered)}")

    def append_new(self, timestamp: Any, email: str, problem: str, flowchart_url: str) -> None:
        """Appends a submission with status NEW."""
        positions = self._get_positions()
        row: List[Any] = [""] * max(positions.values())
        values = {
            "timestamp": timestamp, "email": email, "problem": problem,
            "flowchart_url": flowchart_url, "status": Status.NEW,
        }
        for name, value in values.items():
            row[positions[name] - 1] = _to_cell(value)
        self.sheets.append_row(self.sheet_name, row)


class ProblemCatalog:
    """Problem code -> judge problem id, read from the meta sheet."""

    def __init__(self, entries: Mapping[str, str]):
        self.entries = dict(entries)

    @classmethod
    def load(cls, sheets: SheetsService, settings: Settings) -> "ProblemCatalog":
        values = sheets.get_values(settings.meta_sheet)
        if not values:
            raise ConfigError(f"Sheet '{settings.meta_sheet}' has no header row")
        positions = _header_map(
            values[0], {"code": config.META_CODE_COLUMN, "id": config.META_ID_COLUMN}, settings.meta_sheet
        )
        entries = {}
        for row in values[1:]:
            code = str(_cell(row, positions["code"])).strip()
            problem_id = str(_cell(row, positions["id"])).strip()
            if code and problem_id:
                entries[code] = problem_id
        logger.debug(f"Loaded {len(entries)} problems from '{settings.meta_sheet}'.")
        return cls(entries)

    def lookup(self, code: str) -> Optional[str]:
        return self.entries.get(code)

    def __len__(self) -> int:
        return len(self.entries)


def load_form_responses(sheets: SheetsService, settings: Settings) -> List[Dict[str, str]]:
    """Reads the linked form-responses sheet.

    Columns are found by the same headers as in the master sheet.
    """
    values = sheets.get_values(settings.form_responses_sheet)
    if not values:
        return []
    required = {name: settings.master_columns[name] for name in INTAKE_FIELDS}
    positions = _header_map(values[0], required, settings.form_responses_sheet)
    responses = []
    for row in values[1:]:
        response = {name: str(_cell(row, column)).strip() for name, column in positions.items()}
        if any(response.values()):
            responses.append(response)
    return responses
