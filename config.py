"""Configuration settings for the flowchart judge."""

import os
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Final, List, Mapping, Optional

from utils.error_handler import ConfigError

# Debug flag: 1 = debug mode (verbose logging), 0 = production mode
DEBUG: Final[int] = int(os.environ.get("GRADER_DEBUG", "0"))

# --- Google API Settings ---

# Scopes required for Google APIs
# Ensure these match the scopes requested during the OAuth flow and enabled in GCP.
SCOPES: Final[List[str]] = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]

# --- File Paths ---
CLIENT_SECRETS_FILE: Final[str] = os.environ.get("CLIENT_SECRETS_PATH", "client_secrets.json")
_token_dir = os.path.dirname(CLIENT_SECRETS_FILE) if os.path.dirname(CLIENT_SECRETS_FILE) else '.'
TOKEN_FILE: Final[str] = os.path.join(_token_dir, "token.json")
LOG_DIR: Final[str] = "logs"
LOG_FILE: Final[str] = os.path.join(LOG_DIR, "flowchart_judge.log")

# --- Logging Configuration ---
LOG_LEVEL = logging.DEBUG if DEBUG else logging.INFO
# Structured log format: timestamp, level, logger, module.function:line, message
LOG_FORMAT = '%(asctime)s | %(levelname)s | %(name)s | %(module)s.%(funcName)s:%(lineno)d | %(message)s'

# Pagination size for Drive list calls
DEFAULT_PAGE_SIZE: Final[int] = 100

# --- Gemini prompt ---

PROMPT_VERSION: Final[str] = "v3"

FLOWCHART_PROMPT: Final[str] = """You are a teaching assistant for an introductory programming class.

The attached image is a student's hand-drawn flowchart.

1. Read every shape, label and arrow in the flowchart. Treat unclear handwriting
   conservatively and prefer the most literal reading.
2. Translate the flowchart into a single executable Python 3 program.
   - Represent the flowchart exactly. Do NOT fix, optimise or complete the logic.
   - Input boxes become input() calls, output boxes become print() calls.
   - Decision diamonds become if/else or while conditions, following the arrows.
   - Do not add prompts to input() calls and do not print anything the
     flowchart does not print.
3. Reply with the Python program only, inside one ```python fenced block,
   with no explanation before or after it.
"""

# --- Sheet layout ---

# Submission record field -> header in the master sheet.
DEFAULT_MASTER_COLUMNS: Final[Mapping[str, str]] = MappingProxyType({
    "timestamp": "Timestamp",
    "email": "Email Address",
    "problem": "Problem Number",
    "flowchart_url": "Upload your Flowchart",
    "status": "Status",
    "image_mime_type": "Image MIME Type",
    "code_url": "Generated Code URL",
    "model": "Model Used",
    "prompt_version": "Prompt Version",
    "generation_timestamp": "Generation Timestamp",
    "input_tokens": "Input Tokens",
    "output_tokens": "Output Tokens",
    "total_tokens": "Total Tokens",
    "thoughts_tokens": "Thoughts Token Count",
    "text_tokens": "Text Token Count",
    "image_tokens": "Image Token Count",
    "response_time_ms": "Response Time (ms)",
    "safety_ratings": "Safety Ratings",
    "finish_reason": "Finish Reason",
    "citation_metadata": "Citation Metadata",
    "model_version": "Model Version",
    "response_id": "Response ID",
    "submission_id": "Submission ID",
    "submission_timestamp": "Submission Timestamp",
    "submission_status": "Submission Status",
    "verdict": "Verdict",
})

META_CODE_COLUMN: Final[str] = "Problem Code"
META_ID_COLUMN: Final[str] = "Problem ID"
BATCH_REGISTRY_COLUMNS: Final[List[str]] = ["Timestamp", "Batch Name", "Manifest ID", "Row Count"]


def _frozen_columns() -> Mapping[str, str]:
    return DEFAULT_MASTER_COLUMNS


@dataclass(frozen=True)
class Settings:
    """Everything the pipeline needs, passed explicitly to each component."""

    # Gemini
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_temperature: float = 0.0
    prompt_text: str = FLOWCHART_PROMPT
    prompt_version: str = PROMPT_VERSION

    # Google Sheets / Drive
    spreadsheet_id: str = ""
    master_sheet: str = "Master"
    meta_sheet: str = "Meta"
    form_responses_sheet: str = "Form Responses 1"
    batch_registry_sheet: str = "Batch Registry"
    generated_codes_folder: str = "Generated Codes"
    manifests_folder: str = "Gemini Batch Manifests"
    generated_code_extension: str = ".py"
    master_columns: Mapping[str, str] = field(default_factory=_frozen_columns)
    service_account_file: Optional[str] = None

    # DOMjudge
    domjudge_api_url: str = ""
    domjudge_contest_id: str = ""
    domjudge_team_id: str = ""
    domjudge_language_id: str = "python3"
    domjudge_solution_filename: str = "solution.py"
    domjudge_zip_filename: str = "solution.zip"
    domjudge_user: str = ""
    domjudge_pass: str = ""
    domjudge_admin_user: str = ""
    domjudge_admin_pass: str = ""
    numeric_problem_ids: bool = True
    submission_accepted_value: str = "SUBMITTED"

    # Transport
    http_timeout: float = 30.0
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_backoff_factor: float = 2.0
    batch_max_rows: Optional[int] = None


# Variables without which no trigger can run
REQUIRED_ENV_VARS: Final[List[str]] = [
    "GEMINI_API_KEY",
    "SPREADSHEET_ID",
    "DOMJUDGE_API_URL",
    "DOMJUDGE_CONTEST_ID",
    "DOMJUDGE_USER",
    "DOMJUDGE_PASS",
    "DOMJUDGE_ADMIN_USER",
    "DOMJUDGE_ADMIN_PASS",
]


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Builds Settings from environment variables.

    Args:
        environ: Mapping to read from. Defaults to os.environ.

    Returns:
        Settings: The validated, immutable settings.

    Raises:
        ConfigError: If a required variable is missing or a value is malformed.
    """
    env = os.environ if environ is None else environ

    missing = [name for name in REQUIRED_ENV_VARS if not env.get(name)]
    if missing:
        raise ConfigError(f"Missing required environment variable(s): {', '.join(missing)}")

    defaults = Settings()
    try:
        temperature = float(env.get("GEMINI_TEMPERATURE", defaults.gemini_temperature))
        batch_max_rows = int(env["BATCH_MAX_ROWS"]) if env.get("BATCH_MAX_ROWS") else None
        settings = Settings(
            gemini_api_key=env["GEMINI_API_KEY"],
            gemini_model=env.get("GEMINI_MODEL", defaults.gemini_model),
            gemini_temperature=temperature,
            prompt_version=env.get("PROMPT_VERSION", defaults.prompt_version),
            spreadsheet_id=env["SPREADSHEET_ID"],
            master_sheet=env.get("MASTER_SHEET", defaults.master_sheet),
            meta_sheet=env.get("META_SHEET", defaults.meta_sheet),
            form_responses_sheet=env.get("FORM_RESPONSES_SHEET", defaults.form_responses_sheet),
            batch_registry_sheet=env.get("BATCH_REGISTRY_SHEET", defaults.batch_registry_sheet),
            generated_codes_folder=env.get("GENERATED_CODES_FOLDER", defaults.generated_codes_folder),
            manifests_folder=env.get("MANIFESTS_FOLDER", defaults.manifests_folder),
            service_account_file=env.get("GOOGLE_SERVICE_ACCOUNT_FILE") or None,
            domjudge_api_url=env["DOMJUDGE_API_URL"].rstrip("/"),
            domjudge_contest_id=env["DOMJUDGE_CONTEST_ID"],
            domjudge_team_id=env.get("DOMJUDGE_TEAM_ID", defaults.domjudge_team_id),
            domjudge_language_id=env.get("DOMJUDGE_LANGUAGE_ID", defaults.domjudge_language_id),
            domjudge_user=env["DOMJUDGE_USER"],
            domjudge_pass=env["DOMJUDGE_PASS"],
            domjudge_admin_user=env["DOMJUDGE_ADMIN_USER"],
            domjudge_admin_pass=env["DOMJUDGE_ADMIN_PASS"],
            numeric_problem_ids=_env_bool(env.get("DOMJUDGE_NUMERIC_PROBLEM_IDS", "true")),
            http_timeout=float(env.get("HTTP_TIMEOUT", defaults.http_timeout)),
            retry_max_attempts=int(env.get("RETRY_MAX_ATTEMPTS", defaults.retry_max_attempts)),
            retry_initial_delay=float(env.get("RETRY_INITIAL_DELAY", defaults.retry_initial_delay)),
            retry_backoff_factor=float(env.get("RETRY_BACKOFF_FACTOR", defaults.retry_backoff_factor)),
            batch_max_rows=batch_max_rows,
        )
    except ValueError as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e

    if not 0.0 <= settings.gemini_temperature <= 1.0:
        raise ConfigError(f"GEMINI_TEMPERATURE must be between 0 and 1, got {settings.gemini_temperature}")
    if settings.retry_max_attempts < 1:
        raise ConfigError("RETRY_MAX_ATTEMPTS must be at least 1")
    return settings
