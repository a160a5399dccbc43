from __future__ import annotations

import copy
import itertools
import json
from types import SimpleNamespace
from typing import Any

import pytest

import config
from config import Settings
from core.grader import FlowchartGrader
from core.manifest_tracker import ManifestTracker
from core.submission_store import SubmissionStore
from services.drive_api import DriveService
from services.gemini_ai import GeminiClient
from services.judge_api import DomJudgeClient
from utils.error_handler import APIError
from utils.retry import RetryPolicy

MASTER_HEADERS = list(config.DEFAULT_MASTER_COLUMNS.values())
FORM_HEADERS = ["Timestamp", "Email Address", "Problem Number", "Upload your Flowchart"]


def drive_url(file_id: str) -> str:
    return f"https://drive.google.com/open?id={file_id}"


def master_row(**fields: Any) -> list:
    """A master sheet row in header order; fields use SubmissionRecord names."""
    row = [""] * len(MASTER_HEADERS)
    for name, value in fields.items():
        row[MASTER_HEADERS.index(config.DEFAULT_MASTER_COLUMNS[name])] = value
    return row


class FakeSheets:
    """In-memory spreadsheet with the SheetsService interface."""

    def __init__(self, sheets: dict[str, list[list]] | None = None):
        self.sheets = {name: [list(r) for r in rows] for name, rows in (sheets or {}).items()}
        self.updates: list[tuple[str, dict]] = []

    def get_sheet_titles(self):
        return set(self.sheets)

    def ensure_sheet(self, sheet_name, headers):
        if sheet_name in self.sheets:
            return False
        self.sheets[sheet_name] = [list(headers)]
        return True

    def get_values(self, sheet_name):
        return copy.deepcopy(self.sheets.get(sheet_name, []))

    def get_row(self, sheet_name, row_number):
        rows = self.sheets.get(sheet_name, [])
        return list(rows[row_number - 1]) if row_number <= len(rows) else []

    def append_row(self, sheet_name, values):
        self.sheets.setdefault(sheet_name, []).append(list(values))

    def update_cells(self, sheet_name, cells):
        self.updates.append((sheet_name, dict(cells)))
        rows = self.sheets[sheet_name]
        for (row, column), value in cells.items():
            while len(rows) < row:
                rows.append([])
            target = rows[row - 1]
            while len(target) < column:
                target.append("")
            target[column - 1] = value

    def cell(self, sheet_name, row_number, header):
        row = self.get_row(sheet_name, row_number)
        column = self.sheets[sheet_name][0].index(header)
        return row[column] if column < len(row) else ""


class FakeDrive(DriveService):
    """DriveService whose storage is a dict; the higher-level helpers are the real ones."""

    def __init__(self):
        self.files: dict[str, dict] = {}
        self._ids = itertools.count(1)
        self._folder_cache = {}

    def add_file(self, name: str, content: bytes, mime_type: str = "image/png", folder_id: str | None = None) -> str:
        file_id = f"drivefile{next(self._ids):020d}"
        self.files[file_id] = {
            "id": file_id, "name": name, "content": content, "mimeType": mime_type,
            "parents": [folder_id] if folder_id else [], "webViewLink": f"https://drive.google.com/file/d/{file_id}/view",
        }
        return file_id

    def get_file_metadata(self, file_id, fields=""):
        if file_id not in self.files:
            raise APIError(f"File {file_id} not found", status_code=404, service="drive")
        return self.files[file_id]

    def download_file_content(self, file_id):
        meta = self.get_file_metadata(file_id)
        return meta["mimeType"], meta["content"]

    def find_files(self, name=None, folder_id=None, name_prefix=None, mime_type=None):
        return [
            {"id": f["id"], "name": f["name"]} for f in self.files.values()
            if (name is None or f["name"] == name)
            and (name_prefix is None or f["name"].startswith(name_prefix))
            and (folder_id is None or folder_id in f["parents"])
            and (mime_type is None or f["mimeType"] == mime_type)
        ]

    def get_or_create_folder(self, folder_name):
        if folder_name not in self._folder_cache:
            self._folder_cache[folder_name] = self.add_file(folder_name, b"", "application/vnd.google-apps.folder")
        return self._folder_cache[folder_name]

    def create_file(self, name, content, mime_type="text/plain", folder_id=None):
        data = content.encode("utf-8") if isinstance(content, str) else content
        file_id = self.add_file(name, data, mime_type, folder_id)
        return {"id": file_id, "name": name, "webViewLink": self.files[file_id]["webViewLink"]}

    def update_file(self, file_id, content, mime_type="text/plain"):
        meta = self.get_file_metadata(file_id)
        meta["content"] = content.encode("utf-8") if isinstance(content, str) else content
        return {"id": file_id, "name": meta["name"], "webViewLink": meta["webViewLink"]}

    def delete_file(self, file_id):
        del self.files[file_id]

    def in_folder(self, folder_name):
        folder_id = self.get_or_create_folder(folder_name)
        return [f for f in self.files.values() if folder_id in f["parents"]]


class _Dumpable:
    def __init__(self, payload):
        self.payload = payload

    def model_dump(self, **_kwargs):
        return copy.deepcopy(self.payload)


def gemini_payload(text: str, **extra: Any) -> dict:
    payload = {
        "candidates": [{
            "content": {"role": "model", "parts": [{"text": text}]},
            "finishReason": "STOP",
            "safetyRatings": [{"category": "HARM_CATEGORY_HARASSMENT", "probability": "NEGLIGIBLE"}],
        }],
        "usageMetadata": {
            "promptTokenCount": 1300,
            "candidatesTokenCount": 42,
            "totalTokenCount": 1342,
            "promptTokensDetails": [
                {"modality": "TEXT", "tokenCount": 260},
                {"modality": "IMAGE", "tokenCount": 1040},
            ],
        },
        "modelVersion": "gemini-2.5-flash-001",
        "responseId": "resp-1",
    }
    payload.update(extra)
    return payload


class FakeGenaiClient:
    """Stands in for genai.Client: models, files and batches namespaces."""

    def __init__(self):
        self.responses: list[Any] = []
        self.generate_calls: list[dict] = []
        self.uploads: list[dict] = []
        self.jobs: dict[str, SimpleNamespace] = {}
        self.downloads: dict[str, bytes] = {}
        self.models = SimpleNamespace(generate_content=self._generate_content)
        self.files = SimpleNamespace(upload=self._upload, download=self._download)
        self.batches = SimpleNamespace(create=self._create_batch, get=self._get_batch)

    def _generate_content(self, model, contents, config=None):
        self.generate_calls.append({"model": model, "contents": contents, "config": config})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return _Dumpable(response)

    def _upload(self, file, config=None):
        self.uploads.append({"data": file.read(), "config": config})
        return SimpleNamespace(name=f"files/input-{len(self.uploads)}")

    def _create_batch(self, model, src, config=None):
        name = f"batches/job-{len(self.jobs) + 1}"
        self.jobs[name] = SimpleNamespace(name=name, state="JOB_STATE_PENDING", dest=None, model=model, src=src)
        return self.jobs[name]

    def _get_batch(self, name):
        return self.jobs[name]

    def _download(self, file):
        return self.downloads[file]

    def finish_job(self, name, state="JOB_STATE_SUCCEEDED", results: list[dict] | None = None):
        job = self.jobs[name]
        job.state = state
        if results is not None:
            file_name = f"files/results-{name.split('/')[-1]}"
            self.downloads[file_name] = "\n".join(json.dumps(r) for r in results).encode("utf-8")
            job.dest = SimpleNamespace(file_name=file_name, inlined_responses=None)

    def uploaded_lines(self, index=-1) -> list[dict]:
        return [json.loads(line) for line in self.uploads[index]["data"].decode("utf-8").splitlines()]


class FakeResponse:
    def __init__(self, status_code=200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or json.dumps(payload)

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    """Records requests and replays queued responses (or raises queued exceptions)."""

    def __init__(self):
        self.calls: list[dict] = []
        self.queue: list[Any] = []

    def _next(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        gemini_api_key="test-key",
        spreadsheet_id="sheet-1",
        domjudge_api_url="https://judge.example.org/api/v4",
        domjudge_contest_id="3",
        domjudge_team_id="7",
        domjudge_user="student",
        domjudge_pass="student-pass",
        domjudge_admin_user="admin",
        domjudge_admin_pass="admin-pass",
        retry_max_attempts=2,
        retry_initial_delay=0.0,
    )


@pytest.fixture
def sheets() -> FakeSheets:
    return FakeSheets({
        "Master": [MASTER_HEADERS],
        "Meta": [["Problem Code", "Problem Title", "Problem ID"], ["FCP045", "Loops and Conditionals", "45"]],
    })


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def genai_client() -> FakeGenaiClient:
    return FakeGenaiClient()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def gemini(settings, drive, genai_client) -> GeminiClient:
    return GeminiClient(settings, drive, client=genai_client, retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.0, jitter=0.0))


@pytest.fixture
def judge(settings, session) -> DomJudgeClient:
    return DomJudgeClient(settings, session=session)


@pytest.fixture
def store(sheets, settings) -> SubmissionStore:
    return SubmissionStore(sheets, settings)


@pytest.fixture
def tracker(drive, sheets, settings) -> ManifestTracker:
    return ManifestTracker(drive, sheets, settings)


@pytest.fixture
def grader(settings, store, sheets, drive, gemini, judge, tracker) -> FlowchartGrader:
    return FlowchartGrader(settings, store, sheets, drive, gemini, judge, tracker)


@pytest.fixture
def add_submission(sheets, drive):
    """Appends a master row; with a flowchart by default. Returns its row number."""
    def _add(status="NEW", problem="FCP045 - Loops and Conditionals", flowchart=True, **fields):
        if flowchart and "flowchart_url" not in fields:
            file_id = drive.add_file("flowchart.png", b"\x89PNG fake image bytes", "image/png")
            fields["flowchart_url"] = drive_url(file_id)
        fields.setdefault("timestamp", "2025-03-14 09:26:53")
        fields.setdefault("email", "ada@example.edu")
        sheets.append_row("Master", master_row(status=status, problem=problem, **fields))
        return len(sheets.sheets["Master"])
    return _add


