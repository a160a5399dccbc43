"""Domain types for the submission lifecycle and the Gemini batch pipeline."""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional


class Status(str, Enum):
    """Values of the status column. Order follows the lifecycle."""
    NEW = "NEW"
    GEMINI_QUEUED = "GEMINI_QUEUED"
    GEMINI_DONE = "GEMINI_DONE"
    JUDGE_SUBMITTED = "JUDGE_SUBMITTED"
    VERDICT_READY = "VERDICT_READY"
    CANNOT_PROCESS = "CANNOT_PROCESS"

    @classmethod
    def parse(cls, value: Any) -> Optional["Status"]:
        """Returns the Status for a cell value, or None for blank/unknown values."""
        if value is None:
            return None
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


@dataclass
class GenerationMetadata:
    """Response metadata captured for every generated program."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    thoughts_tokens: int = 0
    text_tokens: int = 0
    image_tokens: int = 0
    response_time_ms: Optional[int] = None
    safety_ratings: str = "[]"
    finish_reason: str = "UNSPECIFIED"
    citation_metadata: str = "{}"
    model_version: str = ""
    response_id: str = ""


@dataclass
class GenerationResult:
    content: str
    metadata: GenerationMetadata
    mime_type: Optional[str] = None


@dataclass
class SubmissionRecord:
    """One row of the master sheet, translated from its header-addressed cells."""
    row_number: int
    timestamp: str = ""
    email: str = ""
    problem: str = ""
    flowchart_url: str = ""
    status: Optional[Status] = None
    image_mime_type: str = ""
    code_url: str = ""
    model: str = ""
    prompt_version: str = ""
    generation_timestamp: str = ""
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    thoughts_tokens: Optional[int] = None
    text_tokens: Optional[int] = None
    image_tokens: Optional[int] = None
    response_time_ms: Optional[int] = None
    safety_ratings: str = ""
    finish_reason: str = ""
    citation_metadata: str = ""
    model_version: str = ""
    response_id: str = ""
    submission_id: str = ""
    submission_timestamp: str = ""
    submission_status: str = ""
    verdict: str = ""

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls) if f.name != "row_number"]


INT_FIELDS = frozenset({
    "input_tokens", "output_tokens", "total_tokens", "thoughts_tokens",
    "text_tokens", "image_tokens", "response_time_ms",
})


@dataclass
class ManifestRow:
    key: str
    row: int
    timestamp: str = ""
    email: str = ""
    problem: str = ""
    mime_type: str = ""


def manifest_key(row_number: int) -> str:
    """Join key between a batch result line and its source row."""
    return f"row-{row_number}"


@dataclass
class BatchManifest:
    """Row mapping of one Gemini batch job, persisted so results can be joined later."""
    created_at: str
    model: str
    dataset: str
    rows: List[ManifestRow] = field(default_factory=list)
    batch_name: Optional[str] = None
    input_file: Optional[str] = None
    results_file: Optional[str] = None
    ingested_at: Optional[str] = None
    file_id: Optional[str] = None  # Drive id, not serialized

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("file_id")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], file_id: Optional[str] = None) -> "BatchManifest":
        rows = [ManifestRow(**row) for row in data.get("rows", [])]
        return cls(
            created_at=data["created_at"],
            model=data["model"],
            dataset=data["dataset"],
            rows=rows,
            batch_name=data.get("batch_name"),
            input_file=data.get("input_file"),
            results_file=data.get("results_file"),
            ingested_at=data.get("ingested_at"),
            file_id=file_id,
        )


@dataclass(frozen=True)
class BatchRegistryEntry:
    created_at: str
    batch_name: str
    manifest_id: str
    row_count: int

    def as_row(self) -> List[Any]:
        return [self.created_at, self.batch_name, self.manifest_id, self.row_count]


@dataclass(frozen=True)
class BatchJobHandle:
    name: str
    input_file: str


@dataclass
class BatchStatus:
    name: str
    state: str
    terminal: bool
    succeeded: bool
    results_file: Optional[str] = None
    inline_responses: Optional[List[Dict[str, Any]]] = None


@dataclass
class IngestReport:
    batch_name: Optional[str] = None
    ok: int = 0
    err: int = 0
    skipped: int = 0
    unknown: int = 0

    def __str__(self) -> str:
        return f"OK={self.ok}, ERR={self.err}, SKIPPED={self.skipped}, UNKNOWN={self.unknown}"


@dataclass
class RowOutcome:
    """What a trigger did to one row; used for the CLI summary."""
    row_number: int
    email: str
    problem: str
    before: Optional[Status]
    after: Optional[Status]
    error: Optional[str] = None

    @property
    def advanced(self) -> bool:
        return self.after is not None and self.after != self.before
