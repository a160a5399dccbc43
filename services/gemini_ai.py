"""Wrapper for Google Gemini API interactions: single calls and batch jobs."""

import base64
import io
import json
import re
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

import config
from config import Settings
from core.models import BatchJobHandle, BatchStatus, GenerationMetadata, GenerationResult
from services.drive_api import DriveService
from utils.logger import get_logger
from utils.error_handler import APIError, FileUnavailableError, NoCandidatesError, ParseError
from utils.retry import RetryPolicy, call_with_retry

logger = get_logger()

SERVICE_NAME = "gemini"
DEFAULT_FINISH_REASON = "UNSPECIFIED"

TERMINAL_STATES = frozenset(
    f"{prefix}_STATE_{outcome}"
    for prefix in ("JOB", "BATCH")
    for outcome in ("SUCCEEDED", "FAILED", "CANCELLED", "EXPIRED")
)
SUCCEEDED_STATES = frozenset({"JOB_STATE_SUCCEEDED", "BATCH_STATE_SUCCEEDED"})

_CODE_FENCE = re.compile(r"```(?:\w+)?\n([\s\S]*?)```")


def clean_code_block(text: Optional[str]) -> str:
    """Replaces every fenced code block with its body and trims the result."""
    if not text:
        return ""
    return _CODE_FENCE.sub(lambda m: m.group(1), text).strip()


def is_terminal_state(state: Optional[str]) -> bool:
    return bool(state) and str(state) in TERMINAL_STATES


def should_retry_gemini(e: BaseException) -> bool:
    """Quota (429), server errors (5xx) and network errors are transient."""
    if isinstance(e, genai_errors.APIError):
        return e.code == 429 or (e.code or 0) >= 500
    return isinstance(e, (TimeoutError, ConnectionError))


RETRYABLE_GEMINI_ERRORS = (genai_errors.APIError, TimeoutError, ConnectionError)


def _state_name(state: Any) -> str:
    # SDK enums carry the REST name as their value
    return str(getattr(state, "value", state) or "")


def _to_dict(obj: Any) -> Dict[str, Any]:
    """Converts an SDK object to its REST (camelCase) JSON shape."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.model_dump(mode="json", by_alias=True, exclude_none=True)


def _count_for_modality(details: Sequence[Dict[str, Any]], modalities: Tuple[str, ...]) -> int:
    for detail in details:
        if detail.get("modality") in modalities:
            return detail.get("tokenCount") or 0
    return 0


def extract_response_metadata(payload: Dict[str, Any], latency_ms: Optional[int],
                              default_model: str) -> GenerationMetadata:
    usage = payload.get("usageMetadata") or {}
    details = usage.get("promptTokensDetails") or []
    candidate = (payload.get("candidates") or [{}])[0]
    return GenerationMetadata(
        input_tokens=usage.get("promptTokenCount") or 0,
        output_tokens=usage.get("candidatesTokenCount") or 0,
        total_tokens=usage.get("totalTokenCount") or 0,
        thoughts_tokens=usage.get("thoughtsTokenCount") or 0,
        text_tokens=_count_for_modality(details, ("TEXT",)),
        image_tokens=_count_for_modality(details, ("IMAGE", "DOCUMENT")),
        response_time_ms=latency_ms,
        safety_ratings=json.dumps(candidate.get("safetyRatings") or []),
        finish_reason=candidate.get("finishReason") or DEFAULT_FINISH_REASON,
        citation_metadata=json.dumps(candidate.get("citationMetadata") or {}),
        model_version=payload.get("modelVersion") or default_model,
        response_id=payload.get("responseId") or "",
    )


def parse_generation_response(payload: Dict[str, Any], latency_ms: Optional[int],
                              default_model: str) -> GenerationResult:
    """Parses a generateContent response in its REST (camelCase) shape.

    Used for both synchronous responses and batch result lines.

    Raises:
        NoCandidatesError: If the response has no candidate.
        ParseError: If the candidate has no text part.
    """
    if not isinstance(payload, dict):
        raise ParseError("Gemini response is not a JSON object", service=SERVICE_NAME)
    candidates = payload.get("candidates")
    if not candidates:
        feedback = payload.get("promptFeedback")
        raise NoCandidatesError(f"Gemini response has no candidates (feedback: {feedback})", service=SERVICE_NAME)
    try:
        parts = candidates[0]["content"]["parts"]
        text = "".join(part["text"] for part in parts if "text" in part and not part.get("thought"))
    except (KeyError, TypeError, IndexError) as e:
        raise ParseError(f"Malformed Gemini candidate: {e}", service=SERVICE_NAME) from e
    if not text:
        raise ParseError("Gemini candidate has no text part", service=SERVICE_NAME)
    return GenerationResult(
        content=clean_code_block(text),
        metadata=extract_response_metadata(payload, latency_ms, default_model),
    )


def build_batch_request(key: str, mime_type: str, data: bytes, prompt: str, temperature: float) -> Dict[str, Any]:
    """Builds one JSONL line of a batch input file."""
    return {
        "key": key,
        "request": {
            "contents": [{
                "role": "user",
                "parts": [
                    {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode("ascii")}},
                    {"text": prompt},
                ],
            }],
            "generationConfig": {"temperature": temperature},
        },
    }


class GeminiClient:
    """Provides methods to interact with the Google Gemini API."""

    def __init__(self, settings: Settings, drive: DriveService, client: Optional[Any] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        """Initializes the GeminiClient.

        Args:
            settings: Application settings (API key, model).
            drive: Blob store the flowchart images are read from.
            client: An already built genai.Client (skips building one).
            retry_policy: Retry policy for transient failures. Defaults to the settings.
        """
        logger.debug("Initializing GeminiClient...")
        self.settings = settings
        self.drive = drive
        self.model = settings.gemini_model
        self.client = client if client is not None else genai.Client(api_key=settings.gemini_api_key)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            backoff_factor=settings.retry_backoff_factor,
        )
        logger.info(f"GeminiClient initialized for model {self.model}.")

    def _call(self, action: str, func: Any, **kwargs: Any) -> Any:
        """Runs one SDK call with retries and converts SDK errors to APIError."""
        try:
            return call_with_retry(
                func, policy=self.retry_policy, exceptions=RETRYABLE_GEMINI_ERRORS,
                retry_if=should_retry_gemini, **kwargs
            )
        except genai_errors.APIError as e:
            logger.error(f"Gemini API error during {action}: {e.code} {e.message}", exc_info=config.DEBUG)
            raise APIError(f"Gemini API error during {action}: {e.message}", status_code=e.code, service=SERVICE_NAME) from e
        except (TimeoutError, ConnectionError) as e:
            logger.error(f"Network error during {action}: {e}", exc_info=config.DEBUG)
            raise APIError(f"Network error during {action}: {e}", service=SERVICE_NAME) from e

    def load_blob(self, file_id: str) -> Tuple[str, bytes]:
        """Fetches a flowchart image from Drive.

        Raises:
            FileUnavailableError: If the download fails or the file is empty.
        """
        try:
            mime_type, data = self.drive.download_file_content(file_id)
        except APIError as e:
            raise FileUnavailableError(f"Could not download file {file_id}: {e}") from e
        if not data:
            raise FileUnavailableError(f"File {file_id} is empty")
        return mime_type or "application/octet-stream", data

    def generate_code(self, file_id: str, prompt: str, temperature: float) -> GenerationResult:
        """Converts the flowchart stored under file_id into code with one Gemini call.

        Raises:
            ValueError: If temperature is outside [0, 1].
            FileUnavailableError: If the image cannot be loaded.
            APIError: On a provider error (NoCandidatesError/ParseError on bad responses).
        """
        if not 0.0 <= temperature <= 1.0:
            raise ValueError(f"Temperature must be between 0 and 1, got {temperature}")
        mime_type, data = self.load_blob(file_id)

        contents = [types.Content(role="user", parts=[
            types.Part(inline_data=types.Blob(mime_type=mime_type, data=data)),
            types.Part(text=prompt),
        ])]
        logger.debug(f"Sending {len(data)} bytes ({mime_type}) to {self.model}...")
        start = time.monotonic()
        response = self._call(
            f"generate_content for {file_id}",
            self.client.models.generate_content,
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(temperature=temperature),
        )
        latency_ms = int((time.monotonic() - start) * 1000)

        result = parse_generation_response(_to_dict(response), latency_ms, self.model)
        result.mime_type = mime_type
        logger.info(f"Gemini generated {len(result.content)} characters for {file_id} in {latency_ms} ms.")
        return result

    def create_batch_job(self, lines: Sequence[Dict[str, Any]], display_name: str) -> BatchJobHandle:
        """Uploads the request lines as a JSONL file and creates a batch job from it.

        Returns immediately; the job is polled with get_batch_status.
        """
        payload = "\n".join(json.dumps(line) for line in lines).encode("utf-8")
        uploaded = self._call(
            "batch input upload",
            self.client.files.upload,
            file=io.BytesIO(payload),
            config=types.UploadFileConfig(display_name=display_name, mime_type="jsonl"),
        )
        logger.info(f"Uploaded batch input {uploaded.name} ({len(lines)} requests, {len(payload)} bytes).")
        job = self._call(
            "batch creation",
            self.client.batches.create,
            model=self.model,
            src=uploaded.name,
            config={"display_name": display_name},
        )
        logger.info(f"Created batch job {job.name} ({_state_name(job.state)}).")
        return BatchJobHandle(name=job.name, input_file=uploaded.name)

    def get_batch_status(self, name: str) -> BatchStatus:
        job = self._call(f"batch status for {name}", self.client.batches.get, name=name)
        state = _state_name(job.state)
        status = BatchStatus(
            name=name,
            state=state,
            terminal=is_terminal_state(state),
            succeeded=state in SUCCEEDED_STATES,
        )
        dest = getattr(job, "dest", None)
        if dest is not None:
            status.results_file = getattr(dest, "file_name", None)
            inlined = getattr(dest, "inlined_responses", None)
            if inlined:
                status.inline_responses = [
                    {"error": _to_dict(item.error)} if item.error else {"response": _to_dict(item.response)}
                    for item in inlined
                ]
        logger.debug(f"Batch {name}: state={state}, results_file={status.results_file}")
        return status

    def download_results(self, file_name: str) -> List[Dict[str, Any]]:
        """Downloads a JSONL results file; malformed lines are logged and skipped."""
        content = self._call(f"results download for {file_name}", self.client.files.download, file=file_name)
        text = content.decode("utf-8") if isinstance(content, bytes) else str(content)
        results: List[Dict[str, Any]] = []
        for number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                results.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping malformed result line {number} in {file_name}: {e}")
        logger.info(f"Downloaded {len(results)} result lines from {file_name}.")
        return results
