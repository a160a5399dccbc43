"""Submission lifecycle: moves master sheet rows through the Gemini and DOMjudge stages."""

from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import config
from config import Settings
from core.manifest_tracker import ManifestTracker, utc_now
from core.models import (
    BatchManifest, GenerationResult, IngestReport, ManifestRow, RowOutcome, Status, SubmissionRecord,
    manifest_key,
)
from core.submission_store import ProblemCatalog, SubmissionStore, extract_problem_code, load_form_responses
from services.drive_api import DriveService, file_id_from_url
from services.gemini_ai import GeminiClient, build_batch_request, parse_generation_response
from services.judge_api import DomJudgeClient
from services.sheets_api import SheetsService
from utils.logger import get_logger
from utils.error_handler import (
    APIError, AuthenticationError, BaseGraderException, ConfigError, InputMissingError,
    ParseError, ResolutionError,
)

logger = get_logger()

# Errors that abort a whole trigger instead of a single row
SETUP_ERRORS = (ConfigError, AuthenticationError)


def _is_permanent(e: APIError) -> bool:
    """True for 4xx responses other than 429."""
    return e.status_code is not None and 400 <= e.status_code < 500 and e.status_code != 429


class FlowchartGrader:
    """Advances submissions one stage at a time, driven by the status column.

    Every trigger scans the whole sheet, re-checks each eligible row's status
    right before acting on it, and never lets one row's failure stop the scan.
    """

    def __init__(
        self,
        settings: Settings,
        store: SubmissionStore,
        sheets: SheetsService,
        drive: DriveService,
        gemini: GeminiClient,
        judge: DomJudgeClient,
        tracker: ManifestTracker,
    ):
        self.settings = settings
        self.store = store
        self.sheets = sheets
        self.drive = drive
        self.gemini = gemini
        self.judge = judge
        self.tracker = tracker
        logger.info(f"FlowchartGrader initialized for sheet '{settings.master_sheet}' and model {settings.gemini_model}.")

    # --- Scan loop ---

    def _still_eligible(self, record: SubmissionRecord, expected: Status) -> bool:
        current = self.store.current_status(record.row_number)
        if current != expected:
            logger.info(f"Row {record.row_number}: status is now {current}, expected {expected.value}. Skipping.")
            return False
        return True

    def _run_trigger(self, stage: str, eligible: Status,
                     action: Callable[[SubmissionRecord], Optional[Status]]) -> List[RowOutcome]:
        records = [r for r in self.store.load_records() if r.status == eligible]
        logger.info(f"[{stage}] {len(records)} row(s) in status {eligible.value}.")
        outcomes = []
        for i, record in enumerate(records, start=1):
            if not self._still_eligible(record, eligible):
                continue
            logger.info(f"[{stage}] Processing row {record.row_number} ({i}/{len(records)}, {record.email}, {record.problem})...")
            outcome = RowOutcome(record.row_number, record.email, record.problem, before=eligible, after=eligible)
            try:
                new_status = action(record)
                if new_status is not None:
                    outcome.after = new_status
            except SETUP_ERRORS:
                raise
            except BaseGraderException as e:
                logger.error(f"[{stage}] Row {record.row_number} failed: {e}", exc_info=config.DEBUG)
                outcome.error = str(e)
            except Exception as e:
                logger.error(f"[{stage}] Unexpected error on row {record.row_number}: {e}", exc_info=True)
                outcome.error = f"Unexpected error: {e}"
            outcomes.append(outcome)
        advanced = sum(1 for o in outcomes if o.advanced)
        logger.info(f"[{stage}] Finished. {advanced}/{len(outcomes)} row(s) advanced.")
        return outcomes

    # --- Gemini stage (synchronous) ---

    def trigger_gemini_processing(self) -> List[RowOutcome]:
        """Converts every NEW row's flowchart into code."""
        return self._run_trigger("gemini", Status.NEW, self.process_flowchart_with_gemini)

    def _flowchart_file_id(self, record: SubmissionRecord) -> str:
        if not record.flowchart_url:
            raise InputMissingError(f"Row {record.row_number} has no flowchart")
        file_id = file_id_from_url(record.flowchart_url)
        if not file_id:
            raise ResolutionError(f"Row {record.row_number}: no Drive file id in '{record.flowchart_url}'")
        return file_id

    def _save_generation(self, row_number: int, timestamp: str, email: str, problem: str,
                         result: GenerationResult, model: str) -> Status:
        """Stores the generated code in Drive and the generation metadata in the row."""
        if not result.content:
            raise ParseError(f"Row {row_number}: generated code is empty", service="gemini")
        code_url = self.drive.save_generated_code(
            timestamp, email, extract_problem_code(problem), result.content,
            folder_name=self.settings.generated_codes_folder,
            extension=self.settings.generated_code_extension,
        )
        fields: Dict[str, Any] = {
            "image_mime_type": result.mime_type or "",
            "code_url": code_url,
            "model": model,
            "prompt_version": self.settings.prompt_version,
            "generation_timestamp": utc_now(),
        }
        fields.update(asdict(result.metadata))
        fields["status"] = Status.GEMINI_DONE
        self.store.update(row_number, **fields)
        logger.info(f"Row {row_number}: code saved to {code_url}.")
        return Status.GEMINI_DONE

    def process_flowchart_with_gemini(self, record: SubmissionRecord) -> Status:
        """NEW -> GEMINI_DONE. On failure the row stays NEW."""
        file_id = self._flowchart_file_id(record)
        result = self.gemini.generate_code(file_id, self.settings.prompt_text, self.settings.gemini_temperature)
        return self._save_generation(
            record.row_number, record.timestamp, record.email, record.problem, result, self.settings.gemini_model
        )

    # --- Judge stages ---

    def trigger_domjudge_processing(self) -> List[RowOutcome]:
        """Submits the code of every GEMINI_DONE row."""
        catalog = ProblemCatalog.load(self.sheets, self.settings)
        return self._run_trigger("judge", Status.GEMINI_DONE,
                                 lambda record: self.submit_code_to_domjudge(record, catalog))

    def submit_code_to_domjudge(self, record: SubmissionRecord,
                                catalog: Optional[ProblemCatalog] = None) -> Status:
        """GEMINI_DONE -> JUDGE_SUBMITTED, or CANNOT_PROCESS for an unknown problem code.

        A row without any problem code stays GEMINI_DONE.
        """
        if not record.code_url:
            raise InputMissingError(f"Row {record.row_number} has no generated code")
        if catalog is None:
            catalog = ProblemCatalog.load(self.sheets, self.settings)

        problem_code = extract_problem_code(record.problem)
        if not problem_code:
            raise InputMissingError(f"Row {record.row_number} has no problem code")
        problem_id = catalog.lookup(problem_code)
        if problem_id is None:
            message = f"Problem code '{problem_code}' not found in {self.settings.meta_sheet}"
            logger.warning(f"Row {record.row_number}: {message}.")
            self.store.update(record.row_number, verdict=message, status=Status.CANNOT_PROCESS)
            return Status.CANNOT_PROCESS

        code = self.drive.read_text_from_url(record.code_url)
        submission_id = self.judge.submit(code, problem_id)
        if not submission_id:
            raise APIError(f"Row {record.row_number}: DOMjudge did not accept the submission",
                           service=DomJudgeClient.SERVICE_NAME)
        self.store.update(
            record.row_number,
            submission_id=submission_id,
            submission_timestamp=utc_now(),
            submission_status=self.settings.submission_accepted_value,
            status=Status.JUDGE_SUBMITTED,
        )
        return Status.JUDGE_SUBMITTED

    def trigger_verdict_polling(self) -> List[RowOutcome]:
        """Fetches verdicts for every JUDGE_SUBMITTED row."""
        return self._run_trigger("verdicts", Status.JUDGE_SUBMITTED, self.poll_verdict_for_submission)

    def poll_verdict_for_submission(self, record: SubmissionRecord) -> Optional[Status]:
        """JUDGE_SUBMITTED -> VERDICT_READY once the judge has a verdict. Nothing is written before that."""
        if not record.submission_id:
            raise InputMissingError(f"Row {record.row_number} has no submission id")
        verdict = self.judge.poll_verdict(record.submission_id)
        if verdict is None:
            logger.info(f"Row {record.row_number}: submission {record.submission_id} not judged yet.")
            return None
        self.store.update(record.row_number, verdict=verdict, status=Status.VERDICT_READY)
        return Status.VERDICT_READY

    # --- Gemini stage (batch) ---

    def enqueue_gemini_batch(self, max_rows: Optional[int] = None) -> Optional[BatchManifest]:
        """Sends NEW rows to Gemini as one batch job and marks them GEMINI_QUEUED.

        Rows whose flowchart cannot be loaded are left NEW and out of the batch.

        Args:
            max_rows: Cap on rows per batch. Defaults to settings.batch_max_rows (no cap if unset).

        Returns:
            The saved manifest, or None if no row was eligible.
        """
        limit = max_rows if max_rows is not None else self.settings.batch_max_rows
        lines: List[Dict[str, Any]] = []
        rows: List[ManifestRow] = []
        for record in self.store.load_records():
            if limit is not None and len(rows) >= limit:
                break
            if record.status != Status.NEW or not self._still_eligible(record, Status.NEW):
                continue
            try:
                mime_type, data = self.gemini.load_blob(self._flowchart_file_id(record))
            except (InputMissingError, ResolutionError) as e:
                logger.warning(f"Row {record.row_number} left out of the batch: {e}")
                continue
            key = manifest_key(record.row_number)
            lines.append(build_batch_request(
                key, mime_type, data, self.settings.prompt_text, self.settings.gemini_temperature
            ))
            rows.append(ManifestRow(
                key=key, row=record.row_number, timestamp=record.timestamp,
                email=record.email, problem=record.problem, mime_type=mime_type,
            ))

        if not rows:
            logger.info("No eligible rows for a Gemini batch.")
            return None

        created_at = utc_now()
        display_name = f"flowchart-batch-{datetime.now().strftime('%Y%m%d-%H%M%S')}"
        handle = self.gemini.create_batch_job(lines, display_name)
        manifest = BatchManifest(
            created_at=created_at,
            model=self.settings.gemini_model,
            dataset=self.settings.master_sheet,
            rows=rows,
            batch_name=handle.name,
            input_file=handle.input_file,
        )
        manifest_id = self.tracker.save_manifest(manifest)
        self.tracker.track_batch(manifest, manifest_id)

        for row in rows:
            self.store.update(
                row.row,
                image_mime_type=row.mime_type,
                model=manifest.model,
                prompt_version=self.settings.prompt_version,
                status=Status.GEMINI_QUEUED,
            )
        logger.info(f"Queued {len(rows)} row(s) in batch {handle.name}.")
        return manifest

    def poll_gemini_batches(self) -> List[IngestReport]:
        """Checks every pending batch and ingests the finished ones.

        A batch that cannot be ingested stays pending for the next poll and
        does not stop the others. If its results are permanently gone (a 4xx
        on download), its queued rows become CANNOT_PROCESS.

        Returns:
            One report per manifest that was consumed in this call.
        """
        reports = []
        for manifest in self.tracker.list_pending_manifests():
            try:
                status = self.gemini.get_batch_status(manifest.batch_name)
            except APIError as e:
                logger.error(f"Could not read status of batch {manifest.batch_name}: {e}")
                continue
            if not status.terminal:
                logger.info(f"Batch {manifest.batch_name} still running ({status.state}).")
                continue
            try:
                report = self._consume_batch(manifest, status)
            except SETUP_ERRORS:
                raise
            except BaseGraderException as e:
                logger.error(f"Could not ingest batch {manifest.batch_name}, retrying on the next poll: {e}",
                             exc_info=config.DEBUG)
                continue
            reports.append(report)
        return reports

    def _consume_batch(self, manifest: BatchManifest, status: Any) -> IngestReport:
        if not status.succeeded:
            logger.warning(f"Batch {manifest.batch_name} ended in {status.state}.")
            report = self._fail_batch(manifest)
        else:
            try:
                lines = self._collect_results(manifest, status)
            except APIError as e:
                if not _is_permanent(e):
                    raise
                logger.error(f"Results of batch {manifest.batch_name} are unavailable: {e}")
                report = self._fail_batch(manifest)
            else:
                report = self.ingest_batch_results(manifest, lines)
        self.tracker.mark_consumed(manifest)
        logger.info(f"Batch {manifest.batch_name} ingested: {report}")
        return report

    def _collect_results(self, manifest: BatchManifest, status: Any) -> List[Dict[str, Any]]:
        if status.results_file:
            manifest.results_file = status.results_file
            return self.gemini.download_results(status.results_file)
        if status.inline_responses:
            # Inline responses carry no key; they follow the request order
            return [dict(item, key=row.key) for row, item in zip(manifest.rows, status.inline_responses)]
        logger.warning(f"Batch {manifest.batch_name} succeeded without any results.")
        return []

    def _mark_cannot_process(self, row_number: int, reason: str) -> None:
        logger.warning(f"Row {row_number}: {reason}. Marking {Status.CANNOT_PROCESS.value}.")
        self.store.update(row_number, status=Status.CANNOT_PROCESS)

    def _fail_batch(self, manifest: BatchManifest) -> IngestReport:
        report = IngestReport(batch_name=manifest.batch_name)
        for row in manifest.rows:
            if self.store.current_status(row.row) != Status.GEMINI_QUEUED:
                report.skipped += 1
                continue
            self._mark_cannot_process(row.row, f"batch {manifest.batch_name} did not succeed")
            report.err += 1
        return report

    def ingest_batch_results(self, manifest: BatchManifest, lines: List[Dict[str, Any]]) -> IngestReport:
        """Joins batch result lines to manifest rows by key and applies them.

        Only rows still in GEMINI_QUEUED are touched. Manifest rows without a
        result line become CANNOT_PROCESS.
        """
        report = IngestReport(batch_name=manifest.batch_name)
        rows_by_key = {row.key: row for row in manifest.rows}
        seen = set()

        for line in lines:
            row = rows_by_key.get(line.get("key"))
            if row is None:
                logger.warning(f"Result line with unknown key {line.get('key')!r} in batch {manifest.batch_name}.")
                report.unknown += 1
                continue
            seen.add(row.key)
            if self.store.current_status(row.row) != Status.GEMINI_QUEUED:
                report.skipped += 1
                continue
            if line.get("error") or not line.get("response"):
                self._mark_cannot_process(row.row, f"Gemini error {line.get('error')}")
                report.err += 1
                continue
            try:
                result = parse_generation_response(line["response"], None, manifest.model)
                result.mime_type = row.mime_type
                self._save_generation(row.row, row.timestamp, row.email, row.problem, result, manifest.model)
            except SETUP_ERRORS:
                raise
            except BaseGraderException as e:
                self._mark_cannot_process(row.row, str(e))
                report.err += 1
                continue
            report.ok += 1

        for row in manifest.rows:
            if row.key in seen:
                continue
            if self.store.current_status(row.row) == Status.GEMINI_QUEUED:
                self._mark_cannot_process(row.row, f"no result in batch {manifest.batch_name}")
                report.err += 1
        return report

    # --- Form intake ---

    def intake_form_responses(self) -> int:
        """Copies new form responses into the master sheet with status NEW.

        Returns:
            The number of rows added.
        """
        self.store.ensure_master_sheet()
        existing = {(r.timestamp, r.email, r.flowchart_url) for r in self.store.load_records()}
        added = 0
        for response in load_form_responses(self.sheets, self.settings):
            identity = (response["timestamp"], response["email"], response["flowchart_url"])
            if identity in existing:
                continue
            self.store.append_new(**response)
            existing.add(identity)
            added += 1
        logger.info(f"Form intake: {added} new submission(s).")
        return added

    def run_all(self) -> Dict[str, Any]:
        """One pass of every synchronous stage, in lifecycle order."""
        return {
            "intake": self.intake_form_responses(),
            "gemini": self.trigger_gemini_processing(),
            "judge": self.trigger_domjudge_processing(),
            "verdicts": self.trigger_verdict_polling(),
        }
