"""Wrapper for the DOMjudge REST API (v4): submissions and judgements."""

import base64
import io
import zipfile
from typing import Any, Optional, Union

import requests

import config
from config import Settings
from utils.logger import get_logger

logger = get_logger()


def coerce_problem_id(problem_id: Any, numeric: bool = True) -> Union[int, str]:
    """Returns the problem id as an int when it looks numeric and numeric ids are enabled."""
    text = str(problem_id).strip()
    if numeric:
        try:
            return int(text)
        except ValueError:
            pass
    return text


def zip_source(code: str, filename: str) -> bytes:
    """Packs the code as the single file of an in-memory zip archive."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(filename, code)
    return buffer.getvalue()


class DomJudgeClient:
    """Submits code to a DOMjudge contest and reads back judgements.

    Submissions use the student account, judgement polling uses the admin
    account (judgements of other teams are not visible to a team account).
    """

    SERVICE_NAME = "domjudge"

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.base_url = settings.domjudge_api_url.rstrip("/")
        self.contest_id = settings.domjudge_contest_id
        self.session = session if session is not None else requests.Session()
        self.timeout = settings.http_timeout
        logger.debug(f"DomJudgeClient initialized for {self.base_url}, contest {self.contest_id}.")

    def submissions_url(self) -> str:
        return f"{self.base_url}/contests/{self.contest_id}/submissions"

    def judgements_url(self) -> str:
        return f"{self.base_url}/contests/{self.contest_id}/judgements"

    def submit(self, code: str, problem_id: Any) -> Optional[str]:
        """Submits code for a problem.

        Args:
            code: Source code, stored as the configured solution file inside a zip.
            problem_id: The judge's problem id.

        Returns:
            The submission id, or None if the judge rejected the request or was unreachable.
        """
        archive = zip_source(code, self.settings.domjudge_solution_filename)
        payload = {
            "problem_id": coerce_problem_id(problem_id, self.settings.numeric_problem_ids),
            "language_id": self.settings.domjudge_language_id,
            "team_id": self.settings.domjudge_team_id,
            "files": [{
                "filename": self.settings.domjudge_zip_filename,
                "data": base64.b64encode(archive).decode("ascii"),
            }],
        }
        try:
            resp = self.session.post(
                self.submissions_url(),
                json=payload,
                auth=(self.settings.domjudge_user, self.settings.domjudge_pass),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"DOMjudge submission request failed for problem {problem_id}: {e}", exc_info=config.DEBUG)
            return None

        if resp.status_code not in (200, 201):
            logger.error(f"DOMjudge rejected submission for problem {problem_id}: {resp.status_code} {resp.text}")
            return None
        try:
            submission_id = resp.json().get("id")
        except ValueError as e:
            logger.error(f"DOMjudge returned a non-JSON submission response: {e}")
            return None
        if submission_id in (None, ""):
            logger.error(f"DOMjudge submission response has no id: {resp.text}")
            return None
        logger.info(f"Submitted problem {problem_id}. Judge submission id: {submission_id}")
        return str(submission_id)

    def poll_verdict(self, submission_id: str) -> Optional[str]:
        """Returns the verdict code of a submission, or None if it has not been judged yet."""
        try:
            resp = self.session.get(
                self.judgements_url(),
                params={"submission_id": submission_id, "strict": "false"},
                auth=(self.settings.domjudge_admin_user, self.settings.domjudge_admin_pass),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"DOMjudge judgement request failed for submission {submission_id}: {e}", exc_info=config.DEBUG)
            return None

        if not resp.ok:
            logger.error(f"DOMjudge judgement lookup failed for submission {submission_id}: {resp.status_code} {resp.text}")
            return None
        try:
            judgements = resp.json()
        except ValueError as e:
            logger.error(f"DOMjudge returned a non-JSON judgement response: {e}")
            return None
        if not judgements:
            logger.debug(f"No judgement yet for submission {submission_id}.")
            return None
        verdict = judgements[0].get("judgement_type_id")
        if not verdict:
            logger.debug(f"Submission {submission_id} is still being judged.")
            return None
        logger.info(f"Verdict for submission {submission_id}: {verdict}")
        return verdict
