import base64
import io
import zipfile

import pytest
import requests

from conftest import FakeResponse
from services.judge_api import coerce_problem_id


def _unzip(data_b64):
    archive = zipfile.ZipFile(io.BytesIO(base64.b64decode(data_b64)))
    return {name: archive.read(name).decode("utf-8") for name in archive.namelist()}


def test_submit_posts_zipped_code_with_student_auth(judge, session):
    session.queue.append(FakeResponse(201, {"id": "1234"}))

    assert judge.submit("print(input())\n", "45") == "1234"

    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://judge.example.org/api/v4/contests/3/submissions"
    assert call["auth"] == ("student", "student-pass")
    payload = call["json"]
    assert payload["problem_id"] == 45
    assert payload["language_id"] == "python3"
    assert payload["team_id"] == "7"
    assert payload["files"][0]["filename"] == "solution.zip"
    assert _unzip(payload["files"][0]["data"]) == {"solution.py": "print(input())\n"}


def test_submit_accepts_200(judge, session):
    session.queue.append(FakeResponse(200, {"id": 99}))
    assert judge.submit("print(1)", "45") == "99"


@pytest.mark.parametrize("response", [
    FakeResponse(400, None, text="Problem not found"),
    FakeResponse(401, {"message": "unauthorized"}),
    FakeResponse(201, {}),
])
def test_submit_returns_none_on_rejection(judge, session, response):
    session.queue.append(response)
    assert judge.submit("print(1)", "45") is None


def test_submit_returns_none_on_network_error(judge, session):
    session.queue.append(requests.ConnectionError("connection refused"))
    assert judge.submit("print(1)", "45") is None


def test_poll_uses_admin_auth_and_returns_first_verdict(judge, session):
    session.queue.append(FakeResponse(200, [{"id": "j1", "judgement_type_id": "AC"}, {"id": "j0", "judgement_type_id": "WA"}]))

    assert judge.poll_verdict("1234") == "AC"

    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "https://judge.example.org/api/v4/contests/3/judgements"
    assert call["params"] == {"submission_id": "1234", "strict": "false"}
    assert call["auth"] == ("admin", "admin-pass")


@pytest.mark.parametrize("response", [
    FakeResponse(200, []),
    FakeResponse(200, [{"id": "j1", "judgement_type_id": None}]),
    FakeResponse(404, {"message": "not found"}),
])
def test_poll_without_verdict_returns_none(judge, session, response):
    session.queue.append(response)
    assert judge.poll_verdict("1234") is None


def test_poll_returns_none_on_timeout(judge, session):
    session.queue.append(requests.Timeout("timed out"))
    assert judge.poll_verdict("1234") is None


@pytest.mark.parametrize("problem_id, numeric, expected", [
    ("45", True, 45),
    (" 12 ", True, 12),
    ("fcp045", True, "fcp045"),
    ("45", False, "45"),
])
def test_coerce_problem_id(problem_id, numeric, expected):
    assert coerce_problem_id(problem_id, numeric) == expected
