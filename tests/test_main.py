from types import SimpleNamespace

import main
from core.models import IngestReport, RowOutcome, Status
from utils.error_handler import ConfigError


def test_parser_reads_batch_options():
    args = main.build_parser().parse_args(["batch-enqueue", "--max-rows", "5"])
    assert args.command == "batch-enqueue"
    assert args.max_rows == 5
    assert main.build_parser().parse_args([]).command is None


def test_command_runs_against_the_wired_grader(monkeypatch, settings):
    calls = []
    grader = SimpleNamespace(
        trigger_verdict_polling=lambda: calls.append("verdicts") or [
            RowOutcome(2, "ada@example.edu", "FCP045", Status.JUDGE_SUBMITTED, Status.VERDICT_READY)
        ],
        poll_gemini_batches=lambda: calls.append("batch-poll") or [IngestReport("batches/x", ok=1)],
    )
    monkeypatch.setattr(main.config, "load_settings", lambda: settings)
    monkeypatch.setattr(main, "build_grader", lambda s: grader)

    assert main.main(["verdicts"]) == 0
    assert main.main(["batch-poll"]) == 0
    assert calls == ["verdicts", "batch-poll"]


def test_setup_error_gives_exit_code_1(monkeypatch):
    def _fail():
        raise ConfigError("Missing required environment variable(s): GEMINI_API_KEY")

    monkeypatch.setattr(main.config, "load_settings", _fail)
    assert main.main(["gemini"]) == 1
