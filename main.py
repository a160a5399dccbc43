"""Main execution script for the flowchart judge."""

import argparse
import logging
import sys
from typing import Callable, Dict, List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()  # Load variables from .env into the environment before config is read

import config
from utils.logger import set_level, setup_logger
from utils.error_handler import APIError, AuthenticationError, ConfigError, UserCancelledError
import auth
from services.drive_api import DriveService
from services.sheets_api import SheetsService
from services.gemini_ai import GeminiClient
from services.judge_api import DomJudgeClient
from core.submission_store import SubmissionStore
from core.manifest_tracker import ManifestTracker
from core.grader import FlowchartGrader
import ui.cli as cli

# Initialize logger as early as possible after config is loaded
logger = setup_logger()


def build_grader(settings: config.Settings) -> FlowchartGrader:
    """Authenticates with Google and wires every service into a FlowchartGrader."""
    credentials = auth.get_credentials(settings)
    drive = DriveService(credentials)
    sheets = SheetsService(credentials, settings.spreadsheet_id)
    return FlowchartGrader(
        settings=settings,
        store=SubmissionStore(sheets, settings),
        sheets=sheets,
        drive=drive,
        gemini=GeminiClient(settings, drive),
        judge=DomJudgeClient(settings),
        tracker=ManifestTracker(drive, sheets, settings),
    )


def run_intake(grader: FlowchartGrader, args: argparse.Namespace) -> None:
    added = grader.intake_form_responses()
    cli.display_success(f"{added} new submission(s) copied from the form responses.")


def run_gemini(grader: FlowchartGrader, args: argparse.Namespace) -> None:
    cli.display_row_outcomes("Gemini Processing", grader.trigger_gemini_processing())


def run_judge(grader: FlowchartGrader, args: argparse.Namespace) -> None:
    cli.display_row_outcomes("DOMjudge Submissions", grader.trigger_domjudge_processing())


def run_verdicts(grader: FlowchartGrader, args: argparse.Namespace) -> None:
    cli.display_row_outcomes("Verdict Polling", grader.trigger_verdict_polling())


def run_batch_enqueue(grader: FlowchartGrader, args: argparse.Namespace) -> None:
    cli.display_manifest(grader.enqueue_gemini_batch(max_rows=getattr(args, "max_rows", None)))


def run_batch_poll(grader: FlowchartGrader, args: argparse.Namespace) -> None:
    cli.display_ingest_reports(grader.poll_gemini_batches())


def run_all(grader: FlowchartGrader, args: argparse.Namespace) -> None:
    results = grader.run_all()
    cli.display_success(f"{results['intake']} new submission(s) copied from the form responses.")
    cli.display_row_outcomes("Gemini Processing", results["gemini"])
    cli.display_row_outcomes("DOMjudge Submissions", results["judge"])
    cli.display_row_outcomes("Verdict Polling", results["verdicts"])


Command = Callable[[FlowchartGrader, argparse.Namespace], None]

COMMANDS: Dict[str, Tuple[Command, str]] = {
    "intake": (run_intake, "Copy new form responses into the master sheet"),
    "gemini": (run_gemini, "Convert NEW flowcharts to code (one Gemini call per row)"),
    "judge": (run_judge, "Submit generated code to DOMjudge"),
    "verdicts": (run_verdicts, "Poll DOMjudge for verdicts"),
    "batch-enqueue": (run_batch_enqueue, "Queue NEW flowcharts as one Gemini batch job"),
    "batch-poll": (run_batch_poll, "Check pending Gemini batches and ingest finished ones"),
    "run-all": (run_all, "Intake, Gemini, judge and verdicts in one pass"),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowchart-judge",
        description="Grade hand-drawn flowcharts with Gemini and DOMjudge. Without a command, shows a menu.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    subparsers = parser.add_subparsers(dest="command")
    for name, (_, help_text) in COMMANDS.items():
        sub = subparsers.add_parser(name, help=help_text)
        if name == "batch-enqueue":
            sub.add_argument("--max-rows", type=int, default=None,
                             help="Maximum number of rows in the batch (default: BATCH_MAX_ROWS or no limit)")
    return parser


def interactive_menu(grader: FlowchartGrader, args: argparse.Namespace) -> None:
    """Lets the user run triggers one after another until they exit."""
    names: List[str] = list(COMMANDS)
    while True:
        name = cli.prompt_for_selection(names, lambda n: f"{n}: {COMMANDS[n][1]}", "What would you like to run?")
        if name is None:
            return
        COMMANDS[name][0](grader, args)


def main(argv: Optional[List[str]] = None) -> int:
    """Runs one command (or the interactive menu) and returns the exit code."""
    args = build_parser().parse_args(argv)
    if args.verbose:
        set_level(logging.DEBUG)
    logger.info(f"Starting flowchart judge (command: {args.command or 'menu'}).")
    interactive = args.command is None
    if interactive:
        cli.display_welcome()

    exit_code = 0
    try:
        settings = config.load_settings()
        grader = build_grader(settings)
        if interactive:
            interactive_menu(grader, args)
        else:
            COMMANDS[args.command][0](grader, args)
    except FileNotFoundError as e:
        logger.critical(f"Required file not found: {e}. Please ensure client_secrets.json or the service account file is present.")
        cli.display_error(f"Missing required file: {e}")
        exit_code = 1
    except (AuthenticationError, ConfigError) as e:
        logger.critical(f"Setup or Authentication Error: {e}", exc_info=config.DEBUG)
        cli.display_error(f"Setup Error: {e}")
        exit_code = 1
    except APIError as e:
        logger.error(f"API Error: {e}", exc_info=config.DEBUG)
        cli.display_error(f"API Error ({e.service or 'Unknown'}): {e}")
        exit_code = 1
    except UserCancelledError as e:
        logger.info(f"Operation cancelled by user: {e}")
    except KeyboardInterrupt:
        logger.info("Operation interrupted by user (Ctrl+C).")
        cli.display_warning("Operation interrupted.")
        exit_code = 130
    except Exception as e:
        # Catch-all for unexpected errors
        logger.critical(f"An unexpected error occurred: {e}", exc_info=True)
        cli.display_error(f"An unexpected error occurred: {e}. Check logs for details.")
        exit_code = 1
    finally:
        if interactive:
            cli.display_farewell()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
