"""Command line entry point: uploads a batch of files and reports the outcome."""
import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import argcomplete
from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Prompt

from . import __version__
from .config_manager import ConfigValidator, UploadSettings, load_config, update_config
from .core_logic.error_classifier import ErrorClassifier, create_error_report
from .core_logic.session import UploadManager
from .events import SessionComplete, UploadEvent
from .models import ErrorKind, JobStatus, UploadFile, UploadJob
from .ui import BaseUIManager, RichUIManager, SimpleUIManager
from .utils import setup_logging

CONFLICT_POLICIES = ['prompt', 'overwrite', 'rename', 'skip']


def build_parser(default_config_path: Path) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Upload files to a content store with progress, retries and conflict handling.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('files', nargs='*', metavar='FILE', help='Files to upload.')
    parser.add_argument('--destination', default='/', help='Destination folder inside the content store.')
    parser.add_argument('--config', default=str(default_config_path), help='Path to the configuration file.')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging to file.')
    parser.add_argument('--simple', action='store_true', help='Use a simple, non-interactive UI. Recommended for `screen` or `tmux`.')
    parser.add_argument('--max-concurrent', type=int, default=None, metavar='N',
                        help='Maximum simultaneous uploads (0 for no limit). Overrides the config file.')
    parser.add_argument('--on-conflict', choices=CONFLICT_POLICIES, default='prompt',
                        help='What to do when a file with the same name already exists.')
    parser.add_argument('--check-config', action='store_true', help='Validate the configuration file and exit.')
    parser.add_argument('--version', action='store_true', help="Show program's version and config file path, then exit.")
    return parser


class _ResultCollector:
    """Keeps the latest `session-complete` event of each session."""

    def __init__(self):
        self._results: Dict[str, SessionComplete] = {}
        self._lock = threading.Lock()

    def __call__(self, event: UploadEvent) -> None:
        if isinstance(event, SessionComplete):
            with self._lock:
                self._results[event.session_id] = event

    def get(self, session_id: str) -> Optional[SessionComplete]:
        with self._lock:
            return self._results.get(session_id)


def _choose(manager: UploadManager, job_id: str, policy: str, ui: BaseUIManager, interactive: bool) -> Optional[str]:
    """Picks the recovery choice for a failed job, prompting if allowed."""
    job = manager.tracker.get_job(job_id)
    error = job.last_error
    choices = manager.choices_for(job_id)
    if error is None or choices == ['discard']:
        return None
    if error.kind is ErrorKind.NAME_CONFLICT and policy != 'prompt':
        return policy
    if policy != 'prompt' or not interactive:
        return None

    ui.pause()
    try:
        action = manager.recovery.recovery_action_for(job)
        console = Console(stderr=True)
        console.print(f"\n[bold]{job.file_name}[/]: {error.title}. {action.message or error.message}")
        for option in action.options:
            console.print(f"  [cyan]{option.value}[/] - {option.description}")
        return Prompt.ask("Choose", choices=choices, default=choices[-1], console=console)
    finally:
        ui.resume()


def resolve_failures(manager: UploadManager, failed: List[UploadJob], policy: str, ui: BaseUIManager, interactive: bool) -> bool:
    """Applies conflict policies and prompts to failed jobs of a settled session.

    Returns:
        True if at least one job was sent back to the transport or removed.
    """
    acted = False
    for job in failed:
        choice = _choose(manager, job.id, policy, ui, interactive)
        if choice is None:
            continue
        result = manager.resolve(job.id, choice)
        if result:
            acted = True
        else:
            logging.warning(f"Could not apply '{choice}' to '{job.file_name}': {result.reason}")
    return acted


def run_uploads(manager: UploadManager, files: List[UploadFile], destination: str, policy: str, ui: BaseUIManager,
                interactive: bool = True) -> Optional[SessionComplete]:
    """Uploads one batch and resolves failures until the session settles for good.

    Returns:
        The final `session-complete` event.
    """
    collector = _ResultCollector()
    manager.subscribe(collector)
    session_id = manager.submit(files, destination)
    ui.register_names({job.id: job.file_name for job in manager.session_jobs(session_id)})

    # (job id, attempt) pairs already offered to the user
    handled: Set[Tuple[str, int]] = set()
    while True:
        manager.wait(session_id)
        failed = [job for job in manager.session_jobs(session_id)
                  if job.status == JobStatus.ERROR and (job.id, job.attempts) not in handled]
        handled.update((job.id, job.attempts) for job in failed)
        if not failed or not resolve_failures(manager, failed, policy, ui, interactive):
            break
    return collector.get(session_id)


def report(summary: Optional[SessionComplete], missing: List[str]) -> int:
    """Logs the outcome of a batch and returns the exit code."""
    failures = len(missing)
    for name in missing:
        logging.error(f"File not found or unreadable: {name}")
    if summary is None:
        return 1

    for rejected in summary.rejected:
        logging.error(f"Rejected '{rejected.file_name}': {rejected.reason}")
    failures += len(summary.rejected) + len(summary.failed)

    errors = [result.error for result in summary.failed if result.error is not None]
    if errors:
        logging.info("\n" + create_error_report(errors))
    logging.info(f"Uploaded {len(summary.succeeded)} of {len(summary.results) + len(missing) + len(summary.rejected)} file(s).")
    return 0 if failures == 0 else 1


def main() -> int:
    """The main entry point for the application.

    This function is responsible for:
    -   Parsing command-line arguments.
    -   Setting up file and console logging.
    -   Creating, updating, loading and validating the configuration.
    -   Running the upload batch and resolving name conflicts.

    Returns:
        0 if every file was uploaded, 1 otherwise.
    """
    default_config_path = Path.cwd() / 'config.ini'
    parser = build_parser(default_config_path)
    argcomplete.autocomplete(parser)
    args = parser.parse_args()

    if args.version:
        print(f"{Path(sys.argv[0]).name} {__version__}")
        print(f"Configuration file: {args.config}")
        return 0

    config_dir = Path(args.config).resolve().parent
    setup_logging(config_dir / 'logs', args.debug)

    logger = logging.getLogger()
    log_level = logging.DEBUG if args.debug else logging.INFO
    if args.simple:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logger.addHandler(stream_handler)
        logging.info("--- Upload Manager started (Simple UI) ---")
    else:
        rich_handler = RichHandler(level=log_level, show_path=False, rich_tracebacks=True, markup=True, console=Console(stderr=True))
        rich_handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(rich_handler)
        logging.info("--- Upload Manager started (Rich UI) ---")

    logging.info(f"Using configuration file: {args.config}")
    template_path = Path(__file__).resolve().parent / 'config.ini.template'
    update_config(args.config, str(template_path))
    config = load_config(args.config)

    validator = ConfigValidator(config)
    if args.check_config:
        logging.info("--- Running Configuration Check ---")
        if validator.validate():
            logging.info("[bold green]SUCCESS:[/] Configuration file appears to be valid.")
            return 0
        logging.error("[bold red]FAILURE:[/] Configuration file has errors.")
        return 1
    if not validator.validate():
        return 1

    if not args.files:
        parser.error("at least one FILE is required")

    settings = UploadSettings.from_config(config)
    if args.max_concurrent is not None:
        settings.max_concurrent_uploads = max(0, args.max_concurrent)

    files: List[UploadFile] = []
    missing: List[str] = []
    for path in args.files:
        try:
            files.append(UploadFile.from_path(path))
        except OSError as e:
            logging.debug(f"Cannot stat '{path}': {e}")
            missing.append(path)
    if not files:
        return report(None, missing)

    ui: BaseUIManager = SimpleUIManager() if args.simple else RichUIManager(version=__version__)
    summary = None
    try:
        manager = UploadManager(
            settings.create_transport(),
            retry_policy=settings.retry_policy(),
            classifier=ErrorClassifier(settings.max_file_size_bytes),
            max_concurrent_uploads=settings.max_concurrent_uploads,
        )
        with manager, ui:
            manager.subscribe(ui.handle_event)
            summary = run_uploads(manager, files, args.destination, args.on_conflict, ui,
                                  interactive=sys.stdin.isatty())
    except KeyboardInterrupt:
        logging.warning("Upload interrupted by user. Shutting down.")
        return 1
    except ValueError as e:
        logging.error(f"Invalid settings: {e}")
        return 1
    except Exception as e:
        logging.error(f"An unexpected error occurred in main: {e}", exc_info=True)
        return 1
    finally:
        logging.info("--- Upload Manager finished ---")
    return report(summary, missing)


if __name__ == "__main__":
    sys.exit(main())
