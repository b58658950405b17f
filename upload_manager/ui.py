"""Presents upload progress, either as rich progress bars or as plain log lines.

Both UI managers are event subscribers: pass `ui.handle_event` to
`UploadManager.subscribe()` and they render whatever the engine reports.

1.  `RichUIManager`: live progress bars powered by the `rich` library, one per
    file plus an overall bar. This is the default UI.

2.  `SimpleUIManager`: logs progress through the standard `logging` module.
    Suitable for non-interactive environments like `tmux`, `screen` or cron.
"""
import abc
import logging
import re
import threading
from typing import Dict, Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from .core_logic.progress import OverallProgress
from .events import (
    JobCancelled,
    JobError,
    JobProgress,
    JobRemoved,
    JobResolved,
    JobRetrying,
    JobSuccess,
    SessionComplete,
    SessionStarted,
    UploadEvent,
)
from .utils import format_bytes, format_eta, format_speed


def smart_truncate(text: str, max_width: int) -> str:
    """Truncates a file name, keeping its extension visible where possible."""
    if len(text) <= max_width:
        return text
    stem, dot, extension = text.rpartition('.')
    if stem and dot and len(extension) < 8 and max_width > len(extension) + 6:
        return text[:max_width - len(extension) - 4] + "..." + dot + extension
    return text[:max_width - 3] + "..."


class BaseUIManager(abc.ABC):
    """Defines the interface shared by the UI managers.

    `handle_event()` dispatches every engine event to the matching `on_*`
    method, so the command line entry point never needs to know which UI is
    active.
    """

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        pass

    def handle_event(self, event: UploadEvent) -> None:
        handler = getattr(self, f"on_{event.name.replace('-', '_')}", None)
        if handler is not None:
            handler(event)

    @abc.abstractmethod
    def log(self, message: str) -> None:
        """Logs a message to the UI."""
        pass

    @abc.abstractmethod
    def on_session_started(self, event: SessionStarted) -> None:
        pass

    @abc.abstractmethod
    def on_job_progress(self, event: JobProgress) -> None:
        pass

    @abc.abstractmethod
    def on_job_success(self, event: JobSuccess) -> None:
        pass

    @abc.abstractmethod
    def on_job_error(self, event: JobError) -> None:
        pass

    @abc.abstractmethod
    def on_job_retrying(self, event: JobRetrying) -> None:
        pass

    def on_job_resolved(self, event: JobResolved) -> None:
        self.log(f"Resolving {event.job_id} with '{event.choice}'")

    def on_job_cancelled(self, event: JobCancelled) -> None:
        self.log(f"Cancelled {event.job_id}")

    def on_job_removed(self, event: JobRemoved) -> None:
        pass

    @abc.abstractmethod
    def on_session_complete(self, event: SessionComplete) -> None:
        pass

    def register_names(self, names: Dict[str, str]) -> None:
        """Maps job ids to file names for friendlier output."""
        pass

    def pause(self) -> None:
        """Temporarily releases the terminal, e.g. while prompting the user."""
        pass

    def resume(self) -> None:
        pass


class SimpleUIManager(BaseUIManager):
    """A non-interactive UI that logs progress via `logging`.

    Per-file progress is logged in 25% steps to keep the output readable.
    """

    def __init__(self, progress_step: float = 25.0):
        self.progress_step = progress_step
        self._names: Dict[str, str] = {}
        self._last_logged: Dict[str, float] = {}
        self._lock = threading.Lock()
        logging.info("Using simple UI (standard logging).")

    def __exit__(self, exc_type, exc_val, exc_tb):
        super().__exit__(exc_type, exc_val, exc_tb)
        if exc_type:
            logging.error(f"An error occurred: {exc_val}")

    def log(self, message: str) -> None:
        """Logs a message, stripping any Rich markup."""
        message = re.sub(r"\[.*?\]", "", message)
        logging.info(message)

    def register_names(self, names: Dict[str, str]) -> None:
        """Maps job ids to file names for friendlier log lines."""
        with self._lock:
            self._names.update(names)

    def _name(self, job_id: str) -> str:
        with self._lock:
            return self._names.get(job_id, job_id)

    def on_session_started(self, event: SessionStarted) -> None:
        logging.info(f"Upload session {event.session_id} started with {len(event.job_ids)} file(s)")

    def on_job_progress(self, event: JobProgress) -> None:
        with self._lock:
            last = self._last_logged.get(event.job_id, -self.progress_step)
            step_reached = event.percent >= 100 or event.percent - last >= self.progress_step
            if step_reached:
                self._last_logged[event.job_id] = event.percent
        if not step_reached:
            return
        line = (f"{self._name(event.job_id)}: {event.percent:.0f}% "
                f"({format_bytes(event.loaded)} of {format_bytes(event.total)}, "
                f"{format_speed(event.throughput_bytes_per_sec)}, ETA {format_eta(event.eta_seconds)})")
        if event.overall is not None:
            line += f" | overall {event.overall.percent:.0f}%"
        logging.info(line)

    def on_job_success(self, event: JobSuccess) -> None:
        logging.info(f"Uploaded {self._name(event.job_id)}")

    def on_job_error(self, event: JobError) -> None:
        error = event.classified_error
        message = error.display_message if error else "Unknown error"
        logging.error(f"Upload failed for {self._name(event.job_id)} after {event.attempts} attempt(s): {message}")

    def on_job_retrying(self, event: JobRetrying) -> None:
        with self._lock:
            self._last_logged.pop(event.job_id, None)
        logging.warning(f"Retrying {self._name(event.job_id)} "
                        f"(attempt {event.attempt}/{event.max_attempts}) in {event.delay_seconds:g}s")

    def on_session_complete(self, event: SessionComplete) -> None:
        logging.info(f"Session {event.session_id} finished: {len(event.succeeded)} succeeded, "
                     f"{len(event.failed)} failed, {len(event.rejected)} rejected")


class RichUIManager(BaseUIManager):
    """Live progress bars powered by the `rich` library.

    One bar per file plus an overall bar. Log lines go through the console
    above the bars.
    """

    def __init__(self, console: Optional[Console] = None, version: str = ""):
        """Initializes the RichUIManager.

        Args:
            console: The console to render on. Defaults to stderr.
            version: The application version shown in the overall bar.
        """
        self.console = console or Console(stderr=True)
        self.version = version
        self.progress = Progress(
            TextColumn("[bold]{task.description}", justify="left"),
            BarColumn(bar_width=None, complete_style="green", finished_style="bold green"),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            "•",
            DownloadColumn(binary_units=True),
            "•",
            TransferSpeedColumn(),
            "•",
            TimeRemainingColumn(),
            console=self.console,
            expand=True,
        )
        self._tasks: Dict[str, TaskID] = {}
        self._totals: Dict[str, int] = {}
        self._names: Dict[str, str] = {}
        self._overall_task: Optional[TaskID] = None
        self._lock = threading.Lock()
        self._started = False

    def __enter__(self):
        super().__enter__()
        self.progress.start()
        self._started = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        super().__exit__(exc_type, exc_val, exc_tb)
        try:
            self.progress.stop()
        except Exception as e:
            logging.error(f"Error stopping progress display: {e}")
        self._started = False

    def pause(self) -> None:
        if self._started:
            self.progress.stop()
            self._started = False

    def resume(self) -> None:
        if not self._started:
            self.progress.start()
            self._started = True

    def log(self, message: str) -> None:
        self.progress.console.log(message)

    def register_names(self, names: Dict[str, str]) -> None:
        with self._lock:
            self._names.update(names)
            existing = [(self._tasks[job_id], name) for job_id, name in names.items() if job_id in self._tasks]
        for task_id, name in existing:
            self.progress.update(task_id, description=f"[cyan]{smart_truncate(name, 40)}")

    def _task_for(self, job_id: str, total: int) -> TaskID:
        with self._lock:
            task_id = self._tasks.get(job_id)
            if task_id is None:
                name = smart_truncate(self._names.get(job_id, job_id), 40)
                task_id = self.progress.add_task(f"[cyan]{name}", total=total or 1)
                self._tasks[job_id] = task_id
            return task_id

    def on_session_started(self, event: SessionStarted) -> None:
        label = f"[green]Overall{' v' + self.version if self.version else ''}"
        with self._lock:
            if self._overall_task is None:
                self._overall_task = self.progress.add_task(label, total=100)
        for job_id in event.job_ids:
            self._task_for(job_id, 0)

    def _update_overall(self, overall: Optional[OverallProgress]) -> None:
        if overall is None or self._overall_task is None:
            return
        if overall.total_bytes:
            self.progress.update(self._overall_task, total=overall.total_bytes, completed=overall.loaded_bytes)
        else:
            # Zero-byte sessions only have a percentage to show
            self.progress.update(self._overall_task, total=100, completed=overall.percent)

    def on_job_progress(self, event: JobProgress) -> None:
        task_id = self._task_for(event.job_id, event.total)
        with self._lock:
            self._totals[event.job_id] = event.total
        self.progress.update(task_id, total=event.total or 1, completed=event.loaded if event.total else 0)
        self._update_overall(event.overall)

    def on_job_success(self, event: JobSuccess) -> None:
        task_id = self._task_for(event.job_id, 0)
        with self._lock:
            total = self._totals.get(event.job_id) or 1
        self.progress.update(task_id, total=total, completed=total,
                             description=f"[green]{smart_truncate(self._names.get(event.job_id, event.job_id), 40)}")
        self._update_overall(event.overall)

    def on_job_error(self, event: JobError) -> None:
        task_id = self._task_for(event.job_id, 0)
        name = smart_truncate(self._names.get(event.job_id, event.job_id), 40)
        self.progress.update(task_id, description=f"[red]{name}")
        error = event.classified_error
        if error is not None:
            self.log(f"[bold red]{error.title}[/]: {name}: {error.message}")

    def on_job_retrying(self, event: JobRetrying) -> None:
        task_id = self._task_for(event.job_id, 0)
        name = smart_truncate(self._names.get(event.job_id, event.job_id), 40)
        self.progress.update(task_id, completed=0, description=f"[yellow]{name} (retry {event.attempt}/{event.max_attempts})")

    def on_job_removed(self, event: JobRemoved) -> None:
        with self._lock:
            task_id = self._tasks.pop(event.job_id, None)
        if task_id is not None:
            self.progress.remove_task(task_id)

    def on_session_complete(self, event: SessionComplete) -> None:
        if self._overall_task is not None:
            self.progress.update(self._overall_task, description="[bold green]Overall (done)")
        self.log(f"Finished: [green]{len(event.succeeded)} uploaded[/], [red]{len(event.failed)} failed[/]")


__all__ = ["BaseUIManager", "RichUIManager", "SimpleUIManager"]
