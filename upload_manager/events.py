"""Lifecycle events emitted by the upload engine.

Presentation code (and tests, and logging) subscribe to an `EventBus` and
receive typed event records. Each event carries the id of the session it
belongs to and a `name` matching the hyphenated event names used by
front ends (`job-progress`, `session-complete`, ...).

Emitting never blocks: events are queued and delivered by a single
dispatcher thread, so every subscriber sees the same order, the order in
which the engine emitted them. Subscribers may call back into the engine.
"""
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, ClassVar, List, Optional

from .core_logic.progress import OverallProgress
from .models import ClassifiedError, ErrorKind, JobResult, RecoveryAction, RejectedFile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadEvent:
    name: ClassVar[str] = "event"
    session_id: str


@dataclass(frozen=True)
class SessionStarted(UploadEvent):
    name: ClassVar[str] = "session-started"
    job_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class JobProgress(UploadEvent):
    """A progress tick, with the session totals recomputed at that tick."""
    name: ClassVar[str] = "job-progress"
    job_id: str = ""
    loaded: int = 0
    total: int = 0
    percent: float = 0.0
    throughput_bytes_per_sec: float = 0.0
    eta_seconds: Optional[float] = None
    overall: Optional[OverallProgress] = None


@dataclass(frozen=True)
class JobSuccess(UploadEvent):
    name: ClassVar[str] = "job-success"
    job_id: str = ""
    stored_name: Optional[str] = None
    overall: Optional[OverallProgress] = None


@dataclass(frozen=True)
class JobError(UploadEvent):
    name: ClassVar[str] = "job-error"
    job_id: str = ""
    classified_error: Optional[ClassifiedError] = None
    recovery_action: Optional[RecoveryAction] = None
    attempts: int = 0
    # Retry-exhausted transient failures report PERMANENT here
    kind: Optional[ErrorKind] = None


@dataclass(frozen=True)
class JobRetrying(UploadEvent):
    name: ClassVar[str] = "job-retrying"
    job_id: str = ""
    attempt: int = 0
    max_attempts: int = 0
    delay_seconds: float = 0.0


@dataclass(frozen=True)
class JobResolved(UploadEvent):
    name: ClassVar[str] = "job-resolved"
    job_id: str = ""
    choice: str = ""


@dataclass(frozen=True)
class JobCancelled(UploadEvent):
    name: ClassVar[str] = "job-cancelled"
    job_id: str = ""


@dataclass(frozen=True)
class JobRemoved(UploadEvent):
    name: ClassVar[str] = "job-removed"
    job_id: str = ""


@dataclass(frozen=True)
class SessionComplete(UploadEvent):
    name: ClassVar[str] = "session-complete"
    results: List[JobResult] = field(default_factory=list)
    rejected: List[RejectedFile] = field(default_factory=list)

    @property
    def succeeded(self) -> List[JobResult]:
        return [result for result in self.results if result.success]

    @property
    def failed(self) -> List[JobResult]:
        return [result for result in self.results if not result.success]


EventCallback = Callable[[UploadEvent], None]


class EventBus:
    """Queues events and delivers them to subscribers from one dispatcher thread.

    A subscriber that raises is logged and skipped; it never breaks the
    engine or the other subscribers.
    """

    def __init__(self, on_delivered: Optional[EventCallback] = None):
        """Initializes the bus.

        Args:
            on_delivered: Called on the dispatcher thread after all subscribers
                have seen an event.
        """
        self._subscribers: List[EventCallback] = []
        self._lock = threading.Lock()
        self._queue: "queue.Queue[Optional[UploadEvent]]" = queue.Queue()
        self._on_delivered = on_delivered
        self._thread: Optional[threading.Thread] = None
        self._closed = False

    def start(self) -> None:
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._closed = False
                self._thread = threading.Thread(target=self._dispatch_loop, name="UploadEventDispatcher", daemon=True)
                self._thread.start()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Registers a callback and returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: UploadEvent) -> None:
        if self._closed:
            logger.debug(f"Dropping '{event.name}' event, the event bus is closed")
            return
        if self._thread is None:
            self.start()
        self._queue.put(event)

    def flush(self) -> None:
        """Blocks until every event emitted so far has been delivered."""
        self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        """Delivers the queued events, then stops the dispatcher thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread
        if thread is not None:
            self._queue.put(None)
            thread.join(timeout=timeout)

    def _dispatch_loop(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    break
                self._deliver(event)
            finally:
                self._queue.task_done()

    def _deliver(self, event: UploadEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event subscriber {callback!r} failed while handling '{event.name}'")
        if self._on_delivered is not None:
            try:
                self._on_delivered(event)
            except Exception:
                logger.exception(f"Delivery hook failed while handling '{event.name}'")
