"""
session.py - Batch upload sessions and the engine facade

Encapsulates:
1. Session bookkeeping (which jobs belong to which batch, rejected entries,
   results of removed jobs, completion detection)
2. Attempt execution on worker threads with an optional concurrency cap
3. Failure handling: classification, automatic retries and recovery prompts
4. The caller-facing API (`UploadManager`) that turns tracker errors into
   `ActionResult` values

Thread Safety:
    Terminal outcomes (success, failure, cancel, removal) are applied, emitted
    and checked for session completion under one engine lock, so
    `session-complete` is always queued after the last job event of its
    session. Progress ticks update the tracker without the engine lock and
    take it only to re-check the job and queue their event.
"""
import dataclasses
import logging
import threading
import time
import uuid
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..events import (
    EventBus,
    EventCallback,
    JobCancelled,
    JobError,
    JobProgress,
    JobRemoved,
    JobRetrying,
    JobSuccess,
    SessionComplete,
    SessionStarted,
    UploadEvent,
)
from ..exceptions import (
    EmptyBatch,
    InvalidInput,
    InvalidTransition,
    JobActive,
    TrackerError,
    UnknownJob,
    UnknownSession,
)
from ..models import (
    ActionResult,
    DestinationDirective,
    ErrorKind,
    JobResult,
    JobStatus,
    RejectedFile,
    UploadFile,
    UploadJob,
)
from ..transports.base import Transport
from .error_classifier import ErrorClassifier
from .progress import OverallProgress, compute_overall_progress
from .recovery import RecoveryCoordinator
from .resilience import RetryDecision, RetryPolicy
from .tracker import UploadJobTracker

logger = logging.getLogger(__name__)

# scheduler(delay_seconds, callback) -> handle with a cancel() method, or None
Scheduler = Callable[[float, Callable[[], None]], Any]


def timer_scheduler(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


@dataclasses.dataclass
class UploadSession:
    """One submitted batch of files sharing a destination.

    Attributes:
        id: Session identifier, e.g. 'session_3f2a9c1b7d4e'.
        destination: Folder the batch uploads into.
        job_ids: Jobs of this session that are still tracked, in submission order.
        rejected: Batch entries refused before a job was created.
        removed_results: Final outcomes of jobs that were skipped, discarded or cleared.
        created_at: Wall clock time of the submission.
    """
    id: str
    destination: str
    job_ids: List[str] = dataclasses.field(default_factory=list)
    rejected: List[RejectedFile] = dataclasses.field(default_factory=list)
    removed_results: List[JobResult] = dataclasses.field(default_factory=list)
    created_at: float = dataclasses.field(default_factory=time.time)
    complete_emitted: bool = False
    settled: threading.Event = dataclasses.field(default_factory=threading.Event, repr=False)


class UploadManager:
    """Facade over the upload engine.

    Submits batches, runs every attempt through the transport, retries
    transient failures, surfaces the rest as recovery prompts and reports
    everything through lifecycle events.

    Attributes:
        transport: Moves the bytes of each attempt.
        tracker: Authoritative job state.
        classifier: Normalizes transfer failures.
        retry_policy: Decides automatic retries and their delays.
        recovery: Applies user decisions for failed jobs.
        events: Delivers lifecycle events to subscribers.
    """

    def __init__(
        self,
        transport: Transport,
        retry_policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        max_concurrent_uploads: int = 0,
        scheduler: Scheduler = timer_scheduler,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initializes the manager.

        Args:
            transport: The transport used for every attempt.
            retry_policy: Defaults to 3 attempts with 2s/4s backoff capped at 30s.
            classifier: Defaults to an `ErrorClassifier` with a 100 MB size limit.
            max_concurrent_uploads: Maximum simultaneous transfers, 0 for no limit.
            scheduler: Runs a callback after a delay; used for automatic retries.
            clock: Monotonic clock used for throughput and ETA.
        """
        if max_concurrent_uploads < 0:
            raise ValueError("max_concurrent_uploads must not be negative")
        self.transport = transport
        self.tracker = UploadJobTracker(clock=clock)
        self.classifier = classifier or ErrorClassifier()
        self.retry_policy = retry_policy or RetryPolicy()
        self.events = EventBus(on_delivered=self._on_event_delivered)
        self.recovery = RecoveryCoordinator(
            self.tracker,
            self.retry_policy,
            session_of=self._session_id_for,
            relaunch=self._relaunch,
            job_removed=self._job_removed,
            release_pending=self._release_pending,
        )
        self.max_concurrent_uploads = max_concurrent_uploads
        self._slots = threading.BoundedSemaphore(max_concurrent_uploads) if max_concurrent_uploads > 0 else None
        self._scheduler = scheduler
        self._lock = threading.RLock()
        self._sessions: "OrderedDict[str, UploadSession]" = OrderedDict()
        self._job_sessions: Dict[str, str] = {}
        # Jobs with an attempt scheduled or waiting to start
        self._pending: Set[str] = set()
        self._timers: Dict[str, Any] = {}
        self._closed = False

    def __enter__(self) -> "UploadManager":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # --- Caller API -------------------------------------------------------

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Registers an event subscriber and returns its unsubscribe function."""
        return self.events.subscribe(callback)

    def submit(self, files: Iterable[UploadFile], destination: str) -> str:
        """Creates a session for a batch of files and starts uploading them.

        Entries with an empty name or a negative size are rejected into
        `session.rejected`; the rest of the batch proceeds.

        Returns:
            The new session id.

        Raises:
            EmptyBatch: If no files were given.
        """
        files = list(files or [])
        if not files:
            raise EmptyBatch("No files were provided for upload")
        if self._closed:
            raise RuntimeError("UploadManager has been shut down")

        session = UploadSession(id=f"session_{uuid.uuid4().hex[:12]}", destination=destination)
        for upload_file in files:
            try:
                job_id = self.tracker.create_job(upload_file.name, upload_file.size_bytes, destination, upload_file.source)
            except InvalidInput as e:
                logger.warning(f"Rejected '{upload_file.name}': {e}")
                session.rejected.append(RejectedFile(upload_file.name, str(e)))
                continue
            session.job_ids.append(job_id)

        with self._lock:
            self._sessions[session.id] = session
            for job_id in session.job_ids:
                self._job_sessions[job_id] = session.id
                self._pending.add(job_id)
            self.events.emit(SessionStarted(session.id, job_ids=list(session.job_ids)))
            if not session.job_ids:
                self._check_complete(session.id)

        logger.info(f"Session {session.id}: {len(session.job_ids)} file(s) queued for '{destination}'"
                    + (f", {len(session.rejected)} rejected" if session.rejected else ""))
        for job_id in session.job_ids:
            self._start_worker(job_id, DestinationDirective.NORMAL)
        return session.id

    def cancel(self, job_id: str) -> ActionResult:
        """Cancels one job, aborting its transfer and any pending retry."""
        try:
            changed = self._cancel_job(job_id)
        except TrackerError as e:
            return ActionResult(False, str(e))
        if not changed:
            return ActionResult(False, f"Job {job_id} has already finished")
        return ActionResult(True, count=1)

    def cancel_all(self, session_id: str) -> ActionResult:
        """Cancels every job of a session that has not succeeded yet."""
        try:
            job_ids = list(self.get_session(session_id).job_ids)
        except UnknownSession as e:
            return ActionResult(False, str(e))
        cancelled = 0
        for job_id in job_ids:
            try:
                if self._cancel_job(job_id):
                    cancelled += 1
            except UnknownJob:
                continue
        logger.info(f"Session {session_id}: cancelled {cancelled} job(s)")
        return ActionResult(True, count=cancelled)

    def clear_completed(self, session_id: str) -> ActionResult:
        """Removes every finished job of a session whose removal is not blocked.

        Succeeded, cancelled and failed jobs are removed; a failed job with an
        automatic retry pending stays. The session is dropped once it has no
        jobs left.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return ActionResult(False, str(UnknownSession(session_id)))
            removed = 0
            for job_id in list(session.job_ids):
                if job_id in self._pending:
                    continue
                try:
                    snapshot = self.tracker.remove(job_id)
                except (JobActive, UnknownJob) as e:
                    logger.debug(f"Not clearing {job_id}: {e}")
                    continue
                self._forget_job(session, snapshot)
                removed += 1
            if not session.job_ids:
                self._sessions.pop(session_id, None)
                logger.debug(f"Session {session_id} has no jobs left and was closed")
        return ActionResult(True, count=removed)

    def cancel_session(self, session_id: str) -> ActionResult:
        """Cancels a session's remaining jobs, then clears the whole session."""
        result = self.cancel_all(session_id)
        if not result:
            return result
        cleared = self.clear_completed(session_id)
        return ActionResult(cleared.ok, cleared.reason, count=result.count)

    def retry(self, job_id: str) -> ActionResult:
        return self.resolve(job_id, "retry")

    def resolve(self, job_id: str, choice: str) -> ActionResult:
        """Applies a recovery choice ('retry', 'overwrite', 'rename', 'skip', 'discard')."""
        try:
            self.recovery.resolve(job_id, choice)
        except TrackerError as e:
            logger.warning(f"Could not apply '{choice}' to job {job_id}: {e}")
            return ActionResult(False, str(e))
        return ActionResult(True, count=1)

    def choices_for(self, job_id: str) -> List[str]:
        return self.recovery.choices_for(self.tracker.get_job(job_id))

    # --- Queries ----------------------------------------------------------

    def get_session(self, session_id: str) -> UploadSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        return session

    def sessions(self) -> List[UploadSession]:
        with self._lock:
            return list(self._sessions.values())

    def session_jobs(self, session_id: str) -> List[UploadJob]:
        session = self.get_session(session_id)
        with self._lock:
            job_ids = list(session.job_ids)
        return self.tracker.get_jobs(job_ids)

    def overall_progress(self, session_id: str) -> OverallProgress:
        return compute_overall_progress(self.session_jobs(session_id))

    def get_queue_status(self, session_id: str) -> Dict[str, int]:
        """Counts of the session's jobs by state, plus the number of files rejected."""
        progress = self.overall_progress(session_id)
        return {
            "queued": progress.queued,
            "active": progress.uploading,
            "succeeded": progress.succeeded,
            "failed": progress.failed,
            "cancelled": progress.cancelled,
            "rejected": len(self.get_session(session_id).rejected),
            "total": progress.job_count,
        }

    def wait(self, session_id: str, timeout: Optional[float] = None) -> bool:
        """Blocks until the session's `session-complete` event has been delivered.

        Returns:
            False if the timeout expired first.
        """
        return self.get_session(session_id).settled.wait(timeout)

    def shutdown(self) -> None:
        """Cancels pending retries, delivers queued events and closes the transport."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            if hasattr(timer, "cancel"):
                timer.cancel()
        self.events.close()
        self.transport.close()
        logger.debug("UploadManager shut down")

    # --- Attempt execution ------------------------------------------------

    def _start_worker(self, job_id: str, directive: DestinationDirective) -> None:
        worker = threading.Thread(
            target=self._run_attempt,
            args=(job_id, directive),
            name=f"Upload-{job_id}",
            daemon=True,
        )
        worker.start()

    def _run_attempt(self, job_id: str, directive: DestinationDirective) -> None:
        """Runs one transfer attempt for a job. Executes on a worker thread."""
        retry_decision: Optional[RetryDecision] = None
        if self._slots is not None:
            self._slots.acquire()
        try:
            with self._lock:
                self._pending.discard(job_id)
                try:
                    job = self.tracker.begin_uploading(job_id, directive)
                except (InvalidTransition, UnknownJob) as e:
                    # Cancelled or removed while waiting
                    logger.debug(f"Not starting attempt for {job_id}: {e}")
                    session_id = self._job_sessions.get(job_id)
                    if session_id is not None:
                        self._check_complete(session_id)
                    return
                session_id = self._job_sessions[job_id]

            attempt = job.attempts
            logger.info(f"Uploading '{job.file_name}' (attempt {attempt}/{self.retry_policy.max_attempts})")

            def on_progress(loaded: int, total: int) -> None:
                self._on_progress(session_id, job_id, attempt, loaded, total)

            try:
                stored_name = self.transport.transfer(job, directive, on_progress)
            except Exception as e:
                retry_decision = self._handle_failure(job_id, e)
            else:
                self._handle_success(job_id, stored_name)
        finally:
            if self._slots is not None:
                self._slots.release()

        if retry_decision is not None:
            self._schedule_retry(job_id, directive, retry_decision)

    def _on_progress(self, session_id: str, job_id: str, attempt: int, loaded: int, total: int) -> None:
        try:
            applied = self.tracker.record_progress(job_id, loaded, total, attempt=attempt)
        except UnknownJob:
            return
        if not applied:
            return
        with self._lock:
            session = self._sessions.get(session_id)
            job_ids = list(session.job_ids) if session is not None else [job_id]
            jobs = self.tracker.get_jobs(job_ids)
            job = next((j for j in jobs if j.id == job_id), None)
            # A cancel or a newer attempt may have landed since the tick was applied
            if job is None or job.status != JobStatus.UPLOADING or job.attempts != attempt:
                return
            self.events.emit(JobProgress(
                session_id,
                job_id=job_id,
                loaded=job.bytes_loaded,
                total=job.file_size_bytes,
                percent=job.percent,
                throughput_bytes_per_sec=job.throughput_bytes_per_sec,
                eta_seconds=job.eta_seconds,
                overall=compute_overall_progress(jobs),
            ))

    def _handle_success(self, job_id: str, stored_name: Optional[str]) -> None:
        with self._lock:
            try:
                job = self.tracker.mark_success(job_id, stored_name)
            except (InvalidTransition, UnknownJob) as e:
                logger.info(f"Upload of {job_id} finished after it was cancelled: {e}")
                return
            session_id = self._job_sessions[job_id]
            logger.info(f"Upload complete: '{job.file_name}' -> {job.destination}/{job.stored_name}")
            session = self._sessions[session_id]
            self.events.emit(JobSuccess(
                session_id,
                job_id=job_id,
                stored_name=job.stored_name,
                overall=compute_overall_progress(self.tracker.get_jobs(session.job_ids)),
            ))
            self._check_complete(session_id)

    def _handle_failure(self, job_id: str, failure: BaseException) -> Optional[RetryDecision]:
        """Records a failed attempt and decides what happens next.

        Returns:
            The retry decision if another attempt must be scheduled, else None.
        """
        classified = self.classifier.classify(failure)
        with self._lock:
            try:
                job = self.tracker.mark_error(job_id, classified)
            except (InvalidTransition, UnknownJob) as e:
                logger.debug(f"Ignoring failure of {job_id} after cancellation ({failure}): {e}")
                return None
            session_id = self._job_sessions[job_id]

            decision = self.retry_policy.should_retry(job)
            if decision.retry:
                self._pending.add(job_id)
                self.events.emit(JobRetrying(
                    session_id,
                    job_id=job_id,
                    attempt=decision.next_attempt,
                    max_attempts=self.retry_policy.max_attempts,
                    delay_seconds=decision.delay_seconds,
                ))
                return decision

            if decision.exhausted and classified.kind is ErrorKind.TRANSIENT:
                classified = dataclasses.replace(classified, retries_exhausted=True)
                job = self.tracker.update_error(job_id, classified)

            action = self.recovery.recovery_action_for(job)
            logger.warning(f"Upload failed for '{job.file_name}': {classified.title} ({classified.detail})")
            logger.debug(f"Error details: {classified.to_log_dict(job)}")
            self.events.emit(JobError(
                session_id,
                job_id=job_id,
                classified_error=classified,
                recovery_action=action,
                attempts=job.attempts,
                kind=classified.effective_kind,
            ))
            self._check_complete(session_id)
        return None

    def _schedule_retry(self, job_id: str, directive: DestinationDirective, decision: RetryDecision) -> None:
        def fire() -> None:
            with self._lock:
                self._timers.pop(job_id, None)
            self._run_attempt(job_id, directive)

        with self._lock:
            if job_id not in self._pending or self._closed:
                return
        handle = self._scheduler(decision.delay_seconds, fire)
        if handle is not None:
            with self._lock:
                if job_id in self._pending:
                    self._timers[job_id] = handle

    def _relaunch(self, job_id: str, directive: DestinationDirective, event: UploadEvent) -> None:
        """Starts a user-requested attempt for a failed job."""
        with self._lock:
            if job_id in self._pending:
                raise InvalidTransition(job_id, JobStatus.ERROR.value, "uploading (an attempt is already pending)")
            session = self._sessions[self._session_id_for(job_id)]
            self._pending.add(job_id)
            session.complete_emitted = False
            session.settled.clear()
            self.events.emit(event)
        self._start_worker(job_id, directive)

    def _cancel_job(self, job_id: str) -> bool:
        with self._lock:
            before = self.tracker.get_job(job_id)
            changed = self.tracker.cancel(job_id)
            self._release_pending(job_id)
            if changed:
                session_id = self._job_sessions[job_id]
                logger.info(f"Cancelled upload of '{before.file_name}'")
                self.events.emit(JobCancelled(session_id, job_id=job_id))
                self._check_complete(session_id)
        if changed and before.status == JobStatus.UPLOADING:
            self.transport.abort(before)
        return changed

    def _release_pending(self, job_id: str) -> None:
        """Forgets a scheduled attempt and stops its timer, if any."""
        with self._lock:
            self._pending.discard(job_id)
            timer = self._timers.pop(job_id, None)
        if timer is not None and hasattr(timer, "cancel"):
            timer.cancel()

    def _job_removed(self, snapshot: UploadJob) -> None:
        with self._lock:
            session = self._sessions.get(self._job_sessions.get(snapshot.id, ""))
            if session is None:
                return
            self._forget_job(session, snapshot)
            # The outcome changed, report the session again once it settles
            session.complete_emitted = False
            session.settled.clear()
            self._check_complete(session.id)

    def _forget_job(self, session: UploadSession, snapshot: UploadJob) -> None:
        """Drops a removed job from its session, keeping its outcome. Caller holds the lock."""
        if snapshot.id in session.job_ids:
            session.job_ids.remove(snapshot.id)
        self._job_sessions.pop(snapshot.id, None)
        session.removed_results.append(JobResult.from_job(snapshot))
        self.events.emit(JobRemoved(session.id, job_id=snapshot.id))

    def _session_id_for(self, job_id: str) -> str:
        with self._lock:
            session_id = self._job_sessions.get(job_id)
        if session_id is None:
            raise UnknownJob(job_id)
        return session_id

    def _check_complete(self, session_id: str) -> None:
        """Emits `session-complete` once every job of the session has settled. Caller holds the lock."""
        session = self._sessions.get(session_id)
        if session is None or session.complete_emitted:
            return
        jobs = self.tracker.get_jobs(session.job_ids)
        for job in jobs:
            if job.status.is_active or job.id in self._pending:
                return

        results = [JobResult.from_job(job) for job in jobs] + list(session.removed_results)
        session.complete_emitted = True
        succeeded = sum(1 for result in results if result.success)
        logger.info(f"Session {session_id} complete: {succeeded}/{len(results)} file(s) uploaded"
                    + (f", {len(session.rejected)} rejected" if session.rejected else ""))
        self.events.emit(SessionComplete(session_id, results=results, rejected=list(session.rejected)))

    def _on_event_delivered(self, event: UploadEvent) -> None:
        if isinstance(event, SessionComplete):
            with self._lock:
                session = self._sessions.get(event.session_id)
                if session is not None and session.complete_emitted:
                    session.settled.set()
