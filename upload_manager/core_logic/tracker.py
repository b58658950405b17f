"""Authoritative state of every submitted upload job.

Thread Safety:
    - Every job has its own lock; a state change holds only that job's lock.
    - The job map has a separate lock held only while ids are inserted,
      removed or listed. Progress ticks for different jobs never contend.
    - Readers receive copies of the job records, never the live objects.
"""
import dataclasses
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from ..exceptions import InvalidInput, InvalidTransition, JobActive, UnknownJob
from ..models import ClassifiedError, DestinationDirective, JobStatus, UploadJob
from .progress import compute_eta, compute_throughput

logger = logging.getLogger(__name__)


class UploadJobTracker:
    """Owns the upload jobs and is the only code that mutates them.

    State machine:
        QUEUED -> UPLOADING -> {SUCCESS, ERROR, CANCELLED}
        QUEUED -> CANCELLED
        ERROR -> UPLOADING (retry), ERROR -> CANCELLED
    SUCCESS and CANCELLED are terminal.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """Initializes an empty tracker.

        Args:
            clock: Source of `started_at` and elapsed time readings.
        """
        self._clock = clock
        self._jobs: Dict[str, UploadJob] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._map_lock = threading.Lock()

    @contextmanager
    def _locked(self, job_id: str) -> Iterator[UploadJob]:
        with self._map_lock:
            lock = self._locks.get(job_id)
        if lock is None:
            raise UnknownJob(job_id)
        with lock:
            job = self._jobs.get(job_id)
            if job is None:
                # Removed while we were waiting for the lock
                raise UnknownJob(job_id)
            yield job

    @staticmethod
    def _snapshot(job: UploadJob) -> UploadJob:
        return dataclasses.replace(job)

    def create_job(self, file_name: str, size_bytes: int, destination: str, source: Optional[str] = None) -> str:
        """Registers a new job in the QUEUED state.

        Raises:
            InvalidInput: If the name is empty or the size is not a
                non-negative integer.
        """
        if not isinstance(file_name, str) or not file_name.strip():
            raise InvalidInput("File name must not be empty")
        if isinstance(size_bytes, bool) or not isinstance(size_bytes, int):
            raise InvalidInput(f"File size must be an integer (got {size_bytes!r}) for '{file_name}'")
        if size_bytes < 0:
            raise InvalidInput(f"File size must not be negative (got {size_bytes}) for '{file_name}'")

        job_id = f"upload_{uuid.uuid4().hex[:12]}"
        job = UploadJob(
            id=job_id,
            file_name=file_name,
            file_size_bytes=int(size_bytes),
            destination=destination,
            source=source,
        )
        with self._map_lock:
            self._jobs[job_id] = job
            self._locks[job_id] = threading.Lock()
        logger.debug(f"Created job {job_id} for '{file_name}' ({size_bytes} bytes) -> {destination}")
        return job_id

    def begin_uploading(self, job_id: str, directive: DestinationDirective = DestinationDirective.NORMAL) -> UploadJob:
        """Moves a QUEUED or ERROR job to UPLOADING and starts a new attempt.

        Returns:
            A snapshot of the job after the transition.

        Raises:
            UnknownJob: If the id is not tracked.
            InvalidTransition: If the job is uploading, succeeded or cancelled.
        """
        with self._locked(job_id) as job:
            if job.status not in (JobStatus.QUEUED, JobStatus.ERROR):
                raise InvalidTransition(job_id, job.status.value, JobStatus.UPLOADING.value)
            job.status = JobStatus.UPLOADING
            job.bytes_loaded = 0
            job.attempts += 1
            job.started_at = self._clock()
            job.throughput_bytes_per_sec = 0.0
            job.eta_seconds = None
            job.last_error = None
            job.directive = directive
            logger.debug(f"Job {job_id} uploading (attempt {job.attempts}, directive={directive.value})")
            return self._snapshot(job)

    def record_progress(self, job_id: str, loaded: int, total: Optional[int] = None, attempt: Optional[int] = None) -> bool:
        """Applies a transport progress tick.

        Ticks that arrive for a job that is not uploading, that belong to an
        earlier attempt, or that would move the byte count backwards are
        ignored.

        Args:
            job_id: The job the tick belongs to.
            loaded: Bytes transferred so far in this attempt.
            total: Total bytes the transport expects to send, informational.
            attempt: The attempt number the tick was produced for, if known.

        Returns:
            True if the tick was applied, False if it was ignored.

        Raises:
            UnknownJob: If the id is not tracked.
        """
        with self._locked(job_id) as job:
            if job.status != JobStatus.UPLOADING:
                logger.debug(f"Ignoring progress tick for job {job_id} in state '{job.status.value}'")
                return False
            if attempt is not None and attempt != job.attempts:
                logger.debug(f"Ignoring stale progress tick for job {job_id} (attempt {attempt}, current {job.attempts})")
                return False

            if total is not None and total != job.file_size_bytes:
                logger.debug(f"Transport reports total {total} for job {job_id}, expected {job.file_size_bytes}")
            loaded = min(max(0, int(loaded)), job.file_size_bytes)
            if loaded < job.bytes_loaded:
                logger.debug(f"Ignoring out-of-order tick for job {job_id} ({loaded} < {job.bytes_loaded})")
                return False

            job.bytes_loaded = loaded
            elapsed = self._clock() - (job.started_at or 0.0)
            job.throughput_bytes_per_sec = compute_throughput(loaded, elapsed)
            job.eta_seconds = compute_eta(job.file_size_bytes - loaded, job.throughput_bytes_per_sec)
            return True

    def mark_success(self, job_id: str, stored_name: Optional[str] = None) -> UploadJob:
        """Moves an UPLOADING job to SUCCESS. Idempotent for succeeded jobs."""
        with self._locked(job_id) as job:
            if job.status == JobStatus.SUCCESS:
                return self._snapshot(job)
            if job.status != JobStatus.UPLOADING:
                raise InvalidTransition(job_id, job.status.value, JobStatus.SUCCESS.value)
            job.status = JobStatus.SUCCESS
            job.bytes_loaded = job.file_size_bytes
            job.eta_seconds = 0.0
            job.stored_name = stored_name or job.file_name
            logger.debug(f"Job {job_id} succeeded after {job.attempts} attempt(s)")
            return self._snapshot(job)

    def mark_error(self, job_id: str, classified_error: ClassifiedError) -> UploadJob:
        """Moves an UPLOADING job to ERROR and records the classified failure."""
        with self._locked(job_id) as job:
            if job.status != JobStatus.UPLOADING:
                raise InvalidTransition(job_id, job.status.value, JobStatus.ERROR.value)
            job.status = JobStatus.ERROR
            job.last_error = classified_error
            job.throughput_bytes_per_sec = 0.0
            job.eta_seconds = None
            return self._snapshot(job)

    def update_error(self, job_id: str, classified_error: ClassifiedError) -> UploadJob:
        """Replaces the recorded failure of a job that is in the ERROR state."""
        with self._locked(job_id) as job:
            if job.status != JobStatus.ERROR:
                raise InvalidTransition(job_id, job.status.value, JobStatus.ERROR.value)
            job.last_error = classified_error
            return self._snapshot(job)

    def cancel(self, job_id: str) -> bool:
        """Cancels a job. Succeeded and already cancelled jobs are left untouched.

        Returns:
            True if the job changed state.
        """
        with self._locked(job_id) as job:
            if job.status in (JobStatus.SUCCESS, JobStatus.CANCELLED):
                return False
            job.status = JobStatus.CANCELLED
            job.throughput_bytes_per_sec = 0.0
            job.eta_seconds = None
            logger.debug(f"Job {job_id} cancelled")
            return True

    def remove(self, job_id: str) -> UploadJob:
        """Deletes a finished job.

        Returns:
            The last snapshot of the removed job.

        Raises:
            JobActive: If the job is queued or uploading.
        """
        with self._locked(job_id) as job:
            if job.status.is_active:
                raise JobActive(job_id)
            with self._map_lock:
                del self._jobs[job_id]
                del self._locks[job_id]
            logger.debug(f"Job {job_id} removed")
            return self._snapshot(job)

    def get_job(self, job_id: str) -> UploadJob:
        with self._locked(job_id) as job:
            return self._snapshot(job)

    def has_job(self, job_id: str) -> bool:
        with self._map_lock:
            return job_id in self._jobs

    def get_jobs(self, job_ids: Sequence[str]) -> List[UploadJob]:
        """Snapshots of the given jobs, in order, skipping ids no longer tracked."""
        jobs = []
        for job_id in job_ids:
            try:
                jobs.append(self.get_job(job_id))
            except UnknownJob:
                continue
        return jobs

    def all_jobs(self) -> List[UploadJob]:
        with self._map_lock:
            job_ids = list(self._jobs)
        return self.get_jobs(job_ids)
