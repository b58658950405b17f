"""Turns classified failures into user-facing choices and applies the answers.

The coordinator never talks to a transport directly. A re-upload is handed
back to the session engine through the `relaunch` callable, which runs the
attempt on a worker thread once a transfer slot is free.
"""
import logging
from typing import Callable, List

from ..events import JobResolved, JobRetrying, UploadEvent
from ..exceptions import InvalidInput, InvalidTransition
from ..models import (
    NAME_CONFLICT_RECOVERY,
    NO_RECOVERY,
    DestinationDirective,
    ErrorKind,
    JobStatus,
    PromptOption,
    RecoveryAction,
    RecoveryActionType,
    UploadJob,
)
from .resilience import RetryPolicy
from .tracker import UploadJobTracker

logger = logging.getLogger(__name__)

RETRY = "retry"
DISCARD = "discard"
OVERWRITE = "overwrite"
RENAME = "rename"
SKIP = "skip"

TRANSIENT_CHOICES = [RETRY, DISCARD]
CONFLICT_CHOICES = [OVERWRITE, RENAME, SKIP]
PERMANENT_CHOICES = [DISCARD]

CONFLICT_DIRECTIVES = {
    OVERWRITE: DestinationDirective.OVERWRITE,
    RENAME: DestinationDirective.RENAME,
}

RETRY_PROMPT = RecoveryAction(
    RecoveryActionType.RETRY,
    options=[
        PromptOption("Retry", RETRY, "Upload the file again."),
        PromptOption("Discard", DISCARD, "Give up on this file."),
    ],
    message="The upload failed. You can try again.",
)

# (job_id, directive, event announcing the new attempt)
RelaunchCallback = Callable[[str, DestinationDirective, UploadEvent], None]
RemovedCallback = Callable[[UploadJob], None]


class RecoveryCoordinator:
    """Offers recovery choices for failed jobs and carries out the user's decision.

    Attributes:
        tracker: The job tracker the decisions are applied to.
        retry_policy: Used for the attempt limit reported in `job-retrying`.
    """

    def __init__(
        self,
        tracker: UploadJobTracker,
        retry_policy: RetryPolicy,
        session_of: Callable[[str], str],
        relaunch: RelaunchCallback,
        job_removed: RemovedCallback,
        release_pending: Callable[[str], None],
    ):
        """Initializes the coordinator.

        Args:
            tracker: The job tracker.
            retry_policy: The policy whose `max_attempts` is reported on retries.
            session_of: Maps a job id to the id of the session that owns it.
            relaunch: Starts a new attempt for a failed job and emits the given event
                once the attempt is registered.
            job_removed: Called with the final snapshot of a skipped or discarded job.
            release_pending: Drops any automatic retry still scheduled for a job
                that is about to be skipped or discarded.
        """
        self.tracker = tracker
        self.retry_policy = retry_policy
        self._session_of = session_of
        self._relaunch = relaunch
        self._job_removed = job_removed
        self._release_pending = release_pending

    @staticmethod
    def recovery_action_for(job: UploadJob) -> RecoveryAction:
        """The recovery recommended for a failed job.

        Transient failures keep offering a manual retry after automatic
        retries are exhausted.
        """
        error = job.last_error
        if error is None:
            return NO_RECOVERY
        if error.kind is ErrorKind.TRANSIENT:
            return RETRY_PROMPT
        if error.kind is ErrorKind.NAME_CONFLICT:
            return NAME_CONFLICT_RECOVERY
        return NO_RECOVERY

    @staticmethod
    def choices_for(job: UploadJob) -> List[str]:
        error = job.last_error
        if error is None:
            return []
        if error.kind is ErrorKind.TRANSIENT:
            return list(TRANSIENT_CHOICES)
        if error.kind is ErrorKind.NAME_CONFLICT:
            return list(CONFLICT_CHOICES)
        return list(PERMANENT_CHOICES)

    def resolve(self, job_id: str, choice: str) -> None:
        """Applies a user decision to a failed job.

        Args:
            job_id: The failed job.
            choice: One of the values returned by `choices_for()`.

        Raises:
            UnknownJob: If the job is not tracked.
            InvalidTransition: If the job is not in the ERROR state, or an
                attempt for it is already pending.
            InvalidInput: If `choice` is not offered for this job.
        """
        job = self.tracker.get_job(job_id)
        if job.status != JobStatus.ERROR:
            raise InvalidTransition(job_id, job.status.value, JobStatus.UPLOADING.value)

        choice = (choice or "").strip().lower()
        allowed = self.choices_for(job)
        if choice not in allowed:
            raise InvalidInput(f"'{choice}' is not a valid choice for '{job.file_name}' (expected one of: {', '.join(allowed)})")

        session_id = self._session_of(job_id)
        logger.info(f"Resolving failed upload '{job.file_name}' with '{choice}'")

        if choice == RETRY:
            event = JobRetrying(
                session_id,
                job_id=job_id,
                attempt=job.attempts + 1,
                max_attempts=self.retry_policy.max_attempts,
                delay_seconds=0.0,
            )
            self._relaunch(job_id, job.directive, event)
        elif choice in CONFLICT_DIRECTIVES:
            self._relaunch(job_id, CONFLICT_DIRECTIVES[choice], JobResolved(session_id, job_id=job_id, choice=choice))
        else:
            self._release_pending(job_id)
            self.tracker.cancel(job_id)
            removed = self.tracker.remove(job_id)
            self._job_removed(removed)
