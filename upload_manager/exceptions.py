"""Exceptions raised by the upload engine.

Tracker errors signal caller bugs and are always raised loudly inside the
core. The session facade converts them into `ActionResult` values so that one
bad request never interrupts the processing of unrelated jobs.
"""


class TrackerError(Exception):
    """Base class for job tracker usage errors."""
    pass


class InvalidInput(TrackerError):
    """A job was requested with an empty name, a negative size or an unknown choice."""
    pass


class UnknownJob(TrackerError):
    """No job with the given id is tracked."""

    def __init__(self, job_id: str):
        super().__init__(f"Unknown job: {job_id}")
        self.job_id = job_id


class InvalidTransition(TrackerError):
    """The requested state change is not allowed from the job's current state."""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(f"Job {job_id} cannot move from '{current}' to '{requested}'")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobActive(TrackerError):
    """A queued or uploading job cannot be removed."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} is still active and cannot be removed")
        self.job_id = job_id


class EmptyBatch(TrackerError):
    """A batch was submitted without any files."""
    pass


class UnknownSession(TrackerError):
    """No session with the given id exists."""

    def __init__(self, session_id: str):
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id
