"""Derived progress figures for single jobs and whole sessions.

Everything here is a pure function of the job records passed in: nothing is
cached and no job is ever mutated, so the figures can be recomputed on every
progress tick.
"""
from dataclasses import dataclass
from typing import Iterable, Optional

from ..models import JobStatus, UploadJob


@dataclass(frozen=True)
class OverallProgress:
    """Aggregate figures over a set of jobs."""
    percent: float
    throughput_bytes_per_sec: float
    eta_seconds: Optional[float]
    total_bytes: int
    loaded_bytes: int
    queued: int = 0
    uploading: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def job_count(self) -> int:
        return self.queued + self.uploading + self.succeeded + self.failed + self.cancelled


def compute_throughput(bytes_loaded: int, elapsed_seconds: float) -> float:
    """Average transfer speed of an attempt in bytes per second."""
    if elapsed_seconds <= 0:
        return 0.0
    return bytes_loaded / elapsed_seconds


def compute_eta(remaining_bytes: int, throughput: float) -> Optional[float]:
    """Seconds left at the given speed, or None while the speed is unknown."""
    if throughput <= 0:
        return None
    return max(0, remaining_bytes) / throughput


def compute_overall_progress(jobs: Iterable[UploadJob]) -> OverallProgress:
    """Computes percent complete, throughput and ETA over a job set.

    Args:
        jobs: The jobs to aggregate; usually all jobs of one session.

    Returns:
        An `OverallProgress`. The percentage is `0` for an empty set. A set made
        only of zero-byte jobs reads `100` once all of them have succeeded.
    """
    total = 0
    loaded = 0
    throughput = 0.0
    counts = {status: 0 for status in JobStatus}

    for job in jobs:
        total += job.file_size_bytes
        loaded += job.bytes_loaded
        counts[job.status] += 1
        if job.status == JobStatus.UPLOADING:
            throughput += job.throughput_bytes_per_sec

    if total > 0:
        percent = min(100.0, loaded / total * 100)
    else:
        job_count = sum(counts.values())
        all_done = job_count > 0 and counts[JobStatus.SUCCESS] == job_count
        percent = 100.0 if all_done else 0.0

    return OverallProgress(
        percent=percent,
        throughput_bytes_per_sec=throughput,
        eta_seconds=compute_eta(total - loaded, throughput),
        total_bytes=total,
        loaded_bytes=loaded,
        queued=counts[JobStatus.QUEUED],
        uploading=counts[JobStatus.UPLOADING],
        succeeded=counts[JobStatus.SUCCESS],
        failed=counts[JobStatus.ERROR],
        cancelled=counts[JobStatus.CANCELLED],
    )
