"""End-to-end behaviour of the UploadManager against a scripted transport."""
import threading
import time

import pytest

from upload_manager.core_logic.resilience import RetryPolicy
from upload_manager.core_logic.session import UploadManager
from upload_manager.events import (
    JobCancelled,
    JobError,
    JobProgress,
    JobRemoved,
    JobResolved,
    JobRetrying,
    JobSuccess,
    SessionComplete,
    SessionStarted,
)
from upload_manager.exceptions import EmptyBatch, UnknownSession
from upload_manager.models import DestinationDirective, ErrorKind, JobStatus, RecoveryActionType, UploadFile
from upload_manager.utils import TransferFailure
from tests.mocks.mock_transport import Attempt, EventRecorder, ManualScheduler

WAIT = 5.0


def wait_for(predicate, timeout: float = WAIT) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def only_job(manager, session_id):
    jobs = manager.session_jobs(session_id)
    assert len(jobs) == 1
    return jobs[0]


def test_single_file_progress_and_success(manager, transport, recorder):
    transport.scripts["report.pdf"] = [Attempt(ticks=[300, 600, 1000])]

    session_id = manager.submit([UploadFile("report.pdf", 1000)], "/docs")
    assert manager.wait(session_id, WAIT)

    progress = recorder.of_type(JobProgress)
    assert [round(event.overall.percent) for event in progress] == [30, 60, 100]
    assert [round(event.percent) for event in progress] == [30, 60, 100]
    assert recorder.names() == [
        "session-started", "job-progress", "job-progress", "job-progress", "job-success", "session-complete",
    ]
    job = only_job(manager, session_id)
    assert job.status == JobStatus.SUCCESS
    assert job.attempts == 1
    assert manager.overall_progress(session_id).percent == 100.0
    success = recorder.of_type(JobSuccess)[0]
    assert success.overall.percent == 100.0
    assert success.overall.succeeded == 1

    complete = recorder.of_type(SessionComplete)[0]
    assert [result.success for result in complete.results] == [True]
    assert complete.results[0].stored_name == "report.pdf"


def test_transient_failures_are_retried_with_growing_delays(manager, transport, recorder, scheduler):
    transport.scripts["video.mp4"] = [
        Attempt(ticks=[100], failure=ConnectionResetError("Connection reset by peer")),
        Attempt(ticks=[200], failure=TimeoutError("timed out")),
        Attempt(ticks=[500, 1000]),
    ]

    session_id = manager.submit([UploadFile("video.mp4", 1000)], "/videos")
    assert manager.wait(session_id, WAIT)

    retrying = recorder.of_type(JobRetrying)
    assert [event.attempt for event in retrying] == [2, 3]
    assert [event.delay_seconds for event in retrying] == [2.0, 4.0]
    assert all(event.max_attempts == 3 for event in retrying)
    assert scheduler.delays == [2.0, 4.0]
    assert len(recorder.of_type(JobSuccess)) == 1
    assert recorder.of_type(JobError) == []

    names = recorder.names()
    assert names.index("job-success") > max(i for i, name in enumerate(names) if name == "job-retrying")
    assert names[-1] == "session-complete"
    assert only_job(manager, session_id).attempts == 3


def test_retries_stop_after_max_attempts(manager, transport, recorder):
    transport.scripts["big.iso"] = [Attempt(failure=TransferFailure("Service Unavailable", status_code=503))] * 3

    session_id = manager.submit([UploadFile("big.iso", 4096)], "/")
    assert manager.wait(session_id, WAIT)

    assert len(recorder.of_type(JobRetrying)) == 2
    errors = recorder.of_type(JobError)
    assert len(errors) == 1
    error = errors[0].classified_error
    assert error.kind is ErrorKind.TRANSIENT
    assert error.retries_exhausted
    assert error.effective_kind is ErrorKind.PERMANENT
    assert errors[0].attempts == 3
    assert errors[0].kind is ErrorKind.PERMANENT
    assert errors[0].recovery_action.type is RecoveryActionType.RETRY

    job = only_job(manager, session_id)
    assert job.status == JobStatus.ERROR
    assert job.last_error.retries_exhausted
    assert [result.success for result in recorder.of_type(SessionComplete)[0].results] == [False]


def test_manual_retry_after_exhaustion(manager, transport, recorder):
    transport.scripts["big.iso"] = [Attempt(failure=ConnectionError("Network error"))] * 3

    session_id = manager.submit([UploadFile("big.iso", 4096)], "/")
    assert manager.wait(session_id, WAIT)
    job = only_job(manager, session_id)

    result = manager.retry(job.id)
    assert result.ok
    assert manager.wait(session_id, WAIT)
    assert wait_for(lambda: len(recorder.of_type(SessionComplete)) == 2)

    manual = recorder.of_type(JobRetrying)[-1]
    assert manual.delay_seconds == 0.0
    assert manual.attempt == 4
    job = only_job(manager, session_id)
    assert job.status == JobStatus.SUCCESS
    assert job.attempts == 4
    assert recorder.of_type(SessionComplete)[-1].results[0].success


def test_name_conflict_skip_removes_job(manager, transport, recorder):
    transport.scripts["notes.txt"] = [Attempt(failure=TransferFailure("A file named 'notes.txt' already exists", status_code=409))]

    session_id = manager.submit([UploadFile("notes.txt", 10)], "/")
    assert manager.wait(session_id, WAIT)

    error_event = recorder.of_type(JobError)[0]
    assert error_event.classified_error.kind is ErrorKind.NAME_CONFLICT
    assert error_event.kind is ErrorKind.NAME_CONFLICT
    assert error_event.recovery_action.type is RecoveryActionType.PROMPT
    assert error_event.recovery_action.values == ["overwrite", "rename", "skip"]
    assert recorder.of_type(JobRetrying) == []

    job_id = error_event.job_id
    assert manager.resolve(job_id, "skip").ok
    assert manager.wait(session_id, WAIT)

    removed = recorder.of_type(JobRemoved)
    assert [event.job_id for event in removed] == [job_id]
    assert all(job.id != job_id for job in manager.tracker.all_jobs())
    assert manager.session_jobs(session_id) == []
    final = recorder.of_type(SessionComplete)[-1]
    assert [(result.job_id, result.status) for result in final.results] == [(job_id, JobStatus.CANCELLED)]


def test_name_conflict_rename_uploads_under_new_name(manager, transport, recorder):
    transport.scripts["notes.txt"] = [
        Attempt(failure=FileExistsError("notes.txt")),
        Attempt(ticks=[10], stored_name="notes (1).txt"),
    ]

    session_id = manager.submit([UploadFile("notes.txt", 10)], "/")
    assert manager.wait(session_id, WAIT)
    job_id = recorder.of_type(JobError)[0].job_id

    assert manager.resolve(job_id, "rename").ok
    assert wait_for(lambda: len(recorder.of_type(SessionComplete)) == 2)

    assert transport.directives_for("notes.txt") == [DestinationDirective.NORMAL, DestinationDirective.RENAME]
    resolved = recorder.of_type(JobResolved)
    assert [(event.job_id, event.choice) for event in resolved] == [(job_id, "rename")]
    job = manager.tracker.get_job(job_id)
    assert job.status == JobStatus.SUCCESS
    assert job.stored_name == "notes (1).txt"
    assert recorder.of_type(SessionComplete)[-1].results[0].stored_name == "notes (1).txt"


def test_invalid_decisions_are_reported_not_raised(manager, transport):
    transport.scripts["secret.doc"] = [Attempt(failure=PermissionError("Permission denied"))]

    session_id = manager.submit([UploadFile("secret.doc", 10), UploadFile("ok.doc", 10)], "/")
    assert manager.wait(session_id, WAIT)
    failed = next(job for job in manager.session_jobs(session_id) if job.status == JobStatus.ERROR)
    succeeded = next(job for job in manager.session_jobs(session_id) if job.status == JobStatus.SUCCESS)

    assert manager.choices_for(failed.id) == ["discard"]
    result = manager.retry(failed.id)
    assert not result.ok
    assert "retry" in result.reason
    assert not manager.resolve(failed.id, "overwrite")
    assert not manager.retry(succeeded.id)
    assert not manager.cancel("upload_missing")
    assert manager.resolve(failed.id, "discard").ok


def test_overall_reaches_hundred_only_when_all_bytes_loaded(transport, recorder, scheduler):
    for name in ("a.bin", "b.bin", "c.bin"):
        transport.scripts[name] = [Attempt(ticks=[100, 200])]
    with UploadManager(transport, scheduler=scheduler) as manager:
        manager.subscribe(recorder)
        session_id = manager.submit([UploadFile(name, 200) for name in ("a.bin", "b.bin", "c.bin")], "/")
        assert manager.wait(session_id, WAIT)

        progress = recorder.of_type(JobProgress)
        assert len(progress) == 6
        for event in progress:
            if event.overall.percent >= 100.0:
                assert event.overall.loaded_bytes == event.overall.total_bytes == 600
        assert any(event.overall.percent == 100.0 for event in progress)
        assert manager.overall_progress(session_id).percent == 100.0


def test_sequential_uploads_report_monotonic_overall_progress(transport, recorder, scheduler):
    for name in ("a.bin", "b.bin", "c.bin"):
        transport.scripts[name] = [Attempt(ticks=[100, 200])]
    with UploadManager(transport, scheduler=scheduler, max_concurrent_uploads=1) as manager:
        manager.subscribe(recorder)
        session_id = manager.submit([UploadFile(name, 200) for name in ("a.bin", "b.bin", "c.bin")], "/")
        assert manager.wait(session_id, WAIT)

    percents = [round(event.overall.percent, 2) for event in recorder.of_type(JobProgress)]
    assert percents == [16.67, 33.33, 50.0, 66.67, 83.33, 100.0]


def test_concurrency_cap_keeps_waiting_jobs_queued(transport, recorder, scheduler):
    gate = threading.Event()
    transport.scripts["first.bin"] = [Attempt(ticks=[50], gate=gate)]
    transport.scripts["second.bin"] = [Attempt(ticks=[50], gate=gate)]
    with UploadManager(transport, scheduler=scheduler, max_concurrent_uploads=1) as manager:
        manager.subscribe(recorder)
        session_id = manager.submit([UploadFile("first.bin", 100), UploadFile("second.bin", 100)], "/")

        assert wait_for(lambda: manager.get_queue_status(session_id)["active"] == 1)
        status = manager.get_queue_status(session_id)
        assert status == {"queued": 1, "active": 1, "succeeded": 0, "failed": 0, "cancelled": 0, "rejected": 0, "total": 2}

        gate.set()
        assert manager.wait(session_id, WAIT)
        assert manager.get_queue_status(session_id)["succeeded"] == 2


def test_cancel_during_transfer(manager, transport, recorder):
    gate = threading.Event()
    transport.scripts["movie.mkv"] = [Attempt(ticks=[10], gate=gate)]
    session_id = manager.submit([UploadFile("movie.mkv", 100)], "/")
    job_id = manager.session_jobs(session_id)[0].id
    assert wait_for(lambda: manager.tracker.get_job(job_id).bytes_loaded == 10)

    result = manager.cancel(job_id)
    assert result.ok
    assert transport.aborted == [job_id]
    gate.set()

    assert manager.wait(session_id, WAIT)
    assert manager.tracker.get_job(job_id).status == JobStatus.CANCELLED
    assert recorder.of_type(JobError) == []
    assert [event.job_id for event in recorder.of_type(JobCancelled)] == [job_id]
    assert not manager.cancel(job_id).ok


def test_cancel_between_tick_and_progress_event(manager, transport, recorder):
    transport.scripts["movie.mkv"] = [Attempt(ticks=[10, 20])]
    record_progress = manager.tracker.record_progress
    cancelled = []

    def record_then_cancel(job_id, loaded, total=None, attempt=None):
        applied = record_progress(job_id, loaded, total, attempt=attempt)
        if applied and not cancelled:
            cancelled.append(manager.cancel(job_id))
        return applied

    manager.tracker.record_progress = record_then_cancel
    session_id = manager.submit([UploadFile("movie.mkv", 100)], "/")
    assert manager.wait(session_id, WAIT)
    assert wait_for(lambda: len(transport.calls) == 1 and transport.aborted)
    manager.events.flush()

    assert cancelled[0].ok
    assert recorder.names() == ["session-started", "job-cancelled", "session-complete"]


def test_cancel_discards_pending_retry(transport, recorder):
    scheduler = ManualScheduler()
    transport.scripts["flaky.bin"] = [Attempt(failure=ConnectionError("Connection refused"))]
    with UploadManager(transport, scheduler=scheduler) as manager:
        manager.subscribe(recorder)
        session_id = manager.submit([UploadFile("flaky.bin", 100)], "/")
        job_id = manager.session_jobs(session_id)[0].id
        assert wait_for(lambda: job_id in manager._timers)
        assert not manager.wait(session_id, 0.1)

        assert manager.cancel(job_id).ok
        assert scheduler.handles[0].cancelled
        assert manager.wait(session_id, WAIT)
        scheduler.fire_all()
        assert manager.tracker.get_job(job_id).status == JobStatus.CANCELLED
        assert len(transport.calls) == 1


def test_discard_stops_pending_retry(transport, recorder):
    scheduler = ManualScheduler()
    transport.scripts["flaky.bin"] = [Attempt(failure=ConnectionError("Connection refused"))]
    with UploadManager(transport, scheduler=scheduler) as manager:
        manager.subscribe(recorder)
        session_id = manager.submit([UploadFile("flaky.bin", 100)], "/")
        job_id = manager.session_jobs(session_id)[0].id
        assert wait_for(lambda: job_id in manager._timers)

        assert manager.resolve(job_id, "discard").ok
        assert scheduler.handles[0].cancelled
        assert job_id not in manager._timers
        assert job_id not in manager._pending
        assert manager.wait(session_id, WAIT)
        scheduler.fire_all()
        assert not manager.tracker.has_job(job_id)
        assert len(transport.calls) == 1


def test_manual_retry_is_refused_while_automatic_retry_pending(transport):
    scheduler = ManualScheduler()
    transport.scripts["flaky.bin"] = [Attempt(failure=ConnectionError("Connection refused"))]
    with UploadManager(transport, scheduler=scheduler) as manager:
        session_id = manager.submit([UploadFile("flaky.bin", 100)], "/")
        job_id = manager.session_jobs(session_id)[0].id
        assert wait_for(lambda: job_id in manager._timers)

        assert not manager.retry(job_id).ok
        scheduler.fire_all()
        assert manager.wait(session_id, WAIT)
        assert manager.tracker.get_job(job_id).status == JobStatus.SUCCESS


def test_cancel_all_and_clear_completed(transport, recorder, scheduler):
    gate = threading.Event()
    transport.scripts["slow.bin"] = [Attempt(gate=gate)]
    with UploadManager(transport, scheduler=scheduler) as manager:
        manager.subscribe(recorder)
        session_id = manager.submit([UploadFile("fast.bin", 10), UploadFile("slow.bin", 10)], "/")
        assert wait_for(lambda: manager.get_queue_status(session_id)["succeeded"] == 1)

        result = manager.cancel_all(session_id)
        assert result.ok and result.count == 1
        gate.set()
        assert manager.wait(session_id, WAIT)

        cleared = manager.clear_completed(session_id)
        assert cleared.ok and cleared.count == 2
        assert manager.tracker.all_jobs() == []
        with pytest.raises(UnknownSession):
            manager.get_session(session_id)
        assert not manager.clear_completed(session_id).ok
        assert not manager.cancel_all(session_id).ok


def test_cancel_session_destroys_session(manager, transport):
    gate = threading.Event()
    transport.scripts["slow.bin"] = [Attempt(gate=gate)]
    session_id = manager.submit([UploadFile("slow.bin", 10)], "/")
    assert wait_for(lambda: manager.get_queue_status(session_id)["active"] == 1)

    result = manager.cancel_session(session_id)
    gate.set()
    assert result.ok and result.count == 1
    assert manager.sessions() == []


def test_empty_batch_is_rejected(manager):
    with pytest.raises(EmptyBatch):
        manager.submit([], "/")


def test_invalid_entries_do_not_block_the_batch(manager, recorder):
    session_id = manager.submit([UploadFile("", 10), UploadFile("bad.bin", -5), UploadFile("good.bin", 10)], "/")
    assert manager.wait(session_id, WAIT)

    session = manager.get_session(session_id)
    assert [rejected.file_name for rejected in session.rejected] == ["", "bad.bin"]
    started = recorder.of_type(SessionStarted)[0]
    assert len(started.job_ids) == 1
    complete = recorder.of_type(SessionComplete)[0]
    assert len(complete.rejected) == 2
    assert [result.file_name for result in complete.succeeded] == ["good.bin"]
    assert manager.get_queue_status(session_id)["rejected"] == 2


def test_non_integer_size_is_rejected_without_failing_the_batch(manager, recorder):
    session_id = manager.submit([UploadFile("ok.txt", 10), UploadFile("bad.txt", "10")], "/")
    assert manager.wait(session_id, WAIT)

    session = manager.get_session(session_id)
    assert [rejected.file_name for rejected in session.rejected] == ["bad.txt"]
    assert "integer" in session.rejected[0].reason
    complete = recorder.of_type(SessionComplete)[0]
    assert [result.file_name for result in complete.succeeded] == ["ok.txt"]


def test_batch_of_only_invalid_entries_completes_immediately(manager, recorder):
    session_id = manager.submit([UploadFile("bad.bin", -1)], "/")
    assert manager.wait(session_id, WAIT)
    complete = recorder.of_type(SessionComplete)[0]
    assert complete.results == []
    assert len(complete.rejected) == 1


def test_zero_byte_file(manager, transport, recorder):
    transport.scripts["empty.txt"] = [Attempt(ticks=[])]
    session_id = manager.submit([UploadFile("empty.txt", 0)], "/")
    assert manager.wait(session_id, WAIT)
    job = only_job(manager, session_id)
    assert job.status == JobStatus.SUCCESS
    assert job.percent == 100.0
    assert manager.overall_progress(session_id).percent == 100.0


def test_failing_subscriber_does_not_break_delivery(manager, recorder):
    def broken(event):
        raise RuntimeError("subscriber bug")

    manager.subscribe(broken)
    session_id = manager.submit([UploadFile("a.txt", 5)], "/")
    assert manager.wait(session_id, WAIT)
    assert "session-complete" in recorder.names()


def test_unsubscribe_stops_delivery(manager):
    late = EventRecorder()
    unsubscribe = manager.subscribe(late)
    unsubscribe()
    session_id = manager.submit([UploadFile("a.txt", 5)], "/")
    assert manager.wait(session_id, WAIT)
    assert late.events == []


def test_events_of_concurrent_sessions_are_tagged(manager, recorder):
    first = manager.submit([UploadFile("a.txt", 5)], "/one")
    second = manager.submit([UploadFile("b.txt", 5)], "/two")
    assert manager.wait(first, WAIT)
    assert manager.wait(second, WAIT)
    completes = {event.session_id for event in recorder.of_type(SessionComplete)}
    assert completes == {first, second}
    for event in recorder.of_type(JobSuccess):
        owner = first if event.job_id in manager.get_session(first).job_ids else second
        assert event.session_id == owner


def test_shutdown_closes_transport(transport):
    manager = UploadManager(transport, retry_policy=RetryPolicy(max_attempts=1))
    manager.shutdown()
    assert transport.closed
    with pytest.raises(RuntimeError):
        manager.submit([UploadFile("a.txt", 1)], "/")
