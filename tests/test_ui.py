import io
import unittest

from rich.console import Console

from upload_manager.core_logic.error_classifier import ErrorClassifier
from upload_manager.core_logic.progress import OverallProgress
from upload_manager.events import (
    JobError,
    JobProgress,
    JobRemoved,
    JobRetrying,
    JobSuccess,
    SessionComplete,
    SessionStarted,
)
from upload_manager.models import JobResult, JobStatus, RejectedFile
from upload_manager.ui import BaseUIManager, RichUIManager, SimpleUIManager, smart_truncate


def progress_event(percent: float, job_id: str = "upload_1") -> JobProgress:
    loaded = int(percent * 10)
    overall = OverallProgress(percent=percent, throughput_bytes_per_sec=100.0, eta_seconds=5.0,
                              total_bytes=1000, loaded_bytes=loaded)
    return JobProgress("session_1", job_id=job_id, loaded=loaded, total=1000, percent=percent,
                       throughput_bytes_per_sec=100.0, eta_seconds=5.0, overall=overall)


class TestSmartTruncate(unittest.TestCase):
    def test_short_names_are_untouched(self):
        self.assertEqual(smart_truncate("a.txt", 40), "a.txt")

    def test_extension_is_kept(self):
        truncated = smart_truncate("a_very_long_holiday_video_file_name_from_summer.mp4", 30)
        self.assertEqual(len(truncated), 30)
        self.assertTrue(truncated.endswith("....mp4"))

    def test_name_without_extension(self):
        self.assertEqual(smart_truncate("x" * 50, 10), "xxxxxxx...")


class TestEventDispatch(unittest.TestCase):
    def test_events_reach_the_matching_handler(self):
        calls = []

        class RecordingUI(BaseUIManager):
            def log(self, message):
                calls.append(("log", message))

            def on_session_started(self, event):
                calls.append(("started", event.job_ids))

            def on_job_progress(self, event):
                calls.append(("progress", event.percent))

            def on_job_success(self, event):
                calls.append(("success", event.job_id))

            def on_job_error(self, event):
                pass

            def on_job_retrying(self, event):
                pass

            def on_session_complete(self, event):
                calls.append(("complete", event.session_id))

        ui = RecordingUI()
        ui.handle_event(SessionStarted("session_1", job_ids=["upload_1"]))
        ui.handle_event(progress_event(50.0))
        ui.handle_event(JobSuccess("session_1", job_id="upload_1"))
        ui.handle_event(JobRemoved("session_1", job_id="upload_1"))
        ui.handle_event(SessionComplete("session_1"))

        self.assertEqual(calls, [
            ("started", ["upload_1"]),
            ("progress", 50.0),
            ("success", "upload_1"),
            ("complete", "session_1"),
        ])


class TestSimpleUIManager(unittest.TestCase):
    def setUp(self):
        self.ui = SimpleUIManager()
        self.ui.register_names({"upload_1": "report.pdf"})

    def test_progress_is_logged_in_steps(self):
        with self.assertLogs(level='INFO') as logs:
            for percent in (10.0, 30.0, 40.0, 60.0, 100.0):
                self.ui.handle_event(progress_event(percent))
        self.assertEqual(len(logs.output), 3)
        self.assertIn("report.pdf: 10%", logs.output[0])
        self.assertIn("report.pdf: 40%", logs.output[1])
        self.assertIn("report.pdf: 100%", logs.output[2])
        self.assertIn("overall 100%", logs.output[2])

    def test_error_and_retry_lines(self):
        error = ErrorClassifier().classify(ConnectionError("reset"))
        with self.assertLogs(level='INFO') as logs:
            self.ui.handle_event(JobRetrying("session_1", job_id="upload_1", attempt=2, max_attempts=3, delay_seconds=2.0))
            self.ui.handle_event(JobError("session_1", job_id="upload_1", classified_error=error, attempts=3))
        self.assertIn("WARNING", logs.output[0])
        self.assertIn("Retrying report.pdf (attempt 2/3) in 2s", logs.output[0])
        self.assertIn("ERROR", logs.output[1])
        self.assertIn("after 3 attempt(s)", logs.output[1])

    def test_log_strips_markup(self):
        with self.assertLogs(level='INFO') as logs:
            self.ui.log("[bold green]SUCCESS:[/] all good")
        self.assertTrue(logs.output[0].endswith("SUCCESS: all good"))

    def test_session_summary(self):
        results = [
            JobResult("upload_1", "report.pdf", JobStatus.SUCCESS, attempts=1),
            JobResult("upload_2", "notes.txt", JobStatus.ERROR, attempts=3),
        ]
        event = SessionComplete("session_1", results=results, rejected=[RejectedFile("", "missing file name")])
        with self.assertLogs(level='INFO') as logs:
            self.ui.handle_event(event)
        self.assertIn("1 succeeded, 1 failed, 1 rejected", logs.output[0])


class TestRichUIManager(unittest.TestCase):
    def setUp(self):
        self.output = io.StringIO()
        self.ui = RichUIManager(console=Console(file=self.output, width=120), version="1.0.0")

    def _task(self, job_id):
        task_id = self.ui._tasks[job_id]
        return {task.id: task for task in self.ui.progress.tasks}[task_id]

    def test_tasks_follow_job_events(self):
        self.ui.handle_event(SessionStarted("session_1", job_ids=["upload_1"]))
        self.ui.register_names({"upload_1": "report.pdf"})
        self.assertIn("report.pdf", self._task("upload_1").description)

        self.ui.handle_event(progress_event(40.0))
        task = self._task("upload_1")
        self.assertEqual(task.completed, 400)
        self.assertEqual(task.total, 1000)

        self.ui.handle_event(JobSuccess("session_1", job_id="upload_1"))
        task = self._task("upload_1")
        self.assertEqual(task.completed, 1000)
        self.assertTrue(task.description.startswith("[green]"))

    def test_overall_bar_tracks_session_bytes(self):
        self.ui.handle_event(SessionStarted("session_1", job_ids=["upload_1"]))
        self.ui.handle_event(progress_event(25.0))
        overall = {task.id: task for task in self.ui.progress.tasks}[self.ui._overall_task]
        self.assertIn("v1.0.0", overall.description)
        self.assertEqual(overall.completed, 250)
        self.assertEqual(overall.total, 1000)

    def test_success_completes_overall_bar_without_final_tick(self):
        self.ui.handle_event(SessionStarted("session_1", job_ids=["upload_1"]))
        self.ui.handle_event(progress_event(60.0))
        finished = OverallProgress(percent=100.0, throughput_bytes_per_sec=0.0, eta_seconds=0.0,
                                   total_bytes=1000, loaded_bytes=1000, succeeded=1)
        self.ui.handle_event(JobSuccess("session_1", job_id="upload_1", overall=finished))
        overall = {task.id: task for task in self.ui.progress.tasks}[self.ui._overall_task]
        self.assertEqual(overall.completed, 1000)
        self.assertEqual(overall.total, 1000)

    def test_zero_byte_session_fills_overall_bar(self):
        self.ui.handle_event(SessionStarted("session_1", job_ids=["upload_1"]))
        finished = OverallProgress(percent=100.0, throughput_bytes_per_sec=0.0, eta_seconds=0.0,
                                   total_bytes=0, loaded_bytes=0, succeeded=1)
        self.ui.handle_event(JobSuccess("session_1", job_id="upload_1", overall=finished))
        overall = {task.id: task for task in self.ui.progress.tasks}[self.ui._overall_task]
        self.assertEqual(overall.completed, 100)
        self.assertEqual(overall.total, 100)

    def test_error_is_logged_to_console(self):
        self.ui.register_names({"upload_1": "report.pdf"})
        error = ErrorClassifier().classify(PermissionError("denied"))
        self.ui.handle_event(JobError("session_1", job_id="upload_1", classified_error=error, attempts=1))
        self.assertTrue(self._task("upload_1").description.startswith("[red]"))
        self.assertIn(error.title, self.output.getvalue())

    def test_removed_job_drops_its_bar(self):
        self.ui.handle_event(SessionStarted("session_1", job_ids=["upload_1", "upload_2"]))
        self.ui.handle_event(JobRemoved("session_1", job_id="upload_1"))
        self.assertNotIn("upload_1", self.ui._tasks)
        self.assertEqual(len(self.ui.progress.tasks), 2)

    def test_pause_and_resume(self):
        with self.ui:
            self.ui.pause()
            self.assertFalse(self.ui._started)
            self.ui.resume()
            self.assertTrue(self.ui._started)
        self.assertFalse(self.ui._started)


if __name__ == '__main__':
    unittest.main()
