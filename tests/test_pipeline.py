#!/usr/bin/env python3
"""
Tests for the pipeline orchestrator: state machine, retry policy and
cancellation, driven through a fake transfer client.
"""

import sys
import io
import tempfile
import threading
import zipfile
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from app.core.config import AppConfig
from app.core.constants import ErrorCode, JobState, TransportCause, EXTRACTION_DIR_PREFIX
from app.core.db_sqlite import Database
from app.core.error_codes import JobError, TransferError, cancelled_error
from app.core.archive_extract import extract_archive
from app.core.models import UploadResult
from app.core.pipeline import PipelineOrchestrator, create_orchestrator
from app.core.result_store import ResultStore
from app.core.video_prepare import prepare_video

WAIT = 10


def _zip_bytes(entries: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w') as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


FRAMES_ZIP = _zip_bytes({
    "a.jpg": b"a",
    "b.png": b"b",
    "sub/c.gif": b"c",
    "sub/readme.txt": b"notes",
})


def _transient(cause=TransportCause.TIMEOUT):
    return TransferError(ErrorCode.TRANSPORT, "Download failed: request timed out", cause=cause)


class FakeClient:
    """Stands in for TransferClient; records calls and replays scripted outcomes."""

    base_url = "http://server.test"

    def __init__(self, archive: bytes = FRAMES_ZIP, upload_error: JobError | None = None,
                 download_errors=(), upload_hook=None):
        self.archive = archive
        self.upload_error = upload_error
        self.download_errors = list(download_errors)
        self.upload_hook = upload_hook
        self.upload_calls = 0
        self.download_calls = 0
        self.aborted = 0
        self.status = "Hello World"

    def upload(self, path, on_progress=None, cancel_flag=None):
        self.upload_calls += 1
        on_progress(0.25)
        if self.upload_hook:
            self.upload_hook(on_progress, cancel_flag)
        if self.upload_error:
            raise self.upload_error
        on_progress(1.0)
        return UploadResult(download_url="/download/result.zip", message="ok",
                            processing_time="1.2s")

    def resolve_download_url(self, download_url):
        return self.base_url + download_url

    def download(self, locator, dest_dir, on_progress=None, cancel_flag=None):
        self.download_calls += 1
        if self.download_errors:
            raise self.download_errors.pop(0)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        target = dest_dir / "result.zip"
        target.write_bytes(self.archive)
        on_progress(0.5)
        on_progress(1.0)
        return target

    def abort(self):
        self.aborted += 1

    def check_status(self):
        if isinstance(self.status, Exception):
            raise self.status
        return self.status


class PipelineTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.base = Path(self.tmp.name)
        self.db = Database(self.base / "app.db")
        self.root = self.base / "extractions"
        self.store = ResultStore(self.db, self.root, retention=2)
        self.video = self.base / "clip.mp4"
        self.video.write_bytes(b"\x00\x00\x00\x18ftypmp42")
        self.updates = []

    def tearDown(self):
        self.db.close()
        self.tmp.cleanup()

    def make(self, client=None, extractor=extract_archive, config=None, preparer=None):
        self.client = client or FakeClient()
        orch = PipelineOrchestrator(
            self.client, self.store,
            config=config if config is not None else {'retry_delay_sec': 0},
            extractor=extractor,
            video_preparer=preparer or (lambda path, workspace: path),
            workspace_root=self.base / "jobs",
        )
        orch.on_job_updated = self.updates.append
        return orch

    def select(self, orch):
        self.assertTrue(orch.select_video(self.video))
        self.assertTrue(orch.wait(WAIT))

    def upload(self, orch):
        self.assertTrue(orch.upload())
        self.assertTrue(orch.wait(WAIT))

    def download(self, orch):
        self.assertTrue(orch.download_and_process())
        self.assertTrue(orch.wait(WAIT))

    def extraction_dirs(self):
        if not self.root.exists():
            return []
        return [p for p in self.root.iterdir() if p.name.startswith(EXTRACTION_DIR_PREFIX)]


class TestHappyPath(PipelineTestCase):

    def test_full_pipeline_completes(self):
        catalogs = []
        orch = self.make()
        orch.on_catalog_ready = catalogs.append

        self.select(orch)
        job = orch.snapshot()
        self.assertEqual(job.state, JobState.IDLE)
        self.assertEqual(job.status_text, "Video ready for upload")
        self.assertEqual(job.source_path, self.video)

        self.upload(orch)
        job = orch.snapshot()
        self.assertEqual(job.state, JobState.AWAITING_DOWNLOAD)
        self.assertEqual(job.locator, "http://server.test/download/result.zip")
        self.assertEqual(job.upload_progress, 1.0)

        self.download(orch)
        job = orch.snapshot()
        self.assertEqual(job.state, JobState.COMPLETE)
        self.assertEqual(job.status_text, "Success! Found 3 images in 2 folders")
        self.assertEqual([c.name for c in job.catalog], ["root", "sub"])
        self.assertEqual([i.name for i in job.catalog[0].items], ["a.jpg", "b.png"])

        records = orch.recent_results()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].path, job.extraction_path)
        self.assertEqual(len(catalogs), 1)
        self.assertFalse((self.base / "jobs" / job.id).exists())

    def test_state_sequence(self):
        orch = self.make()
        self.select(orch)
        self.upload(orch)
        self.download(orch)

        states = []
        for snap in self.updates:
            if not states or states[-1] != snap.state:
                states.append(snap.state)
        self.assertEqual(states, [
            JobState.IDLE, JobState.UPLOADING, JobState.AWAITING_DOWNLOAD,
            JobState.DOWNLOADING, JobState.EXTRACTING, JobState.ORGANIZING,
            JobState.COMPLETE,
        ])

    def test_progress_is_monotonic_and_bounded(self):
        orch = self.make()
        self.select(orch)
        self.upload(orch)
        self.download(orch)

        for attr in ("upload_progress", "download_progress"):
            values = [getattr(s, attr) for s in self.updates]
            for v in values:
                self.assertGreaterEqual(v, 0.0)
                self.assertLessEqual(v, 1.0)
            self.assertEqual(values, sorted(values))

    def test_snapshot_is_a_copy(self):
        orch = self.make()
        snap = orch.snapshot()
        snap.state = JobState.COMPLETE
        self.assertEqual(orch.snapshot().state, JobState.IDLE)

    def test_retention_applies_across_jobs(self):
        orch = self.make()
        paths = []
        for _ in range(3):
            self.select(orch)
            self.upload(orch)
            self.download(orch)
            paths.append(orch.snapshot().extraction_path)

        # Pruning runs before each extraction, so the newest three survive
        self.assertEqual([r.path for r in orch.recent_results()], list(reversed(paths)))

        self.select(orch)
        self.upload(orch)
        self.download(orch)
        self.assertEqual(len(orch.recent_results()), 3)
        self.assertFalse(paths[0].exists())

    def test_load_catalog_and_check_server(self):
        orch = self.make()
        self.select(orch)
        self.upload(orch)
        self.download(orch)
        path = orch.recent_results()[0].path
        catalog = orch.load_catalog(path)
        self.assertEqual([c.name for c in catalog], ["root", "sub"])
        self.assertEqual(orch.check_server(), "Hello World")

        self.client.status = TransferError(ErrorCode.TRANSPORT, "Status check failed: timed out",
                                           cause=TransportCause.TIMEOUT)
        self.assertEqual(orch.check_server(), "Error: Status check failed: timed out")


class TestFailures(PipelineTestCase):

    def test_no_media_found(self):
        orch = self.make(FakeClient(archive=_zip_bytes({"notes/readme.txt": b"x"})))
        self.select(orch)
        self.upload(orch)
        self.download(orch)

        job = orch.snapshot()
        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(job.error_code, ErrorCode.NO_MEDIA_FOUND)
        self.assertEqual(job.status_text, "No images found in the archive")
        self.assertEqual(orch.recent_results(), [])
        self.assertEqual(self.extraction_dirs(), [])

    def test_extraction_failure(self):
        organized = []

        def organizer(path):
            organized.append(path)
            return []

        orch = self.make(extractor=lambda archive, dest: False)
        orch.organizer = organizer
        self.select(orch)
        self.upload(orch)
        self.download(orch)

        job = orch.snapshot()
        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(job.error_code, ErrorCode.EXTRACTION_FAILED)
        self.assertEqual(organized, [])

    def test_corrupt_archive(self):
        orch = self.make(FakeClient(archive=b"not a zip"))
        self.select(orch)
        self.upload(orch)
        self.download(orch)
        self.assertEqual(orch.snapshot().error_code, ErrorCode.EXTRACTION_FAILED)

    def test_upload_rejected(self):
        error = TransferError(ErrorCode.SERVER_REJECTED, "Upload failed: HTTP 500", status=500)
        orch = self.make(FakeClient(upload_error=error))
        self.select(orch)
        self.upload(orch)

        job = orch.snapshot()
        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(job.error_code, ErrorCode.SERVER_REJECTED)
        self.assertEqual(job.error_message, "Upload failed: HTTP 500")
        self.assertFalse(orch.download_and_process())

    def test_client_side_cancel_is_not_a_failure(self):
        orch = self.make(FakeClient(upload_error=cancelled_error("Upload")))
        self.select(orch)
        self.upload(orch)
        job = orch.snapshot()
        self.assertEqual(job.state, JobState.CANCELLED)
        self.assertTrue(job.cancelled)

    def test_unexpected_error_fails_job(self):
        def boom(archive, dest):
            raise RuntimeError("kaboom")

        orch = self.make(extractor=boom)
        self.select(orch)
        self.upload(orch)
        self.download(orch)
        job = orch.snapshot()
        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(job.error_code, ErrorCode.UNEXPECTED)


class TestRetryPolicy(PipelineTestCase):

    def test_retries_exhausted(self):
        client = FakeClient(download_errors=[_transient() for _ in range(4)])
        orch = self.make(client)
        self.select(orch)
        self.upload(orch)
        self.download(orch)

        job = orch.snapshot()
        self.assertEqual(client.download_calls, 4)
        self.assertEqual(job.retry_count, 3)
        self.assertEqual(job.state, JobState.FAILED)
        self.assertEqual(job.error_code, ErrorCode.TRANSPORT)
        self.assertTrue(job.status_text.endswith(" (Max retries reached)"))

        retry_texts = [s.status_text for s in self.updates if "Retrying" in s.status_text]
        self.assertEqual(retry_texts, [
            "Connection lost. Retrying (1/3)...",
            "Connection lost. Retrying (2/3)...",
            "Connection lost. Retrying (3/3)...",
        ])

    def test_recovers_after_transient_errors(self):
        client = FakeClient(download_errors=[
            _transient(TransportCause.CONNECTION_LOST),
            _transient(TransportCause.NOT_CONNECTED),
        ])
        orch = self.make(client)
        self.select(orch)
        self.upload(orch)
        self.download(orch)

        job = orch.snapshot()
        self.assertEqual(client.download_calls, 3)
        self.assertEqual(job.retry_count, 2)
        self.assertEqual(job.state, JobState.COMPLETE)

    def test_non_transient_error_not_retried(self):
        error = TransferError(ErrorCode.SERVER_REJECTED, "Download failed: HTTP 404", status=404)
        client = FakeClient(download_errors=[error])
        orch = self.make(client)
        self.select(orch)
        self.upload(orch)
        self.download(orch)

        job = orch.snapshot()
        self.assertEqual(client.download_calls, 1)
        self.assertEqual(job.retry_count, 0)
        self.assertEqual(job.status_text, "Download failed: HTTP 404")

    def test_retry_limit_from_config(self):
        client = FakeClient(download_errors=[_transient() for _ in range(4)])
        orch = self.make(client, config={'retry_delay_sec': 0, 'max_download_retries': 1})
        self.select(orch)
        self.upload(orch)
        self.download(orch)
        self.assertEqual(client.download_calls, 2)
        self.assertEqual(orch.snapshot().retry_count, 1)


class TestCancellation(PipelineTestCase):

    def test_cancel_during_upload_is_final(self):
        started = threading.Event()
        gate = threading.Event()

        def hook(on_progress, cancel_flag):
            started.set()
            gate.wait(WAIT)
            on_progress(0.9)

        orch = self.make(FakeClient(upload_hook=hook))
        self.select(orch)
        self.assertTrue(orch.upload())
        self.assertTrue(started.wait(WAIT))

        self.assertTrue(orch.cancel())
        seen = len(self.updates)
        self.assertEqual(self.updates[-1].state, JobState.CANCELLED)
        self.assertEqual(self.updates[-1].status_text, "Upload cancelled")

        # The transfer finishes successfully after the cancel
        gate.set()
        self.assertTrue(orch.wait(WAIT))

        self.assertEqual(len(self.updates), seen)
        job = orch.snapshot()
        self.assertEqual(job.state, JobState.CANCELLED)
        self.assertIsNone(job.locator)
        self.assertEqual(self.client.aborted, 1)

    def test_cancel_is_idempotent(self):
        orch = self.make()
        self.select(orch)
        self.assertTrue(orch.cancel())
        self.assertFalse(orch.cancel())
        self.assertEqual(orch.snapshot().state, JobState.CANCELLED)
        self.assertFalse(orch.upload())

    def test_cancel_during_backoff(self):
        retrying = threading.Event()
        client = FakeClient(download_errors=[_transient()])
        orch = self.make(client, config={'retry_delay_sec': 30})

        def watch(snap):
            self.updates.append(snap)
            if "Retrying" in snap.status_text:
                retrying.set()

        orch.on_job_updated = watch
        self.select(orch)
        self.upload(orch)
        self.assertTrue(orch.download_and_process())
        self.assertTrue(retrying.wait(WAIT))

        self.assertTrue(orch.cancel())
        self.assertTrue(orch.wait(WAIT))
        self.assertEqual(client.download_calls, 1)
        self.assertEqual(orch.snapshot().state, JobState.CANCELLED)
        self.assertEqual(orch.snapshot().status_text, "Download cancelled")

    def test_cancel_during_extraction_discards_result(self):
        started = threading.Event()
        gate = threading.Event()

        def slow_extract(archive, dest):
            ok = extract_archive(archive, dest)
            started.set()
            gate.wait(WAIT)
            return ok

        orch = self.make(extractor=slow_extract)
        self.select(orch)
        self.upload(orch)
        self.assertTrue(orch.download_and_process())
        self.assertTrue(started.wait(WAIT))

        self.assertTrue(orch.cancel())
        gate.set()
        self.assertTrue(orch.wait(WAIT))

        job = orch.snapshot()
        self.assertEqual(job.state, JobState.CANCELLED)
        self.assertEqual(job.catalog, [])
        self.assertEqual(orch.recent_results(), [])
        self.assertEqual(self.extraction_dirs(), [])


class TestCommandGuards(PipelineTestCase):

    def test_upload_without_selection(self):
        orch = self.make()
        self.assertFalse(orch.upload())
        self.assertEqual(orch.snapshot().status_text, "Please select a video first.")
        self.assertEqual(orch.snapshot().state, JobState.IDLE)

    def test_download_requires_awaiting_state(self):
        orch = self.make()
        self.assertFalse(orch.download_and_process())
        self.select(orch)
        self.assertFalse(orch.download_and_process())

    def test_duplicate_start_rejected_while_busy(self):
        started = threading.Event()
        gate = threading.Event()

        def hook(on_progress, cancel_flag):
            started.set()
            gate.wait(WAIT)

        orch = self.make(FakeClient(upload_hook=hook))
        self.select(orch)
        self.assertTrue(orch.upload())
        self.assertTrue(started.wait(WAIT))

        self.assertFalse(orch.upload())
        self.assertFalse(orch.download_and_process())
        self.assertFalse(orch.select_video(self.video))

        gate.set()
        self.assertTrue(orch.wait(WAIT))
        self.assertEqual(self.client.upload_calls, 1)
        self.assertEqual(orch.snapshot().state, JobState.AWAITING_DOWNLOAD)

    def test_missing_video_stays_idle(self):
        calls = []

        def preparer(path, workspace):
            calls.append(path)
            return path

        orch = self.make(preparer=preparer)
        self.assertTrue(orch.select_video(self.base / "missing.mov"))
        self.assertTrue(orch.wait(WAIT))

        job = orch.snapshot()
        self.assertEqual(job.state, JobState.IDLE)
        self.assertEqual(job.error_code, ErrorCode.VIDEO_PROCESSING)
        self.assertTrue(job.status_text.startswith("Error processing video: "))
        self.assertIsNone(job.source_path)
        self.assertEqual(calls, [])

    def test_preparer_failure_reported(self):
        def preparer(path, workspace):
            raise JobError(ErrorCode.VIDEO_PROCESSING, "ffmpeg failed (rc=1)")

        orch = self.make(preparer=preparer)
        self.select(orch)
        job = orch.snapshot()
        self.assertEqual(job.status_text, "Error processing video: ffmpeg failed (rc=1)")
        self.assertFalse(orch.upload())

    def test_new_selection_after_completion(self):
        orch = self.make()
        self.select(orch)
        self.upload(orch)
        self.download(orch)
        first = orch.snapshot().id

        self.select(orch)
        job = orch.snapshot()
        self.assertNotEqual(job.id, first)
        self.assertEqual(job.state, JobState.IDLE)
        self.assertEqual(job.catalog, [])


class TestWorkspaceCleanup(PipelineTestCase):
    """Prepared copies of the video must not outlive their job."""

    def leftover_files(self):
        jobs = self.base / "jobs"
        if not jobs.exists():
            return []
        return sorted(str(p.relative_to(jobs)) for p in jobs.rglob("*") if p.is_file())

    def test_reselect_in_idle_removes_previous_copy(self):
        orch = self.make(preparer=prepare_video)
        self.select(orch)
        first = orch.snapshot()
        self.assertTrue(first.source_path.exists())

        self.select(orch)
        self.assertFalse(first.source_path.exists())
        self.assertEqual(len(self.leftover_files()), 1)

    def test_reselect_after_upload_then_cancel_leaves_nothing(self):
        orch = self.make(preparer=prepare_video)
        self.select(orch)
        self.upload(orch)
        self.assertEqual(orch.snapshot().state, JobState.AWAITING_DOWNLOAD)

        self.select(orch)
        self.assertTrue(orch.cancel())
        self.assertTrue(orch.wait(WAIT))

        self.assertEqual(self.leftover_files(), [])
        self.assertTrue(self.video.exists())

    def test_cancel_while_awaiting_download_removes_copy(self):
        orch = self.make(preparer=prepare_video)
        self.select(orch)
        self.upload(orch)
        self.assertTrue(orch.cancel())
        self.assertEqual(self.leftover_files(), [])

    def test_completed_job_leaves_nothing(self):
        orch = self.make(preparer=prepare_video)
        self.select(orch)
        self.upload(orch)
        self.download(orch)
        self.assertEqual(orch.snapshot().state, JobState.COMPLETE)
        self.assertEqual(self.leftover_files(), [])


class TestCreateOrchestrator(unittest.TestCase):

    def test_wires_from_config(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            base = Path(tmpdir)
            config = AppConfig(base / "config.json")
            config.server_base_url = "http://localhost:8000"
            config.extraction_root = str(base / "frames")
            config.set('retention_count', 4)
            db = Database(base / "app.db")
            try:
                orch = create_orchestrator(config, db)
                self.assertEqual(orch.client.base_url, "http://localhost:8000")
                self.assertEqual(orch.store.extraction_root, base / "frames")
                self.assertEqual(orch.store.retention, 4)
                self.assertEqual(orch.max_download_retries, 3)
                self.assertEqual(orch.snapshot().state, JobState.IDLE)
            finally:
                db.close()


if __name__ == "__main__":
    unittest.main()
