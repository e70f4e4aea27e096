"""
Pipeline orchestrator.
Drives one job at a time: select → upload → download → extract → organize.
Emits job snapshots through callbacks for UI updates.
"""

import logging
import shutil
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from app.core.constants import (
    JobState, TERMINAL_STATES, ErrorCode,
    JOBS_CACHE_DIR, DEFAULT_EXTRACTION_ROOT,
    MAX_DOWNLOAD_RETRIES, RETRY_DELAY_SEC, RETENTION_COUNT,
)
from app.core.archive_extract import extract_archive
from app.core.cleanup import cleanup_job_workspace
from app.core.db_sqlite import Database
from app.core.diagnostics import get_server_status
from app.core.error_codes import JobError
from app.core.models import Job, Collection, ExtractionRecord
from app.core.organizer import organize, count_items
from app.core.result_store import ResultStore
from app.core.transfer_client import TransferClient
from app.core.video_prepare import prepare_video

logger = logging.getLogger(__name__)

_BUSY_STATES = {
    JobState.UPLOADING,
    JobState.DOWNLOADING,
    JobState.EXTRACTING,
    JobState.ORGANIZING,
}

# No worker owns the job workspace in these states
_IDLE_STATES = {JobState.IDLE, JobState.AWAITING_DOWNLOAD}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PipelineOrchestrator:
    """
    Owns the current Job and sequences the transfer client, extractor,
    organizer and result store. The host only reads snapshots and issues
    commands; every command returns False when it is ignored.
    """

    def __init__(self, client: TransferClient, store: ResultStore,
                 config: dict | None = None,
                 extractor: Callable[[Path, Path], bool] = extract_archive,
                 organizer: Callable[[Path], list[Collection]] = organize,
                 video_preparer: Callable[[Path, Path], Path] = prepare_video,
                 workspace_root: Path | None = None):
        self.client = client
        self.store = store
        self.config = config or {}
        self.extractor = extractor
        self.organizer = organizer
        self.video_preparer = video_preparer
        self.workspace_root = workspace_root or JOBS_CACHE_DIR

        self._lock = threading.RLock()
        self._worker: Optional[threading.Thread] = None
        self._selecting = False
        self._cancel_event = threading.Event()
        self._job = self._new_job()

        # Callbacks
        self.on_job_updated: Optional[Callable[[Job], None]] = None
        self.on_catalog_ready: Optional[Callable[[list[Collection]], None]] = None

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def max_download_retries(self) -> int:
        return self.config.get('max_download_retries', MAX_DOWNLOAD_RETRIES)

    @property
    def retry_delay_sec(self) -> float:
        return self.config.get('retry_delay_sec', RETRY_DELAY_SEC)

    @property
    def keep_debug(self) -> bool:
        return self.config.get('keep_debug_artifacts', False)

    # ── Read side ─────────────────────────────────────────────────────

    def snapshot(self) -> Job:
        """A copy of the current job; mutating it has no effect."""
        with self._lock:
            return self._copy(self._job)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the current worker finishes. True if it has."""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def recent_results(self) -> list[ExtractionRecord]:
        return self.store.list()

    def load_catalog(self, path: Path) -> list[Collection]:
        """Re-organize a previously extracted result directory."""
        return self.organizer(Path(path))

    def check_server(self) -> str:
        return get_server_status(self.client)

    # ── Commands ──────────────────────────────────────────────────────

    def select_video(self, path: Path) -> bool:
        """Start a new job from a picked video and prepare it for upload."""
        with self._lock:
            if self._selecting or self._job.state in _BUSY_STATES:
                logger.info("Video selection ignored in state %s", self._job.state)
                return False
            previous_id, previous_state = self._job.id, self._job.state
            self._selecting = True
            self._cancel_event = threading.Event()
            self._job = self._new_job()
            job_id = self._job.id
            snap = self._apply_locked(job_id, status_text="Processing video...")

        # The replaced job's prepared video is no longer reachable
        if previous_state in _IDLE_STATES:
            cleanup_job_workspace(self._workspace(previous_id), self.keep_debug)
        self._notify(snap)
        self._start_worker(self._run_select, job_id, Path(path))
        return True

    def upload(self) -> bool:
        with self._lock:
            job = self._job
            if self._selecting or job.state != JobState.IDLE:
                logger.info("Upload ignored in state %s", job.state)
                return False
            if job.source_path is None:
                snap = self._apply_locked(job.id, status_text="Please select a video first.")
                accepted = False
            else:
                snap = self._apply_locked(job.id, state=JobState.UPLOADING,
                                          upload_progress=0.0,
                                          status_text="Preparing upload...",
                                          error_code=None, error_message=None)
                accepted = True
            job_id, source, cancel_event = job.id, job.source_path, self._cancel_event

        self._notify(snap)
        if accepted:
            self._start_worker(self._run_upload, job_id, source, cancel_event)
        return accepted

    def download_and_process(self) -> bool:
        with self._lock:
            job = self._job
            if job.state != JobState.AWAITING_DOWNLOAD or not job.locator:
                logger.info("Download ignored in state %s", job.state)
                return False
            snap = self._apply_locked(job.id, state=JobState.DOWNLOADING,
                                      download_progress=0.0, retry_count=0,
                                      status_text="Starting download...")
            job_id, locator, cancel_event = job.id, job.locator, self._cancel_event

        self._notify(snap)
        self._start_worker(self._run_download, job_id, locator, cancel_event)
        return True

    def cancel(self) -> bool:
        """Cancel the current job. Idempotent: later calls are no-ops."""
        with self._lock:
            job = self._job
            if job.state in TERMINAL_STATES:
                return False
            self._cancel_event.set()
            unowned = job.state in _IDLE_STATES and not self._selecting
            if job.state == JobState.UPLOADING:
                message = "Upload cancelled"
            elif job.state == JobState.DOWNLOADING:
                message = "Download cancelled"
            else:
                message = "Cancelled"
            snap = self._apply_locked(job.id, state=JobState.CANCELLED, cancelled=True,
                                      error_code=ErrorCode.CANCELLED,
                                      error_message=message, status_text=message)

        logger.info("Job %s cancelled", job.id)
        self.client.abort()
        if unowned:
            cleanup_job_workspace(self._workspace(job.id), self.keep_debug)
        self._notify(snap)
        return True

    # ── Workers ───────────────────────────────────────────────────────

    def _start_worker(self, target, *args):
        self._worker = threading.Thread(target=self._run_guarded, args=(target,) + args,
                                        daemon=True)
        self._worker.start()

    def _run_guarded(self, target, job_id: str, *args):
        try:
            target(job_id, *args)
        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job_id, e, exc_info=True)
            self._fail(job_id, JobError(ErrorCode.UNEXPECTED, str(e)[:2000]))
            cleanup_job_workspace(self._workspace(job_id), self.keep_debug)

    def _run_select(self, job_id: str, path: Path):
        try:
            if not path.is_file():
                raise JobError(ErrorCode.VIDEO_PROCESSING, "Selected video file not found")
            prepared = self.video_preparer(path, self._workspace(job_id))
            fields = dict(source_path=prepared, status_text="Video ready for upload")
        except JobError as e:
            logger.warning("Video processing error for job %s: %s", job_id, e)
            fields = dict(error_code=e.code, error_message=e.message,
                          status_text=f"Error processing video: {e.message}")
        except Exception as e:
            logger.error("Unexpected video processing error: %s", e, exc_info=True)
            fields = dict(error_code=ErrorCode.VIDEO_PROCESSING, error_message=str(e),
                          status_text=f"Error processing video: {e}")

        with self._lock:
            self._selecting = False
            snap = self._apply_locked(job_id, **fields)

        if snap is None or snap.source_path is None:
            cleanup_job_workspace(self._workspace(job_id), self.keep_debug)
        self._notify(snap)

    def _run_upload(self, job_id: str, source: Path, cancel_event: threading.Event):
        def on_progress(fraction: float):
            self._update(job_id, upload_progress=fraction,
                         status_text=f"Uploading... {int(fraction * 100)}%")

        try:
            result = self.client.upload(source, on_progress=on_progress,
                                        cancel_flag=cancel_event)
            locator = self.client.resolve_download_url(result.download_url)
        except JobError as e:
            self._fail(job_id, e)
            cleanup_job_workspace(self._workspace(job_id), self.keep_debug)
            return

        logger.info("Upload finished for job %s: %s (%s)", job_id,
                    result.message, result.processing_time)
        if not self._transition(job_id, JobState.AWAITING_DOWNLOAD,
                                locator=locator, upload_progress=1.0,
                                status_text="Upload successful! Ready to download results."):
            cleanup_job_workspace(self._workspace(job_id), self.keep_debug)

    def _run_download(self, job_id: str, locator: str, cancel_event: threading.Event):
        workspace = self._workspace(job_id)
        try:
            archive = self._download_with_retry(job_id, locator, workspace / "download",
                                                cancel_event)
            if archive is not None:
                self._process_archive(job_id, archive)
        finally:
            cleanup_job_workspace(workspace, self.keep_debug)

    def _download_with_retry(self, job_id: str, locator: str, dest_dir: Path,
                             cancel_event: threading.Event) -> Optional[Path]:
        """Download with a constant backoff on transient transport errors."""
        max_retries = self.max_download_retries
        attempt = 0

        def on_progress(fraction: float):
            self._update(job_id, download_progress=fraction,
                         status_text=f"Downloading... {int(fraction * 100)}%")

        while True:
            if cancel_event.is_set():
                return None
            try:
                return self.client.download(locator, dest_dir, on_progress=on_progress,
                                            cancel_flag=cancel_event)
            except JobError as e:
                if e.retryable and attempt < max_retries and not cancel_event.is_set():
                    attempt += 1
                    logger.warning("Download attempt failed (%s), retrying %d/%d",
                                   e.message, attempt, max_retries)
                    self._update(job_id, retry_count=attempt, download_progress=0.0,
                                 status_text=f"Connection lost. Retrying ({attempt}/{max_retries})...")
                    if cancel_event.wait(self.retry_delay_sec):
                        return None
                    continue

                suffix = " (Max retries reached)" if e.retryable else ""
                self._fail(job_id, e, suffix=suffix)
                return None

    def _process_archive(self, job_id: str, archive: Path):
        if not self._transition(job_id, JobState.EXTRACTING, download_progress=1.0,
                                status_text="Extracting files..."):
            return

        extraction_path = None
        try:
            self.store.prune()
            extraction_path = self.store.create_extraction_path()
            extracted = self.extractor(archive, extraction_path)
        except OSError as e:
            self._fail(job_id, JobError(ErrorCode.FILE_SYSTEM,
                                        f"Error processing downloaded file: {e}"))
            self._discard(extraction_path)
            return

        if not extracted:
            self._fail(job_id, JobError(ErrorCode.EXTRACTION_FAILED, "Failed to extract files"))
            self._discard(extraction_path)
            return

        if not self._transition(job_id, JobState.ORGANIZING, extraction_path=extraction_path,
                                status_text="Organizing images..."):
            # Cancelled while extracting: the result is not kept
            self._discard(extraction_path)
            return

        catalog = self.organizer(extraction_path)
        if not catalog:
            self._fail(job_id, JobError(ErrorCode.NO_MEDIA_FOUND, "No images found in the archive"))
            self._discard(extraction_path)
            return

        total = count_items(catalog)
        with self._lock:
            current = self._job
            if current.id != job_id or current.state != JobState.ORGANIZING:
                snap = None
            else:
                self.store.record(extraction_path)
                snap = self._apply_locked(
                    job_id, state=JobState.COMPLETE, catalog=catalog,
                    status_text=f"Success! Found {total} images in {len(catalog)} folders",
                )

        if snap is None:
            self._discard(extraction_path)
            return

        logger.info("Job %s complete: %d items in %d collections", job_id, total, len(catalog))
        self._notify(snap)
        if self.on_catalog_ready:
            try:
                self.on_catalog_ready(list(catalog))
            except Exception as e:
                logger.warning("on_catalog_ready callback failed: %s", e, exc_info=True)

    # ── State helpers ─────────────────────────────────────────────────

    def _new_job(self) -> Job:
        now = _now()
        return Job(id=str(uuid.uuid4()), created_at=now, updated_at=now)

    def _workspace(self, job_id: str) -> Path:
        return self.workspace_root / job_id

    @staticmethod
    def _copy(job: Job) -> Job:
        return replace(job, catalog=list(job.catalog))

    def _apply_locked(self, job_id: str, **fields) -> Optional[Job]:
        """Mutate the current job unless it was replaced or already ended."""
        job = self._job
        if job.id != job_id or job.state in TERMINAL_STATES:
            return None
        for key, value in fields.items():
            setattr(job, key, value)
        job.updated_at = _now()
        return self._copy(job)

    def _update(self, job_id: str, **fields) -> bool:
        with self._lock:
            snap = self._apply_locked(job_id, **fields)
        self._notify(snap)
        return snap is not None

    def _transition(self, job_id: str, state: str, **fields) -> bool:
        return self._update(job_id, state=state, **fields)

    def _fail(self, job_id: str, error: JobError, suffix: str = ""):
        """Record a terminal error; a cancellation is never reported as a failure."""
        if error.code == ErrorCode.CANCELLED:
            self._transition(job_id, JobState.CANCELLED, cancelled=True,
                             error_code=error.code, error_message=error.message,
                             status_text=error.message)
            return
        if error.detail:
            logger.debug("Error detail for job %s: %s", job_id, error.detail)
        message = error.message + suffix
        logger.warning("Job %s failed: [%s] %s", job_id, error.code, message)
        self._transition(job_id, JobState.FAILED, error_code=error.code,
                         error_message=message, status_text=message)

    def _discard(self, path: Optional[Path]):
        if path is None or not path.exists():
            return
        try:
            shutil.rmtree(path)
            logger.debug("Discarded extraction: %s", path)
        except OSError as e:
            logger.warning("Failed to discard %s: %s", path, e)

    def _notify(self, snapshot: Optional[Job]):
        if snapshot is None or self.on_job_updated is None:
            return
        try:
            self.on_job_updated(snapshot)
        except Exception as e:
            logger.warning("on_job_updated callback failed: %s", e, exc_info=True)


def create_orchestrator(config, db: Database | None = None) -> PipelineOrchestrator:
    """Wire the default collaborators from an AppConfig."""
    settings = config.as_dict()
    db = db or Database()
    store = ResultStore(
        db,
        Path(settings.get('extraction_root', str(DEFAULT_EXTRACTION_ROOT))),
        retention=settings.get('retention_count', RETENTION_COUNT),
    )
    client = TransferClient.from_config(config)
    return PipelineOrchestrator(client, store, settings)
