"""
Transfer client: video upload, result archive download and the status check.

Uploads stream the video from disk as a multipart body with a known length so
progress can be reported as bytes are handed to the socket. Downloads stream
the archive to a file in chunks. Neither operation retries; the pipeline
decides whether a failure is worth another attempt.
"""

import logging
import socket
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urljoin, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3 import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.connection import HTTPConnection, HTTPSConnection

from app.core.constants import (
    ErrorCode, TransportCause,
    DEFAULT_SERVER_BASE_URL, UPLOAD_PATH, UPLOAD_FIELD_NAME, UPLOAD_CONTENT_TYPE,
    SKIP_WARNING_HEADERS, CONNECT_TIMEOUT_SEC, UPLOAD_TIMEOUT_SEC,
    DOWNLOAD_TIMEOUT_SEC, STATUS_TIMEOUT_SEC, DOWNLOAD_CHUNK_SIZE,
    UPLOAD_BLOCK_SIZE,
)
from app.core.error_codes import JobError, TransferError, cancelled_error
from app.core.models import UploadResult
from app.core.security_utils import sanitize_filename

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

_MAX_DETAIL_CHARS = 2000


class _TransferCancelled(Exception):
    """Raised from inside a transfer when the cancel flag is observed."""


def _is_set(flag: Optional[threading.Event]) -> bool:
    return flag is not None and flag.is_set()


# ── Connection tracking ───────────────────────────────────────────────
#
# urllib3 opens and drives connections on the calling thread, so the
# transfer running on that thread is where a connection gets registered.

_local = threading.local()


class _TransferHandle:
    """Connections used by one transfer, so abort() can break a blocked read."""

    def __init__(self):
        self._lock = threading.Lock()
        self._connections: list = []
        self.aborted = False

    def attach(self, conn):
        with self._lock:
            if conn not in self._connections:
                self._connections.append(conn)
            aborted = self.aborted
        if aborted:
            _shutdown(conn)

    def abort(self):
        with self._lock:
            self.aborted = True
            connections = list(self._connections)
        for conn in connections:
            _shutdown(conn)


def _shutdown(conn):
    sock = getattr(conn, "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logger.debug("Socket shutdown failed: %s", e)


def _attach_current(conn):
    handle = getattr(_local, "handle", None)
    if handle is not None:
        handle.attach(conn)


class _TrackedHTTPConnection(HTTPConnection):

    def connect(self):
        super().connect()
        _attach_current(self)

    def request(self, *args, **kwargs):
        _attach_current(self)
        return super().request(*args, **kwargs)


class _TrackedHTTPSConnection(HTTPSConnection):

    def connect(self):
        super().connect()
        _attach_current(self)

    def request(self, *args, **kwargs):
        _attach_current(self)
        return super().request(*args, **kwargs)


class _TrackedHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = _TrackedHTTPConnection


class _TrackedHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = _TrackedHTTPSConnection


class _TrackingAdapter(HTTPAdapter):
    """HTTPAdapter whose connections register with the active transfer."""

    def init_poolmanager(self, *args, **kwargs):
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _TrackedHTTPConnectionPool,
            "https": _TrackedHTTPSConnectionPool,
        }


class ProgressReporter:
    """
    Delivers fractional progress to a single subscriber.

    Values are clamped to [0, 1], anything lower than the last delivered value
    is dropped, and nothing is delivered once the cancel flag is set.
    """

    def __init__(self, callback: Optional[ProgressCallback],
                 cancel_flag: Optional[threading.Event] = None):
        self._callback = callback
        self._cancel_flag = cancel_flag
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def last(self) -> float:
        return self._last or 0.0

    def report(self, fraction: float):
        if self._callback is None:
            return
        fraction = max(0.0, min(1.0, float(fraction)))
        with self._lock:
            if _is_set(self._cancel_flag):
                return
            if self._last is not None and fraction <= self._last:
                return
            self._last = fraction
            self._callback(fraction)


class _MultipartBody:
    """File-like multipart/form-data body streamed from disk."""

    def __init__(self, file_path: Path, reporter: ProgressReporter,
                 cancel_flag: Optional[threading.Event] = None,
                 field_name: str = UPLOAD_FIELD_NAME,
                 content_type: str = UPLOAD_CONTENT_TYPE):
        self.boundary = uuid.uuid4().hex
        filename = sanitize_filename(file_path.name) or "video.mp4"
        self._head = (
            f"--{self.boundary}\r\n"
            f'Content-Disposition: form-data; name="{field_name}"; filename="{filename}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        ).encode("utf-8")
        self._tail = f"\r\n--{self.boundary}--\r\n".encode("utf-8")
        self._path = file_path
        self._length = len(self._head) + file_path.stat().st_size + len(self._tail)
        self._reporter = reporter
        self._cancel_flag = cancel_flag
        self._file = None
        self._section = 0   # 0 = head, 1 = file, 2 = tail, 3 = done
        self._offset = 0
        self.bytes_read = 0

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"

    def __len__(self):
        return self._length

    def __iter__(self):
        while True:
            chunk = self.read(UPLOAD_BLOCK_SIZE)
            if not chunk:
                break
            yield chunk

    def read(self, size: int = -1) -> bytes:
        if _is_set(self._cancel_flag):
            raise _TransferCancelled()
        if size is None or size < 0:
            size = self._length

        out = bytearray()
        while len(out) < size and self._section < 3:
            want = size - len(out)
            if self._section == 0:
                piece = self._head[self._offset:self._offset + want]
            elif self._section == 1:
                if self._file is None:
                    self._file = open(self._path, 'rb')
                piece = self._file.read(want)
            else:
                piece = self._tail[self._offset:self._offset + want]

            if not piece:
                if self._section == 1:
                    self._file.close()
                self._section += 1
                self._offset = 0
                continue

            self._offset += len(piece)
            out += piece

        self.bytes_read += len(out)
        if out:
            self._reporter.report(self.bytes_read / self._length)
        return bytes(out)

    def close(self):
        if self._file is not None and not self._file.closed:
            self._file.close()


class TransferClient:
    """HTTP client for the processing server."""

    def __init__(self, base_url: str = DEFAULT_SERVER_BASE_URL,
                 connect_timeout: float = CONNECT_TIMEOUT_SEC,
                 upload_timeout: float = UPLOAD_TIMEOUT_SEC,
                 download_timeout: float = DOWNLOAD_TIMEOUT_SEC,
                 session: requests.Session | None = None):
        self.base_url = (base_url or "").rstrip('/')
        self.connect_timeout = connect_timeout
        self.upload_timeout = upload_timeout
        self.download_timeout = download_timeout
        self.session = session or requests.Session()
        self.session.headers.update(SKIP_WARNING_HEADERS)
        adapter = _TrackingAdapter()
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        self._active: set[_TransferHandle] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "TransferClient":
        return cls(
            base_url=config.get('server_base_url', DEFAULT_SERVER_BASE_URL),
            connect_timeout=config.get('connect_timeout_sec', CONNECT_TIMEOUT_SEC),
            upload_timeout=config.get('upload_timeout_sec', UPLOAD_TIMEOUT_SEC),
            download_timeout=config.get('download_timeout_sec', DOWNLOAD_TIMEOUT_SEC),
        )

    # ── URL helpers ───────────────────────────────────────────────────

    @staticmethod
    def _validate_url(url: str) -> str:
        parsed = urlparse(url or "")
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise TransferError(ErrorCode.INVALID_ENDPOINT, f"Invalid URL: {url!r}")
        return url

    def _endpoint(self, path: str) -> str:
        return self._validate_url(self.base_url + path)

    def resolve_download_url(self, download_url: str) -> str:
        """
        Turn the server's download_url into an absolute URL.
        Fully-qualified URIs pass through; bare paths resolve against the base origin.
        """
        value = (download_url or "").strip()
        if not value:
            raise TransferError(ErrorCode.INVALID_ENDPOINT, "Empty download URL")
        if urlparse(value).scheme:
            return self._validate_url(value)
        self._validate_url(self.base_url)
        return urljoin(self.base_url + '/', value)

    # ── Error mapping ─────────────────────────────────────────────────

    @staticmethod
    def _classify(error: Exception, what: str, transferred: int,
                  cancel_flag: Optional[threading.Event]) -> JobError:
        """Map any exception raised during a transfer onto the error taxonomy."""
        if _is_set(cancel_flag) or isinstance(error, _TransferCancelled):
            return cancelled_error(what)
        if isinstance(error, JobError):
            return error
        if isinstance(error, (requests.exceptions.MissingSchema,
                              requests.exceptions.InvalidSchema,
                              requests.exceptions.InvalidURL)):
            return TransferError(ErrorCode.INVALID_ENDPOINT, f"{what} failed: invalid URL")
        if isinstance(error, requests.exceptions.Timeout):
            return TransferError(ErrorCode.TRANSPORT, f"{what} failed: request timed out",
                                 cause=TransportCause.TIMEOUT)
        if isinstance(error, requests.exceptions.ChunkedEncodingError):
            return TransferError(ErrorCode.TRANSPORT, f"{what} failed: connection lost",
                                 cause=TransportCause.CONNECTION_LOST)
        if isinstance(error, requests.exceptions.ConnectionError):
            if transferred > 0:
                return TransferError(ErrorCode.TRANSPORT, f"{what} failed: connection lost",
                                     cause=TransportCause.CONNECTION_LOST)
            return TransferError(ErrorCode.TRANSPORT, f"{what} failed: could not connect to server",
                                 cause=TransportCause.NOT_CONNECTED)
        if isinstance(error, requests.exceptions.RequestException):
            return TransferError(ErrorCode.TRANSPORT, f"{what} failed: {type(error).__name__}",
                                 cause=TransportCause.OTHER)
        if isinstance(error, OSError):
            return JobError(ErrorCode.FILE_SYSTEM, f"{what} failed: {error}")
        return JobError(ErrorCode.UNEXPECTED, f"{what} failed: {error}")

    @staticmethod
    def _reject_non_success(resp: requests.Response, what: str):
        if not 200 <= resp.status_code < 300:
            raise TransferError(
                ErrorCode.SERVER_REJECTED,
                f"{what} failed: HTTP {resp.status_code}",
                status=resp.status_code,
                detail=(resp.text or "")[:_MAX_DETAIL_CHARS],
            )

    # ── Status ────────────────────────────────────────────────────────

    def check_status(self) -> str:
        """GET the root endpoint and return its `status` string."""
        url = self._endpoint('/')
        try:
            resp = self.session.get(url, timeout=(self.connect_timeout, STATUS_TIMEOUT_SEC))
        except requests.exceptions.RequestException as e:
            raise self._classify(e, "Status check", 0, None) from e

        self._reject_non_success(resp, "Status check")
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        status = payload.get('status') if isinstance(payload, dict) else None
        if not isinstance(status, str):
            raise TransferError(ErrorCode.DECODE_FAILED, "Invalid response",
                                detail=(resp.text or "")[:_MAX_DETAIL_CHARS])
        return status

    # ── Upload ────────────────────────────────────────────────────────

    def upload(self, file_path: Path, on_progress: Optional[ProgressCallback] = None,
               cancel_flag: Optional[threading.Event] = None) -> UploadResult:
        """
        POST the video as multipart/form-data and parse the result metadata.
        Progress is the fraction of the request body handed to the connection.
        """
        file_path = Path(file_path)
        url = self._endpoint(UPLOAD_PATH)
        if not file_path.is_file():
            raise JobError(ErrorCode.FILE_SYSTEM, f"Video file not found: {file_path}")

        reporter = ProgressReporter(on_progress, cancel_flag)
        body = None

        try:
            with self._tracking():
                if _is_set(cancel_flag):
                    raise _TransferCancelled()
                body = _MultipartBody(file_path, reporter, cancel_flag)
                logger.info("Uploading %s (%d bytes) to %s", file_path.name, len(body), url)
                resp = self.session.post(
                    url,
                    data=body,
                    headers={"Content-Type": body.content_type},
                    timeout=(self.connect_timeout, self.upload_timeout),
                )
        except Exception as e:
            sent = body.bytes_read if body is not None else 0
            err = self._classify(e, "Upload", sent, cancel_flag)
            logger.warning("Upload error: %s", err)
            raise err from e
        finally:
            if body is not None:
                body.close()

        if _is_set(cancel_flag):
            raise cancelled_error("Upload")

        logger.info("Upload response status: %d", resp.status_code)
        result = self._parse_upload_response(resp)
        reporter.report(1.0)
        return result

    @staticmethod
    def _parse_upload_response(resp: requests.Response) -> UploadResult:
        TransferClient._reject_non_success(resp, "Upload")

        if not resp.content:
            raise TransferError(ErrorCode.NO_DATA, "Upload completed but no response data")

        raw = resp.text[:_MAX_DETAIL_CHARS]
        try:
            payload = resp.json()
        except ValueError:
            logger.debug("Raw upload response: %s", raw)
            raise TransferError(ErrorCode.DECODE_FAILED,
                                "Upload succeeded but the response could not be parsed",
                                detail=raw)

        download_url = payload.get('download_url') if isinstance(payload, dict) else None
        if not isinstance(download_url, str) or not download_url.strip():
            logger.debug("Raw upload response: %s", raw)
            raise TransferError(ErrorCode.DECODE_FAILED,
                                "Upload succeeded but the response had no download URL",
                                detail=raw)

        return UploadResult(
            download_url=download_url.strip(),
            message=str(payload.get('message', '') or ''),
            processing_time=str(payload.get('processing_time', '') or ''),
        )

    # ── Download ──────────────────────────────────────────────────────

    def download(self, locator: str, dest_dir: Path,
                 on_progress: Optional[ProgressCallback] = None,
                 cancel_flag: Optional[threading.Event] = None) -> Path:
        """
        Stream the archive at `locator` into dest_dir.
        Returns the path of the downloaded file.
        """
        url = self._validate_url(locator)
        dest_dir = Path(dest_dir)
        reporter = ProgressReporter(on_progress, cancel_flag)
        received = 0
        target = dest_dir / f"result_{uuid.uuid4().hex[:8]}.zip"

        try:
            with self._tracking():
                if _is_set(cancel_flag):
                    raise _TransferCancelled()
                dest_dir.mkdir(parents=True, exist_ok=True)

                logger.info("Download started: %s", url)
                resp = self.session.get(url, stream=True,
                                        timeout=(self.connect_timeout, self.download_timeout))
                try:
                    self._reject_non_success(resp, "Download")
                    total = _content_length(resp)
                    with open(target, 'wb') as f:
                        for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                            if _is_set(cancel_flag):
                                raise _TransferCancelled()
                            if not chunk:
                                continue
                            f.write(chunk)
                            received += len(chunk)
                            if total > 0:
                                reporter.report(received / total)
                finally:
                    resp.close()

            if _is_set(cancel_flag):
                raise _TransferCancelled()
        except Exception as e:
            _remove_partial(target)
            err = self._classify(e, "Download", received, cancel_flag)
            logger.warning("Download error: %s", err)
            raise err from e

        if received == 0:
            _remove_partial(target)
            raise TransferError(ErrorCode.EMPTY_FILE, "Download failed: Empty file received")

        reporter.report(1.0)
        logger.info("Download completed: %s (%d bytes)", target, received)
        return target

    # ── Cancellation ──────────────────────────────────────────────────

    @contextmanager
    def _tracking(self):
        """Register the connections this thread opens until the block exits."""
        handle = _TransferHandle()
        with self._lock:
            self._active.add(handle)
        _local.handle = handle
        try:
            yield handle
        finally:
            _local.handle = None
            with self._lock:
                self._active.discard(handle)

    def abort(self):
        """
        Shut down the sockets of every in-flight upload or download so a
        read blocked on the server returns immediately.
        """
        with self._lock:
            handles = list(self._active)
        if handles:
            logger.info("Aborting %d in-flight transfer(s)", len(handles))
        for handle in handles:
            handle.abort()


def _content_length(resp: requests.Response) -> int:
    try:
        return int(resp.headers.get('Content-Length') or 0)
    except ValueError:
        return 0


def _remove_partial(path: Path):
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Failed to delete partial download %s: %s", path, e)
