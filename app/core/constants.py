"""
Shared constants for FrameUploader.
Single source of truth, imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "FrameUploader"
APP_BUNDLE_ID = "com.local.frameuploader"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

DEFAULT_EXTRACTION_ROOT = HOME / "Documents" / APP_NAME
APP_SUPPORT_DIR = HOME / "Library" / "Application Support" / APP_NAME
APP_CACHE_DIR = HOME / "Library" / "Caches" / APP_NAME
LOG_DIR = HOME / "Library" / "Logs" / APP_NAME
JOBS_CACHE_DIR = APP_CACHE_DIR / "jobs"
DB_PATH = APP_SUPPORT_DIR / "app.db"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"

EXTRACTION_DIR_PREFIX = "ExtractedImages_"

# ── Server ────────────────────────────────────────────────────────────
DEFAULT_SERVER_BASE_URL = "https://prime-whole-fish.ngrok-free.app"
UPLOAD_PATH = "/upload"
UPLOAD_FIELD_NAME = "video"
UPLOAD_CONTENT_TYPE = "video/mp4"
# Suppresses the interstitial warning page of the development tunnel
SKIP_WARNING_HEADERS = {"ngrok-skip-browser-warning": "true"}

# ── Job states ────────────────────────────────────────────────────────
class JobState:
    IDLE = "IDLE"
    UPLOADING = "UPLOADING"
    AWAITING_DOWNLOAD = "AWAITING_DOWNLOAD"
    DOWNLOADING = "DOWNLOADING"
    EXTRACTING = "EXTRACTING"
    ORGANIZING = "ORGANIZING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

TERMINAL_STATES = {JobState.COMPLETE, JobState.FAILED, JobState.CANCELLED}

# ── Transport failure causes ──────────────────────────────────────────
class TransportCause:
    TIMEOUT = "timeout"
    CONNECTION_LOST = "connection_lost"
    NOT_CONNECTED = "not_connected"
    OTHER = "other"

TRANSIENT_CAUSES = {
    TransportCause.TIMEOUT,
    TransportCause.CONNECTION_LOST,
    TransportCause.NOT_CONNECTED,
}

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Transfer
    INVALID_ENDPOINT = "ERR_INVALID_ENDPOINT"
    SERVER_REJECTED = "ERR_SERVER_REJECTED"
    DECODE_FAILED = "ERR_DECODE_FAILED"
    NO_DATA = "ERR_NO_DATA"
    EMPTY_FILE = "ERR_EMPTY_FILE"
    TRANSPORT = "ERR_TRANSPORT"
    CANCELLED = "ERR_CANCELLED"

    # Processing
    EXTRACTION_FAILED = "ERR_EXTRACTION_FAILED"
    NO_MEDIA_FOUND = "ERR_NO_MEDIA_FOUND"
    FILE_SYSTEM = "ERR_FILE_SYSTEM"
    VIDEO_PROCESSING = "ERR_VIDEO_PROCESSING"
    UNEXPECTED = "ERR_UNEXPECTED"

# ── Media recognition ─────────────────────────────────────────────────
MEDIA_EXTENSIONS = frozenset({
    "jpg", "jpeg", "png", "gif", "bmp", "tiff", "webp", "heic", "heif",
})
ROOT_COLLECTION_NAME = "root"
ROOT_DISPLAY_PATH = "Root"
STANDARD_VIDEO_EXTENSION = "mp4"

# ── Pipeline defaults ─────────────────────────────────────────────────
RETENTION_COUNT = 2
MAX_DOWNLOAD_RETRIES = 3
RETRY_DELAY_SEC = 2.0          # constant backoff, not exponential
CONNECT_TIMEOUT_SEC = 60
UPLOAD_TIMEOUT_SEC = 600       # large media over mobile networks
DOWNLOAD_TIMEOUT_SEC = 300
STATUS_TIMEOUT_SEC = 15
DOWNLOAD_CHUNK_SIZE = 64 * 1024
UPLOAD_BLOCK_SIZE = 64 * 1024
FFMPEG_TIMEOUT_SEC = 900
