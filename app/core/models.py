"""
Data models (plain dataclasses) for FrameUploader.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from app.core.constants import JobState


@dataclass
class MediaItem:
    name: str
    path: Path


@dataclass
class Collection:
    name: str
    items: list[MediaItem]
    path: Path                       # source directory, diagnostics only
    relative_path: str = ""


@dataclass
class UploadResult:
    download_url: str
    message: str = ""
    processing_time: str = ""


@dataclass
class ExtractionRecord:
    path: Path
    created_at: str
    id: Optional[int] = None


@dataclass
class Job:
    id: str                          # UUID
    source_path: Optional[Path] = None
    locator: Optional[str] = None
    state: str = JobState.IDLE
    status_text: str = ""
    upload_progress: float = 0.0
    download_progress: float = 0.0
    retry_count: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    cancelled: bool = False
    extraction_path: Optional[Path] = None
    catalog: list[Collection] = field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
