"""
Video preparation using ffmpeg.
Copies the picked video into the job workspace and converts it to MP4
when it is in any other container.
"""

import logging
import shutil
import uuid
from pathlib import Path

from app.core.security_utils import run_subprocess_capture, sanitize_filename
from app.core.error_codes import JobError
from app.core.constants import ErrorCode, STANDARD_VIDEO_EXTENSION, FFMPEG_TIMEOUT_SEC

logger = logging.getLogger(__name__)


def prepare_video(source_path: Path, workspace: Path) -> Path:
    """
    Return a path to an MP4 copy of source_path inside <workspace>/source.
    The caller's original file is never modified.
    """
    source_path = Path(source_path)
    if not source_path.is_file():
        raise JobError(ErrorCode.VIDEO_PROCESSING,
                       f"Video file not found at path: {source_path}")

    source_dir = workspace / "source"
    source_dir.mkdir(parents=True, exist_ok=True)

    stem = sanitize_filename(source_path.stem) or "video"
    suffix = source_path.suffix.lower()
    copy_path = source_dir / f"{stem}_{uuid.uuid4().hex[:8]}{suffix}"
    try:
        shutil.copy2(source_path, copy_path)
    except OSError as e:
        raise JobError(ErrorCode.VIDEO_PROCESSING,
                       f"Failed to create a copy of the video file: {e}")

    if suffix == f".{STANDARD_VIDEO_EXTENSION}":
        logger.info("Video already MP4: %s", copy_path)
        return copy_path

    return convert_to_mp4(copy_path, source_dir)


def convert_to_mp4(input_path: Path, output_dir: Path) -> Path:
    """Re-encode to H.264/AAC MP4 optimised for streaming; removes the input."""
    output_path = output_dir / f"converted_{uuid.uuid4().hex[:8]}.{STANDARD_VIDEO_EXTENSION}"

    args = [
        "ffmpeg",
        "-y",                           # overwrite
        "-i", str(input_path),
        "-c:v", "libx264",
        "-preset", "medium",
        "-c:a", "aac",
        "-movflags", "+faststart",      # network-optimised layout
        str(output_path),
    ]

    try:
        result = run_subprocess_capture(args, timeout=FFMPEG_TIMEOUT_SEC)
    except Exception as e:
        raise JobError(ErrorCode.VIDEO_PROCESSING, f"Video conversion failed: {e}")

    if result.returncode != 0:
        stderr = result.stderr or ""
        raise JobError(ErrorCode.VIDEO_PROCESSING,
                       f"ffmpeg failed (rc={result.returncode}): {stderr[:300]}")

    if not output_path.exists():
        raise JobError(ErrorCode.VIDEO_PROCESSING, "Converted file not created")

    try:
        input_path.unlink()
    except OSError as e:
        logger.debug("Could not remove pre-conversion copy %s: %s", input_path, e)

    logger.info("Converted video: %s", output_path)
    return output_path
