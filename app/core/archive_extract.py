"""
Zip extraction for downloaded result archives.
Keeps the archive's directory layout so the organizer can group by folder.
"""

import logging
import shutil
import zipfile
from pathlib import Path
from typing import Callable, Optional

from app.core.security_utils import is_within_directory

logger = logging.getLogger(__name__)

# (current entry index, total entry count), both 1-based / inclusive
EntryProgressCallback = Callable[[int, int], None]


def extract_archive(archive_path: Path, dest_dir: Path,
                    on_progress: Optional[EntryProgressCallback] = None) -> bool:
    """
    Extract every entry of a zip archive into dest_dir (created with parents).
    Returns True only if every entry was written; failures are logged.
    Existing contents of dest_dir are left alone.
    """
    archive_path = Path(archive_path)
    dest_dir = Path(dest_dir)

    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Cannot create extraction directory %s: %s", dest_dir, e)
        return False

    try:
        with zipfile.ZipFile(archive_path, 'r') as zf:
            entries = zf.infolist()
            total = len(entries)
            for index, info in enumerate(entries, start=1):
                if not _extract_entry(zf, info, dest_dir):
                    return False
                if on_progress:
                    try:
                        on_progress(index, total)
                    except Exception as e:
                        logger.debug("Extraction progress observer failed: %s", e)
    except zipfile.BadZipFile as e:
        logger.error("Invalid or corrupted ZIP %s: %s", archive_path, e)
        return False
    except OSError as e:
        logger.error("Extraction I/O error for %s: %s", archive_path, e)
        return False

    logger.info("Extracted %d entries from %s into %s", total, archive_path.name, dest_dir)
    return True


def _extract_entry(zf: zipfile.ZipFile, info: zipfile.ZipInfo, dest_dir: Path) -> bool:
    """Write one entry; False on traversal, encryption or corruption."""
    name = info.filename
    if "\x00" in name:
        logger.warning("Rejecting archive entry with null byte: %r", name)
        return False

    target = dest_dir / name.replace("\\", "/")
    if not is_within_directory(dest_dir, target):
        logger.warning("Path traversal attempt blocked: %r", name)
        return False

    if info.flag_bits & 0x1:
        logger.error("Archive entry is password protected: %r", name)
        return False

    if info.is_dir():
        target.mkdir(parents=True, exist_ok=True)
        return True

    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        with zf.open(info) as src, open(target, 'wb') as dst:
            shutil.copyfileobj(src, dst)
    except zipfile.BadZipFile as e:
        # CRC mismatch surfaces here while reading the entry
        logger.error("Corrupted archive entry %r: %s", name, e)
        return False
    except NotImplementedError as e:
        logger.error("Unsupported compression for %r: %s", name, e)
        return False

    logger.debug("Extracted: %s", name)
    return True
