"""
Result organizer: groups extracted media files into per-directory collections.

The catalog is built by a pre-order walk of the extraction root. A directory
yields one Collection when it directly contains at least one media file;
subdirectories are always visited, in name order, after their parent.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from app.core.constants import MEDIA_EXTENSIONS, ROOT_COLLECTION_NAME, ROOT_DISPLAY_PATH
from app.core.models import Collection, MediaItem

logger = logging.getLogger(__name__)


def is_media_file(path: Path) -> bool:
    """Extension-only, case-insensitive match against the media set."""
    suffix = Path(path).suffix
    return bool(suffix) and suffix[1:].lower() in MEDIA_EXTENSIONS


def organize(root_dir: Path, trace: Optional[list[str]] = None) -> list[Collection]:
    """
    Walk root_dir and return its media collections in pre-order.
    Unreadable directories are skipped; `trace` collects walk diagnostics.
    """
    root_dir = Path(root_dir)
    catalog: list[Collection] = []
    if not root_dir.is_dir():
        logger.warning("Organize: %s is not a directory", root_dir)
        _note(trace, f"Missing directory: {root_dir}")
        return catalog

    _scan(root_dir, root_dir, catalog, trace)
    logger.info("Organized %d items into %d collections under %s",
                count_items(catalog), len(catalog), root_dir)
    return catalog


def _scan(current: Path, root: Path, catalog: list[Collection],
          trace: Optional[list[str]]):
    try:
        with os.scandir(current) as it:
            entries = list(it)
    except OSError as e:
        logger.warning("Error scanning %s: %s", current, e)
        _note(trace, f"Error scanning {current.name}: {e}")
        return

    directories: list[Path] = []
    media: list[MediaItem] = []
    for entry in entries:
        try:
            # Symlinked directories are not followed (cycles)
            if entry.is_dir(follow_symlinks=False):
                directories.append(Path(entry.path))
            elif entry.is_file() and is_media_file(Path(entry.name)):
                media.append(MediaItem(name=entry.name, path=Path(entry.path)))
        except OSError as e:
            _note(trace, f"Skipping {entry.name}: {e}")

    is_root = current == root
    relative = "" if is_root else current.relative_to(root).as_posix()
    _note(trace, f"{relative or ROOT_DISPLAY_PATH}: {len(media)} media, {len(directories)} dirs")

    if media:
        # Ordinal (code point) comparison, independent of locale
        media.sort(key=lambda item: item.name)
        catalog.append(Collection(
            name=ROOT_COLLECTION_NAME if is_root else current.name,
            items=media,
            path=current,
            relative_path=relative or ROOT_DISPLAY_PATH,
        ))

    for directory in sorted(directories, key=lambda p: p.name):
        _scan(directory, root, catalog, trace)


def _note(trace: Optional[list[str]], message: str):
    if trace is not None:
        trace.append(message)


def count_items(catalog: list[Collection]) -> int:
    return sum(len(c.items) for c in catalog)
