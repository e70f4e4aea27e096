"""
Result store: the append-only catalogue of extracted result directories,
with a retention policy that bounds disk usage.
"""

import logging
import shutil
import uuid
from pathlib import Path

from app.core.constants import EXTRACTION_DIR_PREFIX, RETENTION_COUNT
from app.core.db_sqlite import Database
from app.core.models import ExtractionRecord
from app.core.security_utils import is_within_directory

logger = logging.getLogger(__name__)


class ResultStore:
    """
    Persists where archives were extracted.

    `record` only appends; `prune` enforces retention and is expected to run
    before each new extraction, so at most retention + 1 entries exist between
    the two.
    """

    def __init__(self, db: Database, extraction_root: Path,
                 retention: int = RETENTION_COUNT):
        self.db = db
        self.extraction_root = Path(extraction_root)
        self.retention = max(1, int(retention))

    def create_extraction_path(self) -> Path:
        """A fresh, not-yet-created directory under the extraction root."""
        return self.extraction_root / f"{EXTRACTION_DIR_PREFIX}{uuid.uuid4().hex[:8]}"

    def record(self, path: Path) -> ExtractionRecord:
        record = self.db.add_extraction(Path(path))
        logger.info("Recorded extraction: %s", path)
        return record

    def prune(self) -> list[Path]:
        """
        Keep the `retention` most recent records; delete older records and
        their directories, plus unrecorded extraction directories.
        Returns the directories removed from disk.
        """
        removed: list[Path] = []
        records = self.db.get_extractions()
        keep, drop = records[:self.retention], records[self.retention:]

        for record in drop:
            if self._remove_dir(record.path):
                removed.append(record.path)
            self.db.delete_extraction(record.id)
            logger.info("Pruned extraction: %s", record.path)

        removed.extend(self._sweep_orphans({r.path for r in keep}))
        return removed

    def _sweep_orphans(self, kept: set[Path]) -> list[Path]:
        """Remove prefixed directories no record refers to (failed jobs)."""
        if not self.extraction_root.is_dir():
            return []
        kept_resolved = {p.resolve() for p in kept}
        removed = []
        for child in self.extraction_root.iterdir():
            if not child.is_dir() or not child.name.startswith(EXTRACTION_DIR_PREFIX):
                continue
            if child.resolve() in kept_resolved:
                continue
            if self._remove_dir(child):
                logger.info("Removed orphaned extraction: %s", child)
                removed.append(child)
        return removed

    def _remove_dir(self, path: Path) -> bool:
        if not path.exists():
            return False
        if not is_within_directory(self.extraction_root, path):
            logger.warning("Refusing to delete %s outside %s", path, self.extraction_root)
            return False
        try:
            shutil.rmtree(path)
            return True
        except OSError as e:
            logger.warning("Failed to delete %s: %s", path, e)
            return False

    # Defined last: the method name shadows the builtin inside the class body
    def list(self) -> list[ExtractionRecord]:
        """Records whose directory still exists, newest first."""
        return [r for r in self.db.get_extractions() if r.path.exists()]
