"""
Cleanup: delete job artifacts after the pipeline ends.
"""

import shutil
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def cleanup_job_workspace(job_workspace: Path, keep_debug: bool = False):
    """
    Delete job artifacts after completion (success, failure or cancel).

    Deletes: download/ (the fetched archive) and source/ (the prepared video).
    If keep_debug is True: preserves download/ for inspection.
    """
    if not job_workspace.exists():
        return

    dirs_to_delete = ['source']
    if not keep_debug:
        dirs_to_delete.append('download')

    for dirname in dirs_to_delete:
        dir_path = job_workspace / dirname
        if dir_path.exists():
            try:
                shutil.rmtree(dir_path)
                logger.debug("Deleted: %s", dir_path)
            except OSError as e:
                logger.warning("Failed to delete %s: %s", dir_path, e)

    # Remove the workspace itself once nothing is left in it
    try:
        if job_workspace.exists() and not any(job_workspace.iterdir()):
            job_workspace.rmdir()
            logger.debug("Removed empty workspace: %s", job_workspace)
    except OSError as e:
        logger.debug("Could not remove workspace %s: %s", job_workspace, e)
