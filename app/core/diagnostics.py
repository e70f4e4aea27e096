"""
Diagnostics: tool version detection and server connectivity.
"""

import logging

from app.core.security_utils import run_subprocess_capture
from app.core.error_codes import JobError

logger = logging.getLogger(__name__)


def get_ffmpeg_version() -> str:
    """Return ffmpeg version string, or error message."""
    try:
        result = run_subprocess_capture(["ffmpeg", "-version"], timeout=10)
        if result.returncode == 0:
            first_line = result.stdout.strip().splitlines()[0]
            return first_line
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"


def get_server_status(client) -> str:
    """Status string from the server's root endpoint, or an error message."""
    try:
        return client.check_status()
    except JobError as e:
        logger.warning("Server status check failed: %s", e)
        return f"Error: {e.message}"


def get_diagnostics(client) -> dict:
    """Gather all diagnostic information."""
    return {
        "ffmpeg_version": get_ffmpeg_version(),
        "server_url": client.base_url,
        "server_status": get_server_status(client),
    }
