"""
FrameUploader build script.

Installs the headless pipeline package used by the host UI:

    pip install -e .

When run with the py2app command on macOS, the py2app options below are
applied so a host app can bundle the package:

    python3 setup.py py2app

Tests:

    python3 -m unittest discover -s tests
"""

import sys
from setuptools import setup

APP_NAME = "FrameUploader"
VERSION = "1.0.0"

PY2APP_OPTIONS = {
    "argv_emulation": False,
    "plist": {
        "CFBundleName": APP_NAME,
        "CFBundleDisplayName": "Frame Uploader",
        "CFBundleIdentifier": "com.local.frameuploader",
        "CFBundleVersion": VERSION,
        "CFBundleShortVersionString": VERSION,
        "CFBundlePackageType": "APPL",
        "LSMinimumSystemVersion": "10.15",
        "NSHumanReadableCopyright": "Local use only",
        "NSHighResolutionCapable": True,
        "LSEnvironment": {
            "PYTHONDONTWRITEBYTECODE": "1",
        },
    },
    "packages": [
        "app",
        "app.core",
        "requests",
    ],
    "includes": [
        "app.core.constants",
        "app.core.config",
        "app.core.error_codes",
        "app.core.log_setup",
        "app.core.models",
        "app.core.security_utils",
        "app.core.transfer_client",
        "app.core.archive_extract",
        "app.core.organizer",
        "app.core.db_sqlite",
        "app.core.result_store",
        "app.core.video_prepare",
        "app.core.cleanup",
        "app.core.diagnostics",
        "app.core.pipeline",
        "sqlite3",
    ],
    "excludes": [
        "PyQt5", "PyQt6", "PySide2", "PySide6",
        "matplotlib", "numpy", "scipy", "pandas",
        "PIL", "cv2", "torch", "tensorflow",
        "pytest", "unittest",
    ],
    "site_packages": True,
}

extra = {}
# py2app only exists on macOS build machines; plain installs skip it
if "py2app" in sys.argv:
    extra = {
        "options": {"py2app": PY2APP_OPTIONS},
        "setup_requires": ["py2app"],
    }

setup(
    name="frame-uploader",
    version=VERSION,
    description="Upload a video, fetch the processed frame archive and catalogue its images",
    packages=["app", "app.core"],
    install_requires=[
        "requests>=2.28.0",
        "urllib3>=1.26",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    **extra,
)
