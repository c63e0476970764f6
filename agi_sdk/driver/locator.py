"""Locates the agi-driver binary for the current platform"""

import os
import platform
import shutil
import sys
from enum import Enum
from pathlib import Path
from typing import List, Optional

BINARY_NAME = "agi-driver"

# Package root (agi_sdk/); bundled binaries live under bin/<platform>/
_PACKAGE_DIR = Path(__file__).resolve().parent.parent


class PlatformId(str, Enum):
    DARWIN_ARM64 = "darwin-arm64"
    DARWIN_X64 = "darwin-x64"
    LINUX_X64 = "linux-x64"
    WINDOWS_X64 = "windows-x64"


def get_platform_id() -> PlatformId:
    if sys.platform == "darwin":
        if platform.machine().lower() in ("arm64", "aarch64"):
            return PlatformId.DARWIN_ARM64
        return PlatformId.DARWIN_X64
    if sys.platform.startswith("linux"):
        return PlatformId.LINUX_X64
    if sys.platform == "win32":
        return PlatformId.WINDOWS_X64
    raise RuntimeError(f"Unsupported platform: {sys.platform} ({platform.machine()})")


def get_binary_filename(platform_id: Optional[PlatformId] = None) -> str:
    platform_id = platform_id or get_platform_id()
    if platform_id == PlatformId.WINDOWS_X64:
        return f"{BINARY_NAME}.exe"
    return BINARY_NAME


def _candidates(platform_id: PlatformId, filename: str) -> List[Path]:
    return [
        _PACKAGE_DIR / "bin" / platform_id.value / filename,
        _PACKAGE_DIR / filename,
        Path.cwd() / filename,
    ]


def find_binary_path() -> str:
    """
    Find the agi-driver binary.

    Search order:
    1. AGI_DRIVER_PATH environment variable
    2. Bundled binary: agi_sdk/bin/<platform>/
    3. Package directory
    4. Current working directory
    5. PATH

    Returns:
        Absolute path to the binary

    Raises:
        FileNotFoundError: If no binary is found
    """
    override = os.environ.get("AGI_DRIVER_PATH")
    if override:
        if os.path.isfile(override):
            return os.path.abspath(override)
        raise FileNotFoundError(f"AGI_DRIVER_PATH points to a missing file: {override}")

    platform_id = get_platform_id()
    filename = get_binary_filename(platform_id)
    searched = _candidates(platform_id, filename)
    for path in searched:
        if path.is_file():
            return str(path)

    on_path = shutil.which(filename)
    if on_path:
        return on_path

    raise FileNotFoundError(
        f"Could not find {filename} for {platform_id.value}. "
        f"Searched: {', '.join(str(p) for p in searched)}, PATH. "
        f"Set AGI_DRIVER_PATH or pass binary_path explicitly."
    )


def is_binary_available() -> bool:
    try:
        find_binary_path()
    except (FileNotFoundError, RuntimeError):
        return False
    return True
