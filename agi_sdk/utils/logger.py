"""Simple logging utility for the AGI SDK"""

import os
import sys

# Global verbose flag (initialized from environment)
_verbose = os.environ.get("AGI_VERBOSE", "").lower() in ("1", "true")


def set_verbose(enabled: bool):
    """Enable or disable verbose logging"""
    global _verbose
    _verbose = enabled


def is_verbose() -> bool:
    """Check if verbose mode is enabled"""
    return _verbose


def log(tag: str, message: str = "", force: bool = False):
    """
    Print a log message if verbose mode is enabled.

    Args:
        tag: Component tag (e.g., "HTTP", "Loop", "Driver")
        message: Log message
        force: Print even if verbose is disabled (for errors/warnings)
    """
    if _verbose or force:
        print(f"[{tag}] {message}", file=sys.stderr, flush=True)


def truncate(text: str, limit: int = 200) -> str:
    """Shorten long payloads (screenshots, frames) before logging them."""
    if text is None:
        return ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... ({len(text)} chars)"
