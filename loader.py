"""Program loading: a program is the raw bytes of a file."""

from __future__ import annotations
import os
from typing import Optional

from values import VMLoadError


def resolve_program_path(path: str, base_dir: Optional[str] = None) -> str:
    """Resolve ``path`` against ``base_dir`` (default: cwd), then its parent.

    When neither holds the file, the ``base_dir`` candidate is returned so the
    read error names it.
    """
    if os.path.isabs(path):
        return os.path.normpath(path)
    base = os.path.normpath(base_dir or os.getcwd())
    candidates = [os.path.join(base, path), os.path.join(os.path.dirname(base), path)]
    for candidate in candidates:
        if os.path.exists(candidate):
            return os.path.normpath(candidate)
    return os.path.normpath(candidates[0])


def load_program(path: str, base_dir: Optional[str] = None) -> bytes:
    resolved = resolve_program_path(path, base_dir)
    try:
        with open(resolved, "rb") as handle:
            return handle.read()
    except OSError as exc:
        raise VMLoadError(f"Failed to read {resolved}: {exc.strerror or exc}") from exc


def program_from_text(text: str) -> bytes:
    """Encode program text typed on a command line.

    Backslash escapes (``\\n``, ``\\x07``) are decoded so bytes outside the
    printable range can be written literally.
    """
    try:
        decoded = text.encode("latin-1", "backslashreplace").decode("unicode_escape")
    except UnicodeDecodeError as exc:
        raise VMLoadError(f"Invalid escape in program text: {exc}") from exc
    try:
        return decoded.encode("latin-1")
    except UnicodeEncodeError as exc:
        raise VMLoadError(f"Program text must contain byte values only: {exc}") from exc
