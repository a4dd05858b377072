"""Font lookup: find an installed font file by family name.

The UI cannot read system font files itself, so it asks for a family and
gets back a ``data:`` URL it can hand to a FontFace.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from nanoprompt.pty.encoding import encode_output

logger = logging.getLogger(__name__)

FONT_SUFFIXES = (".otf", ".ttf", ".ttc")


def font_dirs(extra_dirs: list[str] | None = None) -> list[Path]:
    """Directories searched for fonts on this platform, extras first."""
    home = os.environ.get("HOME", "")
    if sys.platform == "darwin":
        dirs = [f"{home}/Library/Fonts", "/Library/Fonts", "/System/Library/Fonts"]
    elif sys.platform == "win32":
        local = os.environ.get("LOCALAPPDATA", "")
        dirs = [f"{local}\\Microsoft\\Windows\\Fonts", "C:\\Windows\\Fonts"]
    else:
        dirs = [f"{home}/.local/share/fonts", "/usr/share/fonts", "/usr/local/share/fonts"]
    return [Path(d) for d in [*(extra_dirs or []), *dirs]]


def _needle(family: str) -> str:
    return family.replace(" ", "").lower()


def _collect(directory: Path, needle: str, out: list[Path]) -> None:
    try:
        entries = sorted(directory.iterdir())
    except OSError:
        return
    for entry in entries:
        if entry.is_dir():
            _collect(entry, needle, out)
            continue
        name = entry.name.lower()
        if not name.endswith(FONT_SUFFIXES):
            continue
        stem = name.rsplit(".", 1)[0]
        if stem.replace("-", "").replace("_", "").startswith(needle):
            out.append(entry)


def find_font_files(family: str, dirs: list[Path] | None = None) -> list[Path]:
    """Font files whose name starts with ``family``, Regular weights first.

    Matching ignores case, spaces in the family, and ``-``/``_`` in file
    names, so "Fira Code" finds ``FiraCode-Regular.ttf``.
    """
    needle = _needle(family)
    if not needle:
        return []

    candidates: list[Path] = []
    for directory in dirs if dirs is not None else font_dirs():
        _collect(directory, needle, candidates)

    # Stable: keeps scan order within each group
    candidates.sort(key=lambda p: "regular" not in str(p).lower())
    return candidates


def font_data_url(path: Path) -> str:
    """Read a font file into a ``data:font/...;base64,`` URL."""
    kind = "opentype" if path.suffix.lower() == ".otf" else "truetype"
    return f"data:font/{kind};base64,{encode_output(path.read_bytes())}"


def load_font(family: str, dirs: list[Path] | None = None) -> str | None:
    """Return the best matching font as a base64 ``data:`` URL, or None."""
    candidates = find_font_files(family, dirs)
    if not candidates:
        logger.debug("No font found for %r", family)
        return None

    logger.info("Loading font %r from %s", family, candidates[0])
    return font_data_url(candidates[0])
