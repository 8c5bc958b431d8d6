from __future__ import annotations

import re
from pathlib import Path


_SAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]+")


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_text_atomic(path: Path, text: str) -> Path:
    """Write via a sibling temp file so readers never see a half-written file."""
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)
    return path


def safe_name(name: str, fallback: str = "file") -> str:
    """Filesystem-safe stem; ids like ``../x`` collapse to ``x``."""
    value = _SAFE_NAME_RE.sub("_", (name or "").strip()).strip("._")
    return value or fallback
