"""Shared utility functions: display helpers and crash-safe JSON persistence."""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

import orjson


def truncate_text(text: str, max_chars: int = 80) -> str:
    """Shorten text for log lines and tables."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


# --- File I/O -----------------------------------------------------------------

def save_json(data: Any, path: str | Path) -> None:
    """
    Serialise data with orjson and atomically replace ``path``.

    The payload is written to a sibling temp file first, so a reader never
    sees a half-written store or index manifest.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def load_json(path: str | Path, default: Any = None) -> Any:
    """Load JSON from ``path``; return ``default`` when the file does not exist."""
    path = Path(path)
    if not path.exists():
        return default
    return orjson.loads(path.read_bytes())
