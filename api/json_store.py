"""
Whole-document JSON persistence for contacts, message history and automation config.

Each document is read and written as a unit. Writes go to `<path>.tmp` first and are
then renamed over the original so a crash mid-write never leaves a truncated file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def read_json(path: str | Path, fallback: dict[str, Any]) -> dict[str, Any]:
    """Return the parsed document, or `fallback` when missing, unreadable or not an object."""
    p = Path(path)
    if not p.exists():
        return fallback
    try:
        parsed = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("read_json: unreadable document path=%s error=%s", p, e)
        return fallback
    return parsed if isinstance(parsed, dict) else fallback


def write_json_atomic(path: str | Path, doc: dict[str, Any]) -> None:
    """Write `doc` to a temp file next to `path`, then rename it into place. Raises OSError."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(json.dumps(doc, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp, p)
