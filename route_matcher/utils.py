"""General utility helpers shared across modules."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from datetime import datetime, date, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

_log = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_\-]")


def _normalise_value(value: Any) -> Any:
    """Convert objects to JSON-friendly representations."""

    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, set):
        return sorted(_normalise_value(item) for item in value)
    if isinstance(value, (list, tuple)):
        return [_normalise_value(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _normalise_value(val) for key, val in value.items()}
    return value


def json_dumps_sorted(value: Any) -> str:
    """Return canonical JSON for hashing / comparisons."""

    normalised = _normalise_value(value)
    return json.dumps(normalised, sort_keys=True, separators=(",", ":"))


def stable_id(prefix: str, members: Iterable[str]) -> str:
    """Deterministic short identifier derived from a set of member ids."""

    digest = hashlib.sha256(json_dumps_sorted(sorted(members)).encode("utf-8"))
    return f"{prefix}_{digest.hexdigest()[:12]}"


def sanitize_key(value: str) -> str:
    """Make an identifier safe to use as part of a file name."""

    return _UNSAFE_KEY_CHARS.sub("_", str(value))


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON through a temporary file so readers never see partial data."""

    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    with temp_path.open("w", encoding="utf-8") as handle:
        json.dump(_normalise_value(payload), handle, ensure_ascii=True)
    temp_path.replace(path)


def read_json(path: Path) -> Optional[Any]:
    """Return decoded JSON, or None when the file is missing or unreadable."""

    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, ValueError) as exc:
        _log.warning("Unreadable JSON file %s: %s", path, exc)
        return None
