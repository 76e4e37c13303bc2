"""Resumable checkpoint for in-flight pipeline runs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..models import ProcessingCheckpoint
from ..utils import read_json, write_json_atomic

_log = logging.getLogger(__name__)

CHECKPOINT_FILE = "route_checkpoint.json"


class CheckpointStore:
    def __init__(self, base_dir: Path | str) -> None:
        self._path = Path(base_dir) / CHECKPOINT_FILE

    def load(self) -> Optional[ProcessingCheckpoint]:
        payload = read_json(self._path)
        if not isinstance(payload, dict):
            return None
        try:
            return ProcessingCheckpoint.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            _log.warning("Discarding unreadable checkpoint: %s", exc)
            return None

    def save(self, checkpoint: ProcessingCheckpoint) -> None:
        write_json_atomic(self._path, checkpoint.to_dict())

    def clear(self) -> None:
        if self._path.exists():
            self._path.unlink()
