from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .canonical import to_canonical_json
from .errors import OrchestrationNotFoundError
from .models import OrchestrationState

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar of *path*.

    The sidecar lives beside the data file so the data file itself can be
    swapped with ``os.replace`` while the lock is held.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class OrchestrationArchive:
    """Terminal OrchestrationStates stored as canonical JSON, one file per orchestration.

    Layout: ``<root>/orchestrations/<orchestration_id>.json``.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.directory = self.root / "orchestrations"

    def _path(self, orchestration_id: str) -> Path:
        if not _SAFE_ID.match(orchestration_id):
            raise ValueError(f"Unsafe orchestration id for archive path: {orchestration_id!r}")
        return self.directory / f"{orchestration_id}.json"

    def write(self, state: OrchestrationState) -> Path:
        path = self._path(state.id)
        payload = to_canonical_json(state.model_dump(mode="json", by_alias=True))
        with _locked_file(path):
            _atomic_write_text(path, payload + "\n")
        logger.info("Archived orchestration %s (%s) to %s", state.id, state.status.value, path)
        return path

    def read(self, orchestration_id: str) -> OrchestrationState:
        """Load an archived state.

        Raises:
            OrchestrationNotFoundError: If nothing was archived under ``orchestration_id``.
            ValueError: If the archived file is empty or does not hold a valid state.
        """
        path = self._path(orchestration_id)
        if not path.is_file():
            raise OrchestrationNotFoundError(orchestration_id)
        with _locked_file(path):
            text = path.read_text(encoding="utf-8")
        if not text.strip():
            raise ValueError(f"Archived orchestration at {path} is empty")
        try:
            return OrchestrationState.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ValueError(f"Archived orchestration at {path} is invalid: {exc}") from exc

    def exists(self, orchestration_id: str) -> bool:
        return self._path(orchestration_id).is_file()

    def list_ids(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(path.stem for path in self.directory.glob("*.json"))
