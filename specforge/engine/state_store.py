"""
Durable, versioned persistence of workflow runs.

This module provides the StateStore class, which keeps one JSON document per
run in a configurable directory. The store guarantees:

- Atomic, all-or-nothing writes per run using a temporary file and rename
- A single writer path per run: every save for a run is serialized through
  that run's asyncio lock
- Schema versioning, so records written by an older release are migrated
  and records written by a newer release are refused instead of misread

State File Structure:
    ``{run_id}.json`` in the state directory, shaped like
    ``specforge.engine.types.StateRecord``::

        {
            "schema_version": 1,
            "run": {"id": "run-42", "status": "running", ...},
            "specification": {...},
            "tasks": [{"id": "models", "status": "succeeded", ...}, ...],
            "attempts": [{"task_id": "models", "attempt_number": 1, ...}, ...]
        }

    Acknowledged runs are moved to ``archive/{run_id}.json``.

Failure Semantics:
    Any I/O or decoding problem surfaces as StateStoreError, which the engine
    treats as fatal. Loading a run that was never saved is not an error:
    ``load`` returns None to signal a fresh run.

Example:
    >>> store = StateStore(".specforge/state")
    >>> await store.save(run, tasks, attempts, specification)
    >>> loaded = await store.load("run-42")
    >>> loaded.run.status
    <RunStatus.RUNNING: 'running'>
"""

import asyncio
import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from specforge.engine.types import StateRecord
from specforge.exceptions import StateStoreError
from specforge.models.domain import Task, TaskAttempt, WorkflowRun

log = structlog.get_logger(__name__)

SCHEMA_VERSION = 1

# Maps a schema version to a function upgrading a raw record to version + 1.
MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {}


@dataclass
class LoadedRun:
    """Everything the store knows about one run."""

    run: WorkflowRun
    tasks: list[Task]
    attempts: list[TaskAttempt]
    specification: dict[str, Any]


class StateStore:
    """Persist workflow runs as JSON documents with atomic writes.

    Attributes:
        state_dir: Directory where run records are stored.
        archive_dir: Directory receiving acknowledged runs.

    Thread Safety:
        Designed for single-threaded asyncio usage. Each run has its own lock,
        so concurrent lanes of the same run never interleave writes, while
        different runs can be saved concurrently.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the store, creating the state directory if needed.

        Args:
            state_dir: Path to the directory for run records. Created with
                any missing parents.

        Raises:
            StateStoreError: If the directory cannot be created.
        """
        self.state_dir = Path(state_dir)
        self.archive_dir = self.state_dir / "archive"
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot create state directory {self.state_dir}: {e}") from e
        # Per-run locks: the single writer path for each run
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, run_id: str) -> asyncio.Lock:
        if run_id not in self._locks:
            self._locks[run_id] = asyncio.Lock()
        return self._locks[run_id]

    def _get_state_path(self, run_id: str) -> Path:
        path = self.state_dir / f"{run_id}.json"
        if path.parent != self.state_dir or path.name != f"{run_id}.json":
            raise StateStoreError("Run id is not a valid state file name", run_id=run_id)
        return path

    async def save(
        self,
        run: WorkflowRun,
        tasks: Sequence[Task],
        attempts: Sequence[TaskAttempt],
        specification: dict[str, Any] | None = None,
    ) -> None:
        """Atomically persist the complete state of one run.

        The record is serialized synchronously before the first await, so the
        written snapshot is exactly the state at call time even while other
        lanes keep mutating tasks.

        Args:
            run: The run to persist. ``run.updated_at`` is refreshed.
            tasks: All tasks created so far, in creation order.
            attempts: Full attempt history, in creation order.
            specification: The run specification. When None, the
                specification already on disk is kept.

        Raises:
            StateStoreError: If the record cannot be written.
        """
        run.touch()
        record: dict[str, Any] = {
            "schema_version": SCHEMA_VERSION,
            "run": run.to_dict(),
            "specification": specification,
            "tasks": [task.to_dict() for task in tasks],
            "attempts": [attempt.to_dict() for attempt in attempts],
        }

        async with self._get_lock(run.id):
            path = self._get_state_path(run.id)
            if record["specification"] is None:
                if path.exists():
                    previous = await self._read_record(path, run.id)
                    record["specification"] = previous["specification"]
                else:
                    record["specification"] = {}
            await self._write_record(path, record, run.id)

        log.debug(
            "run_state_saved",
            run_id=run.id,
            status=run.status.value,
            tasks=len(record["tasks"]),
            attempts=len(record["attempts"]),
        )

    async def load(self, run_id: str) -> LoadedRun | None:
        """Load a run, or None if no record exists.

        Raises:
            StateStoreError: If the record exists but cannot be read, decoded
                or migrated.
        """
        path = self._get_state_path(run_id)
        async with self._get_lock(run_id):
            if not path.exists():
                log.debug("run_state_not_found", run_id=run_id)
                return None
            record = await self._read_record(path, run_id)

        try:
            return LoadedRun(
                run=WorkflowRun.from_dict(record["run"]),
                tasks=[Task.from_dict(task) for task in record["tasks"]],
                attempts=[TaskAttempt.from_dict(attempt) for attempt in record["attempts"]],
                specification=record.get("specification") or {},
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StateStoreError(f"Malformed run record: {e}", run_id=run_id) from e

    async def list_runs(self) -> list[str]:
        """Ids of all stored (non-archived) runs, sorted."""
        return sorted(path.stem for path in self.state_dir.glob("*.json"))

    async def archive(self, run_id: str) -> Path:
        """Move a run record into the archive directory.

        Returns:
            Path of the archived record.

        Raises:
            StateStoreError: If the record is missing or cannot be moved.
        """
        async with self._get_lock(run_id):
            path = self._get_state_path(run_id)
            if not path.exists():
                raise StateStoreError("Cannot archive missing run record", run_id=run_id)
            target = self.archive_dir / path.name
            try:
                self.archive_dir.mkdir(parents=True, exist_ok=True)
                path.replace(target)
            except OSError as e:
                raise StateStoreError(f"Cannot archive run record: {e}", run_id=run_id) from e

        self._locks.pop(run_id, None)
        log.info("run_archived", run_id=run_id, path=str(target))
        return target

    async def _read_record(self, path: Path, run_id: str) -> StateRecord:
        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
            raw = json.loads(content)
        except OSError as e:
            raise StateStoreError(f"Cannot read run record {path}: {e}", run_id=run_id) from e
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Corrupt run record {path}: {e}", run_id=run_id) from e

        if not isinstance(raw, dict):
            raise StateStoreError(f"Corrupt run record {path}: not a JSON object", run_id=run_id)
        return self._migrate(raw, run_id)

    def _migrate(self, raw: dict[str, Any], run_id: str) -> StateRecord:
        """Bring a raw record up to SCHEMA_VERSION.

        Raises:
            StateStoreError: If the record is newer than this release or a
                migration step is missing.
        """
        version = raw.get("schema_version", 1)
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            raise StateStoreError(
                f"Run record has schema version {version}, this release supports up to {SCHEMA_VERSION}",
                run_id=run_id,
            )

        while version < SCHEMA_VERSION:
            migrate = MIGRATIONS.get(version)
            if migrate is None:
                raise StateStoreError(f"No migration from schema version {version}", run_id=run_id)
            raw = migrate(raw)
            version += 1
            raw["schema_version"] = version
            log.info("run_record_migrated", run_id=run_id, schema_version=version)

        return raw  # type: ignore[return-value]

    async def _write_record(self, path: Path, record: dict[str, Any], run_id: str) -> None:
        """Write a record atomically using a temporary file in the same directory."""
        tmp_path = path.with_suffix(".tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(record, indent=2, default=_json_default))
            # Atomic rename - safe on POSIX when same filesystem
            tmp_path.replace(path)
        except (OSError, TypeError, ValueError) as e:
            log.error("run_state_save_failed", run_id=run_id, error=str(e))
            raise StateStoreError(f"Cannot write run record {path}: {e}", run_id=run_id) from e


def _json_default(value: Any) -> Any:
    """Serialize values json does not handle natively inside opaque payloads."""
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat()
    if isinstance(value, set | frozenset):
        return sorted(value)
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
