"""Durable progress record for interrupted synchronizations."""

from __future__ import annotations

import logging
import threading
import tomllib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from tomli_w import dumps as toml_dumps

from .errors import StoreCorruption
from .filesystem import atomic_write_bytes
from .models import Operation, OperationKind, Snapshot, SyncPlan, operations_digest

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class ResumeLog:
    """Tracks which operations of a sync plan have been applied.

    The log keeps the plan it was started for. A later run re-lists the
    remote and plans again from whatever the interrupted run left behind,
    so the log mainly records whether the head it targets is unchanged.
    Each mark is persisted atomically before the next operation is
    reported done.
    """

    def __init__(
        self,
        path: Path,
        *,
        remote: str,
        plan_id: str,
        target_digest: str,
        target_revision: int,
        operations: Iterable[Operation],
        completed: Iterable[int] = (),
        started_at: datetime | None = None,
    ) -> None:
        self.path = path
        self.remote = remote
        self.plan_id = plan_id
        self.target_digest = target_digest
        self.target_revision = target_revision
        self.operations = tuple(operations)
        self.completed: set[int] = set(completed)
        self.started_at = started_at or datetime.now(timezone.utc)
        self._lock = threading.Lock()

    @classmethod
    def start(cls, path: Path, remote: str, plan: SyncPlan) -> "ResumeLog":
        log = cls(
            path,
            remote=remote,
            plan_id=plan.plan_id,
            target_digest=plan.target.content_digest,
            target_revision=plan.target.revision_id,
            operations=plan.operations,
        )
        log.save()
        return log

    @classmethod
    def load(cls, path: Path) -> "ResumeLog | None":
        if not path.exists():
            return None

        try:
            with path.open("rb") as handle:
                data = tomllib.load(handle)
            if data["format"] != FORMAT_VERSION:
                raise StoreCorruption(f"{path}: unsupported resume log format {data['format']!r}")
            operations = tuple(
                Operation(
                    kind=OperationKind(item["kind"]),
                    path=item["path"],
                    source=item.get("source"),
                    fingerprint=item.get("fingerprint"),
                )
                for item in data.get("operations", [])
            )
            log = cls(
                path,
                remote=data["remote"],
                plan_id=data["plan_id"],
                target_digest=data["target_digest"],
                target_revision=data["target_revision"],
                operations=operations,
                completed=data.get("completed", []),
                started_at=data["started_at"],
            )
        except StoreCorruption:
            raise
        except (OSError, tomllib.TOMLDecodeError, KeyError, TypeError, ValueError) as exc:
            raise StoreCorruption(f"{path}: malformed resume log ({exc})") from exc

        if operations_digest(log.operations) != log.plan_id:
            raise StoreCorruption(f"{path}: stored operations do not match plan id")
        if any(index < 0 or index >= len(log.operations) for index in log.completed):
            raise StoreCorruption(f"{path}: completed index out of range")
        return log

    def save(self) -> None:
        with self._lock:
            self._save_locked()

    def mark_completed(self, *indices: int) -> None:
        with self._lock:
            self.completed.update(indices)
            self._save_locked()
        logger.debug(f"Resume log {self.path.name}: {len(self.completed)}/{len(self.operations)} complete")

    def is_completed(self, index: int) -> bool:
        return index in self.completed

    def matches(self, target: Snapshot) -> bool:
        return self.target_digest == target.content_digest

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
        logger.debug(f"Cleared resume log {self.path}")

    def _save_locked(self) -> None:
        payload: dict[str, Any] = {
            "format": FORMAT_VERSION,
            "remote": self.remote,
            "plan_id": self.plan_id,
            "target_digest": self.target_digest,
            "target_revision": self.target_revision,
            "started_at": self.started_at,
            "completed": sorted(self.completed),
            "operations": [self._operation_to_dict(op) for op in self.operations],
        }
        atomic_write_bytes(self.path, toml_dumps(payload).encode("utf-8"))

    @staticmethod
    def _operation_to_dict(op: Operation) -> dict[str, object]:
        payload: dict[str, object] = {"kind": op.kind.value, "path": op.path}
        if op.source is not None:
            payload["source"] = op.source
        if op.fingerprint is not None:
            payload["fingerprint"] = op.fingerprint
        return payload
