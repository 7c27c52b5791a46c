"""Checkpoint Manager: durable plan snapshots and safe restore."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from plan_runner.orchestrator.contracts import (
    CheckpointDocument,
    checkpoint_from_payload,
    checkpoint_to_payload,
    load_json,
    write_json,
)
from plan_runner.orchestrator.errors import CheckpointCorruptionError
from plan_runner.orchestrator.models import ExecutionState, Plan
from plan_runner.storage.common import utc_now

logger = logging.getLogger(__name__)

SnapshotProvider = Callable[[], tuple[Plan, ExecutionState, dict[str, Any]] | None]
SnapshotListener = Callable[[CheckpointDocument, str], None]


@dataclass(slots=True)
class RestoredPlan:
    """Plan rebuilt from its checkpoint, ready to re-enter scheduling."""

    plan: Plan
    state: ExecutionState
    context: dict[str, Any]
    checkpoint_id: str
    checkpointed_at: datetime
    reclassified: list[str]


class CheckpointStore:
    """One JSON document per plan under a root directory."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def path_for(self, plan_id: str) -> Path:
        if not plan_id or "/" in plan_id or "\\" in plan_id or plan_id.startswith("."):
            raise ValueError(f"Invalid plan id for checkpoint path: {plan_id!r}")
        return self.root_dir / f"{plan_id}.json"

    def write(self, document: CheckpointDocument) -> Path:
        path = self.path_for(document.plan_id)
        write_json(path, checkpoint_to_payload(document))
        return path

    def read(self, plan_id: str) -> CheckpointDocument | None:
        path = self.path_for(plan_id)
        if not path.exists():
            return None
        try:
            document = checkpoint_from_payload(load_json(path))
        except (OSError, TypeError, ValueError, KeyError) as error:
            raise CheckpointCorruptionError(plan_id, str(error)) from error
        if document.plan_id != plan_id:
            raise CheckpointCorruptionError(
                plan_id,
                f"file belongs to plan {document.plan_id!r}",
            )
        return document

    def delete(self, plan_id: str) -> bool:
        path = self.path_for(plan_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def plan_ids(self) -> list[str]:
        if not self.root_dir.exists():
            return []
        return sorted(path.stem for path in self.root_dir.glob("*.json"))


class CheckpointManager:
    """Snapshots execution state and restores it with running work reset."""

    def __init__(
        self,
        store: CheckpointStore,
        *,
        interval_seconds: float = 30.0,
        on_snapshot: SnapshotListener | None = None,
    ) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self.on_snapshot = on_snapshot
        self._identity: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def snapshot(
        self,
        plan: Plan,
        state: ExecutionState,
        context: dict[str, Any],
        *,
        trigger: str = "manual",
    ) -> CheckpointDocument:
        """Persist {plan, state, context}; the checkpoint id survives updates."""

        with self._lock:
            document = self._write(plan, state, context)
        self._announce(document, trigger)
        return document

    def capture(
        self,
        provider: SnapshotProvider,
        *,
        trigger: str = "manual",
    ) -> CheckpointDocument | None:
        """Read state from ``provider`` and persist it under the manager lock.

        Reads are serialized with writes, so a later checkpoint never carries older
        state than an earlier one. Returns None when the provider declines.
        """

        with self._lock:
            snapshot = provider()
            if snapshot is None:
                return None
            document = self._write(*snapshot)
        self._announce(document, trigger)
        return document

    def restore(self, plan_id: str) -> RestoredPlan | None:
        """Rebuild plan state; subtasks running at snapshot time become pending again.

        Raises ``CheckpointCorruptionError`` when the document cannot be trusted.
        """

        document = self.store.read(plan_id)
        if document is None:
            return None
        try:
            state = ExecutionState.from_sets(
                subtask_ids=document.plan.subtask_ids,
                completed=document.completed,
                failed=document.failed,
                running=document.running,
                scheduling_passes=document.scheduling_passes,
            )
        except ValueError as error:
            raise CheckpointCorruptionError(plan_id, str(error)) from error

        reclassified = state.reclassify_running()
        if reclassified:
            logger.info(
                "Plan %s restore: relaunching previously running subtasks %s",
                plan_id,
                ", ".join(reclassified),
            )
        with self._lock:
            self._identity[plan_id] = (document.checkpoint_id, document.created_at)
        return RestoredPlan(
            plan=document.plan,
            state=state,
            context=document.context,
            checkpoint_id=document.checkpoint_id,
            checkpointed_at=document.updated_at,
            reclassified=reclassified,
        )

    def delete(self, plan_id: str) -> bool:
        with self._lock:
            self._identity.pop(plan_id, None)
            return self.store.delete(plan_id)

    def exists(self, plan_id: str) -> bool:
        return self.store.path_for(plan_id).exists()

    def list_plan_ids(self) -> list[str]:
        return self.store.plan_ids()

    def reclaim_orphans(self, known_plan_ids: Iterable[str]) -> list[str]:
        """Delete checkpoints whose plan no longer exists."""

        known = set(known_plan_ids)
        reclaimed: list[str] = []
        for plan_id in self.store.plan_ids():
            if plan_id in known:
                continue
            if self.delete(plan_id):
                reclaimed.append(plan_id)
        if reclaimed:
            logger.info("Reclaimed %d orphaned checkpoint(s)", len(reclaimed))
        return reclaimed

    def autosave(
        self,
        plan_id: str,
        provider: SnapshotProvider,
        *,
        interval_seconds: float | None = None,
    ) -> AutosaveHandle:
        handle = AutosaveHandle(
            manager=self,
            plan_id=plan_id,
            provider=provider,
            interval_seconds=interval_seconds or self.interval_seconds,
        )
        handle.start()
        return handle

    def _write(
        self,
        plan: Plan,
        state: ExecutionState,
        context: dict[str, Any],
    ) -> CheckpointDocument:
        checkpoint_id, created_at = self._identity_for(plan.plan_id)
        completed, failed, running = state.as_sets()
        document = CheckpointDocument(
            checkpoint_id=checkpoint_id,
            plan=plan,
            completed=completed,
            failed=failed,
            running=running,
            context=_json_safe(context),
            created_at=created_at,
            updated_at=utc_now(),
            scheduling_passes=state.scheduling_passes,
        )
        self.store.write(document)
        self._identity[plan.plan_id] = (checkpoint_id, created_at)
        return document

    def _announce(self, document: CheckpointDocument, trigger: str) -> None:
        logger.debug(
            "Checkpoint %s for plan %s (%s): completed=%d failed=%d running=%d",
            document.checkpoint_id,
            document.plan_id,
            trigger,
            len(document.completed),
            len(document.failed),
            len(document.running),
        )
        if self.on_snapshot is not None:
            self.on_snapshot(document, trigger)

    def _identity_for(self, plan_id: str) -> tuple[str, datetime]:
        cached = self._identity.get(plan_id)
        if cached is not None:
            return cached
        try:
            existing = self.store.read(plan_id)
        except CheckpointCorruptionError:
            logger.warning("Overwriting unreadable checkpoint for plan %s", plan_id)
            existing = None
        if existing is not None:
            return existing.checkpoint_id, existing.created_at
        return uuid.uuid4().hex, utc_now()


class AutosaveHandle:
    """Timer thread taking interval snapshots while a plan runs."""

    def __init__(
        self,
        *,
        manager: CheckpointManager,
        plan_id: str,
        provider: SnapshotProvider,
        interval_seconds: float,
    ) -> None:
        self.plan_id = plan_id
        self.interval_seconds = interval_seconds
        self._manager = manager
        self._provider = provider
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"checkpoint-{plan_id}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self._manager.capture(self._provider, trigger="interval")
            except OSError:
                logger.exception("Interval checkpoint failed for plan %s", self.plan_id)


def _json_safe(context: dict[str, Any]) -> dict[str, Any]:
    """Round-trip through JSON so later mutation by callers cannot alter the snapshot."""

    return json.loads(json.dumps(context, default=str))
