"""Remote persistence, reconciliation and debounced autosave.

Local edits are applied first; the collaborator's answer is then reconciled
by ``updated_at``. Failures are logged and reported, never rolled back.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Union

from bi_core.errors import StoreError
from bi_core.models import new_id, parse_datetime, utcnow
from bi_core.settings import DEFAULT_LIMITS

logger = logging.getLogger(__name__)

ENTITY_KINDS = ("dashboard", "page", "widget", "folder", "global_filter")


class PersistenceCollaborator(Protocol):
    async def create(self, kind: str, entity: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def update(self, kind: str, entity_id: str, entity: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def delete(self, kind: str, entity_id: str) -> None: ...


@dataclass(frozen=True)
class Applied:
    entity: Dict[str, Any]
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Superseded:
    """The local copy changed after the remote write was stamped; the local copy stands."""

    local_updated_at: Optional[datetime]
    remote_updated_at: Optional[datetime]


@dataclass(frozen=True)
class Failed:
    error: str
    kind: str = ""
    entity_id: Optional[str] = None


ReconcileResult = Union[Applied, Superseded, Failed]


def reconcile(local: Optional[Mapping[str, Any]], remote: Optional[Mapping[str, Any]]) -> ReconcileResult:
    if remote is None:
        return Failed("empty response from persistence")
    remote_ts = parse_datetime(remote.get("updated_at"))
    local_ts = parse_datetime(local.get("updated_at")) if local else None
    if local_ts is not None and remote_ts is not None and local_ts > remote_ts:
        return Superseded(local_updated_at=local_ts, remote_updated_at=remote_ts)
    return Applied(entity=dict(remote), updated_at=remote_ts)


async def save(
    collaborator: PersistenceCollaborator,
    kind: str,
    entity: Mapping[str, Any],
    *,
    current: Optional[Callable[[], Optional[Mapping[str, Any]]]] = None,
    create: bool = False,
) -> ReconcileResult:
    """Write ``entity`` and reconcile the answer against ``current()`` (the local copy at response time)."""
    entity_id = entity.get("id")
    try:
        if create:
            remote = await collaborator.create(kind, entity)
        else:
            remote = await collaborator.update(kind, str(entity_id), entity)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.exception("%s %s save failed", kind, entity_id)
        return Failed(error=str(exc) or type(exc).__name__, kind=kind, entity_id=entity_id)
    local = current() if current is not None else entity
    outcome = reconcile(local, remote)
    if isinstance(outcome, Superseded):
        logger.warning("%s %s: remote response superseded by a newer local edit", kind, entity_id)
    return outcome


async def remove(collaborator: PersistenceCollaborator, kind: str, entity_id: str) -> ReconcileResult:
    try:
        await collaborator.delete(kind, entity_id)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.exception("%s %s delete failed", kind, entity_id)
        return Failed(error=str(exc) or type(exc).__name__, kind=kind, entity_id=entity_id)
    return Applied(entity={"id": entity_id})


class InMemoryPersistence:
    """Collaborator that keeps entities in dicts; ``fail_with`` makes the next call raise."""

    def __init__(self, *, latency: float = 0.0) -> None:
        self.latency = latency
        self.entities: Dict[str, Dict[str, Dict[str, Any]]] = {k: {} for k in ENTITY_KINDS}
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None

    async def _tick(self, *call: Any) -> None:
        self.calls.append(call)
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.fail_with is not None:
            exc, self.fail_with = self.fail_with, None
            raise exc

    def _bucket(self, kind: str) -> Dict[str, Dict[str, Any]]:
        return self.entities.setdefault(kind, {})

    async def create(self, kind: str, entity: Mapping[str, Any]) -> Dict[str, Any]:
        await self._tick("create", kind, entity.get("id"))
        stored = copy.deepcopy(dict(entity))
        stored["id"] = stored.get("id") or new_id(kind)
        stored["updated_at"] = utcnow()
        self._bucket(kind)[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def update(self, kind: str, entity_id: str, entity: Mapping[str, Any]) -> Dict[str, Any]:
        await self._tick("update", kind, entity_id)
        stored = copy.deepcopy(dict(entity))
        stored["id"] = entity_id
        stored["updated_at"] = utcnow()
        self._bucket(kind)[entity_id] = stored
        return copy.deepcopy(stored)

    async def delete(self, kind: str, entity_id: str) -> None:
        await self._tick("delete", kind, entity_id)
        if self._bucket(kind).pop(entity_id, None) is None:
            raise StoreError(f"Unknown {kind}: {entity_id}")


class AutosaveScheduler:
    """Debounced task per key. Scheduling a key cancels whatever is pending or running for it."""

    def __init__(self, delay: float = DEFAULT_LIMITS.autosave_debounce_seconds) -> None:
        self.delay = max(0.0, float(delay))
        self._tasks: Dict[str, asyncio.Task] = {}
        self.outcomes: Dict[str, Any] = {}

    def pending(self, key: Optional[str] = None) -> bool:
        if key is None:
            return any(not t.done() for t in self._tasks.values())
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def schedule(self, key: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Must be called from a running event loop."""
        if self.cancel(key):
            logger.debug("autosave for %s rescheduled", key)
        task = asyncio.get_running_loop().create_task(self._run(key, factory))
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._done(k, t))
        return task

    async def _run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        await asyncio.sleep(self.delay)
        result = await factory()
        logger.info("autosave flushed for %s", key)
        return result

    def _done(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("autosave for %s failed", key, exc_info=exc)
            return
        self.outcomes[key] = task.result()

    async def flush(self) -> None:
        """Wait for every scheduled task, including ones scheduled while waiting."""
        while self._tasks:
            tasks = list(self._tasks.values())
            await asyncio.gather(*tasks, return_exceptions=True)
