"""
Cache-synchronized query layer.

Reads are cached under ``(kind, param)`` keys where ``param`` is a filter
object, an entity id, or None. Writes are mutations that, once the store has
acknowledged them, invalidate every key of their kind and refetch the keys
that still have mounted observers before returning.

  QueryCache     - entries, shared in-flight fetches, invalidation
  QueryObserver  - one mounted consumer of a key (a view / component)
  QueryClient    - fetch / observe / mutate entry points, owns the Notifier
  ContactQueries - contact reads and mutations
  TaskQueries    - task reads and mutations

Nothing here raises to callers: reads return QueryResult, writes return
MutationResult, both carrying ErrorInfo on failure.

Concurrent mutations of the same entity are not serialized. Whichever
response lands last is what the cache shows.
"""
import asyncio
import inspect
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Hashable, List, Optional, Tuple

from .errors import CRMError, ValidationFailed
from .gateway import ContactGateway, TaskGateway
from .schema import ContactFilters, Task, TaskFilters, TaskStatus
from .validation import FormValidator, contact_validator, task_validator

logger = logging.getLogger(__name__)

Key = Tuple[str, Hashable]

CONTACTS = "contacts"
TASKS = "tasks"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Results and notifications
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass(frozen=True)
class ErrorInfo:
    """Structured error handed to the UI layer."""
    kind: str
    message: str
    field_errors: Optional[Dict[str, str]] = None

    @classmethod
    def from_exception(cls, exc: Exception) -> "ErrorInfo":
        if isinstance(exc, ValidationFailed):
            return cls(exc.kind, exc.message, dict(exc.field_errors))
        if isinstance(exc, CRMError):
            return cls(exc.kind, exc.message)
        return cls("RemoteOperationFailed", str(exc) or exc.__class__.__name__)

    def to_dict(self) -> Dict[str, Any]:
        data = {"kind": self.kind, "message": self.message}
        if self.field_errors:
            data["field_errors"] = self.field_errors
        return data


@dataclass
class QueryResult:
    status: str  # "idle" | "success" | "error"
    data: Any = None
    error: Optional[ErrorInfo] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass
class MutationResult:
    data: Any = None
    error: Optional[ErrorInfo] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Notification:
    level: str  # "success" | "error"
    message: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, str]:
        return {"level": self.level, "message": self.message, "timestamp": self.timestamp}


class Notifier:
    """User-facing success/error messages, queued for the UI to drain."""

    def __init__(self, maxlen: int = 100):
        self._queue: Deque[Notification] = deque(maxlen=maxlen)

    def success(self, message: str) -> None:
        logger.info(message)
        self._queue.append(Notification("success", message))

    def error(self, message: str) -> None:
        logger.warning(message)
        self._queue.append(Notification("error", message))

    def pending(self) -> List[Notification]:
        return list(self._queue)

    def drain(self) -> List[Notification]:
        items = list(self._queue)
        self._queue.clear()
        return items


async def run_blocking(fn: Callable[[], Any]) -> Any:
    """Await coroutine functions directly; run plain callables off the loop."""
    if inspect.iscoroutinefunction(fn):
        return await fn()
    return await asyncio.to_thread(fn)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Cache
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class CacheEntry:
    key: Key
    generation: int
    status: str = "idle"
    data: Any = None
    error: Optional[ErrorInfo] = None
    stale: bool = True
    data_generation: int = -1
    observers: int = 0
    fetcher: Optional[Callable[[], Any]] = None
    inflight: Optional[asyncio.Task] = None
    inflight_generation: int = -1
    updated_at: Optional[datetime] = None


class QueryCache:
    """
    Keyed store of query results.

    Each entry carries a generation number. Invalidation moves the entry to a
    new generation, so a fetch that started before the invalidation can never
    mark the entry fresh when it lands.

    In-flight fetches are only shared within one event loop. A caller on
    another loop starts its own fetch; the generation check still decides
    which result the entry keeps.
    """

    def __init__(self):
        self._entries: Dict[Key, CacheEntry] = {}
        self._clock = itertools.count()

    def __contains__(self, key: Key) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> List[Key]:
        return list(self._entries)

    def get(self, key: Key) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def _entry(self, key: Key) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, generation=next(self._clock))
            self._entries[key] = entry
        return entry

    async def fetch(self, key: Key, fetcher: Callable[[], Any], force: bool = False) -> QueryResult:
        """Serve a fresh entry, join the in-flight fetch, or start a new one."""
        entry = self._entry(key)
        entry.fetcher = fetcher

        if not force and entry.status == "success" and not entry.stale:
            return QueryResult("success", entry.data)

        inflight = entry.inflight
        if (
            inflight is not None
            and entry.inflight_generation == entry.generation
            and inflight.get_loop() is asyncio.get_running_loop()
        ):
            return await asyncio.shield(inflight)

        generation = entry.generation
        task = asyncio.ensure_future(self._run(entry, fetcher, generation))
        entry.inflight = task
        entry.inflight_generation = generation
        return await asyncio.shield(task)

    async def _run(self, entry: CacheEntry, fetcher: Callable[[], Any], generation: int) -> QueryResult:
        try:
            result = QueryResult("success", await run_blocking(fetcher))
        except CRMError as e:
            result = QueryResult("error", error=ErrorInfo.from_exception(e))
        except Exception as e:
            logger.exception(f"Unexpected error fetching {entry.key[0]}")
            result = QueryResult("error", error=ErrorInfo.from_exception(e))

        if entry.inflight is asyncio.current_task():
            entry.inflight = None

        if self._entries.get(entry.key) is not entry:
            # Evicted or cleared while in flight: hand back, do not retain
            return result

        if generation >= entry.data_generation:
            entry.status = result.status
            entry.data = result.data if result.ok else entry.data
            entry.error = result.error
            entry.data_generation = generation
            entry.updated_at = datetime.now(timezone.utc)
            # Errors are never served from cache; data fetched before an
            # invalidation stays stale
            entry.stale = not result.ok or generation != entry.generation
        return result

    def invalidate(self, kind: str, entity_id: Optional[Hashable] = None) -> List[Key]:
        """
        Mark every entry of ``kind`` stale (and the ``(kind, entity_id)`` entry
        when given). Returns the keys that have mounted observers and need a
        refetch.
        """
        to_refetch = []
        targets = {k for k in self._entries if k[0] == kind}
        if entity_id is not None and (kind, entity_id) in self._entries:
            targets.add((kind, entity_id))
        for key in targets:
            entry = self._entries[key]
            entry.stale = True
            entry.generation = next(self._clock)
            if entry.observers > 0 and entry.fetcher is not None:
                to_refetch.append(key)
        logger.debug(f"Invalidated {len(targets)} {kind} entries ({len(to_refetch)} observed)")
        return to_refetch

    async def refetch(self, keys: List[Key]) -> None:
        fetches = []
        for key in keys:
            entry = self._entries.get(key)
            if entry is not None and entry.fetcher is not None:
                fetches.append(self.fetch(key, entry.fetcher))
        if fetches:
            await asyncio.gather(*fetches)

    def mount(self, key: Key) -> None:
        self._entry(key).observers += 1

    def unmount(self, key: Key) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.observers = max(0, entry.observers - 1)
        if entry.observers == 0:
            del self._entries[key]

    def clear(self) -> None:
        """Drop everything (logout)."""
        self._entries.clear()


class QueryObserver:
    """A mounted consumer of one key. Unmounting discards unresolved reads."""

    def __init__(self, cache: QueryCache, key: Key, fetcher: Callable[[], Any]):
        self.cache = cache
        self.key = key
        self.fetcher = fetcher
        self.mounted = True
        cache.mount(key)
        cache.get(key).fetcher = fetcher

    async def result(self) -> Optional[QueryResult]:
        """Current result for the key, or None once unmounted."""
        if not self.mounted:
            return None
        result = await self.cache.fetch(self.key, self.fetcher)
        return result if self.mounted else None

    @property
    def current(self) -> Optional[QueryResult]:
        """Last landed result without fetching."""
        entry = self.cache.get(self.key)
        if not self.mounted or entry is None or entry.status == "idle":
            return None
        return QueryResult(entry.status, entry.data, entry.error)

    def unmount(self) -> None:
        if self.mounted:
            self.mounted = False
            self.cache.unmount(self.key)


class QueryClient:
    """Entry point for reads and writes over one injected QueryCache."""

    def __init__(self, cache: Optional[QueryCache] = None, notifier: Optional[Notifier] = None):
        self.cache = cache if cache is not None else QueryCache()
        self.notifier = notifier if notifier is not None else Notifier()

    async def fetch(self, key: Key, fetcher: Callable[[], Any]) -> QueryResult:
        return await self.cache.fetch(key, fetcher)

    def observe(self, key: Key, fetcher: Callable[[], Any]) -> QueryObserver:
        return QueryObserver(self.cache, key, fetcher)

    async def invalidate(self, kind: str, entity_id: Optional[Hashable] = None) -> None:
        """Mark stale, then wait for observed keys to refetch."""
        await self.cache.refetch(self.cache.invalidate(kind, entity_id))

    async def mutate(
        self,
        kind: str,
        action: Callable[[], Any],
        success_message: str,
        failure_message: str,
        entity_id: Optional[str] = None,
    ) -> MutationResult:
        """
        Run one write. On success invalidate ``kind`` (and ``entity_id``, or
        the id of the returned entity) after the store has answered; on
        failure leave the cache untouched.
        """
        try:
            data = await run_blocking(action)
        except CRMError as e:
            self.notifier.error(e.message or failure_message)
            return MutationResult(error=ErrorInfo.from_exception(e))
        except Exception as e:
            logger.exception(failure_message)
            self.notifier.error(failure_message)
            return MutationResult(error=ErrorInfo("RemoteOperationFailed", str(e) or failure_message))

        target = entity_id or getattr(data, "id", None)
        await self.invalidate(kind, target)
        self.notifier.success(success_message)
        return MutationResult(data=data)

    def logout(self) -> None:
        self.cache.clear()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Entity queries
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class EntityQueries:
    kind = ""
    noun = ""

    def __init__(self, client: QueryClient, gateway, validator: FormValidator):
        self.client = client
        self.gateway = gateway
        self.validator = validator

    def list_key(self, filters=None) -> Key:
        return (self.kind, filters)

    def item_key(self, entity_id: str) -> Key:
        return (self.kind, entity_id)

    async def list(self, filters=None) -> QueryResult:
        return await self.client.fetch(self.list_key(filters), lambda: self.gateway.list(filters))

    def watch_list(self, filters=None) -> QueryObserver:
        return self.client.observe(self.list_key(filters), lambda: self.gateway.list(filters))

    async def get(self, entity_id: str) -> QueryResult:
        if not entity_id:
            return QueryResult("idle")
        return await self.client.fetch(self.item_key(entity_id), lambda: self.gateway.get(entity_id))

    def watch(self, entity_id: str) -> QueryObserver:
        return self.client.observe(self.item_key(entity_id), lambda: self.gateway.get(entity_id))

    async def create(self, data) -> MutationResult:
        if hasattr(data, "to_dict"):
            data = data.to_dict()
        data = {k: v for k, v in dict(data).items() if v is not None}

        def action():
            values = self.validator.validate(data)
            return self.gateway.create(values)

        return await self.client.mutate(
            self.kind, action,
            success_message=f"{self.noun.capitalize()} created successfully!",
            failure_message=f"Failed to create {self.noun}",
        )

    async def update(self, entity_id: str, changes: Dict[str, Any]) -> MutationResult:
        def action():
            values = self.validator.validate(dict(changes), partial=True)
            return self.gateway.update(entity_id, values)

        return await self.client.mutate(
            self.kind, action,
            success_message=f"{self.noun.capitalize()} updated successfully!",
            failure_message=f"Failed to update {self.noun}",
            entity_id=entity_id,
        )

    async def delete(self, entity_id: str) -> MutationResult:
        return await self.client.mutate(
            self.kind, lambda: self.gateway.delete(entity_id),
            success_message=f"{self.noun.capitalize()} deleted successfully!",
            failure_message=f"Failed to delete {self.noun}",
            entity_id=entity_id,
        )


class ContactQueries(EntityQueries):
    kind = CONTACTS
    noun = "contact"

    def __init__(self, client: QueryClient, gateway: ContactGateway,
                 validator: FormValidator = contact_validator):
        super().__init__(client, gateway, validator)

    async def list(self, filters: Optional[ContactFilters] = None) -> QueryResult:
        return await super().list(filters)


class TaskQueries(EntityQueries):
    kind = TASKS
    noun = "task"

    def __init__(self, client: QueryClient, gateway: TaskGateway,
                 validator: FormValidator = task_validator):
        super().__init__(client, gateway, validator)

    async def list(self, filters: Optional[TaskFilters] = None) -> QueryResult:
        return await super().list(filters)

    async def toggle_complete(self, task: Task) -> MutationResult:
        """Checkbox on a task card: done goes back to todo, anything else to done."""
        status = TaskStatus.TODO if task.status == TaskStatus.DONE else TaskStatus.DONE
        return await self.update(task.id, {"status": status.value})
