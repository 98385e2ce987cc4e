import asyncio
import copy
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import settings
from services.store import (
    Callback,
    ConcurrentWriteError,
    StateStore,
    Subscription,
    split_path,
)

logger = logging.getLogger(__name__)


def _dig(data: Any, fields: List[str]) -> Any:
    node = data
    for field in fields:
        if not isinstance(node, dict) or field not in node:
            return None
        node = node[field]
    # A map whose last field was deleted lingers as {}; treat it as absent
    if node == {}:
        return None
    return node


def _nest(fields: List[str], value: Any) -> Dict[str, Any]:
    nested: Any = value
    for field in reversed(fields):
        nested = {field: nested}
    return nested


class FirestoreStore(StateStore):
    """
    StateStore on Google Cloud Firestore.

    A key path maps to collection/document for its first two segments and
    to a dotted field path inside that document for the rest, so
    presence/{sid}/{pid} is field `pid` of document presence/{sid}.

    Async-friendly wrapper using run_in_executor to avoid blocking the
    event loop. Switch to AsyncClient once stable.
    """

    def __init__(self, max_attempts: int = 5):
        super().__init__(max_attempts)
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        # Lazy import so the module can be imported before GCP creds exist
        from google.cloud import firestore
        self._firestore = firestore
        self.db = firestore.Client(project=settings.google_cloud_project or None)

    def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    def _locate(self, path: str) -> Tuple[Any, List[str]]:
        parts = split_path(path)
        if len(parts) < 2:
            raise ValueError(f"Path '{path}' does not name a document")
        ref = self.db.collection(parts[0]).document(parts[1])
        return ref, parts[2:]

    def _stage(self, writer, ref, fields: List[str], value: Any) -> None:
        """Queue one path write on a batch or transaction."""
        if not fields:
            if value is None:
                writer.delete(ref)
            else:
                writer.set(ref, value)
            return
        if value is None:
            writer.set(ref, _nest(fields, self._firestore.DELETE_FIELD), merge=True)
        else:
            from google.cloud.firestore_v1.field_path import FieldPath
            writer.set(ref, _nest(fields, value), merge=[FieldPath(*fields)])

    # ── StateStore ────────────────────────────────────────────────────────────

    async def get(self, path: str) -> Any:
        ref, fields = self._locate(path)
        doc = await self._run(lambda: ref.get())
        if not doc.exists:
            return None
        return _dig(doc.to_dict(), fields)

    async def update(self, values: Dict[str, Any]) -> None:
        if not values:
            return
        batch = self.db.batch()
        for path, value in values.items():
            ref, fields = self._locate(path)
            self._stage(batch, ref, fields, value)
        await self._run(lambda: batch.commit())

    async def transaction(
        self,
        path: str,
        fn: Callable[[Any], Any],
        max_attempts: Optional[int] = None,
    ) -> Any:
        from google.api_core import exceptions as gexc

        attempts = max_attempts or self.max_attempts
        ref, fields = self._locate(path)
        firestore = self._firestore

        @firestore.transactional
        def _read_modify_write(txn):
            doc = ref.get(transaction=txn)
            current = _dig(doc.to_dict(), fields) if doc.exists else None
            new_value = fn(copy.deepcopy(current))
            self._stage(txn, ref, fields, new_value)
            return new_value

        def _call():
            return _read_modify_write(self.db.transaction(max_attempts=attempts))

        try:
            return await self._run(_call)
        except gexc.Aborted as exc:
            raise ConcurrentWriteError(path, attempts) from exc
        except ValueError as exc:
            if str(exc).startswith("Failed to commit transaction"):
                raise ConcurrentWriteError(path, attempts) from exc
            raise

    def subscribe(self, path: str, callback: Callback) -> Subscription:
        ref, fields = self._locate(path)
        watch_holder: Dict[str, Any] = {}

        def _unsubscribe() -> None:
            watch = watch_holder.get("watch")
            if watch is not None:
                watch.unsubscribe()

        sub = Subscription(path, callback, on_cancel=_unsubscribe)

        # Runs on the Firestore watch thread; hop back onto the event loop
        def _on_snapshot(docs, changes, read_time):
            doc = docs[0] if docs else None
            data = doc.to_dict() if doc is not None and doc.exists else None
            sub.push_threadsafe(_dig(data, fields) if data is not None else None)

        watch_holder["watch"] = ref.on_snapshot(_on_snapshot)
        return sub


_store: Optional[StateStore] = None


def get_store() -> StateStore:
    """Lazy singleton — initialised on first call, not at import time.
    This prevents credential errors from crashing the app before FastAPI boots.
    Use as a FastAPI dependency: Depends(get_store)
    """
    global _store
    if _store is None:
        if settings.store_backend == "firestore":
            _store = FirestoreStore(max_attempts=settings.transaction_max_attempts)
        else:
            from services.memory_store import InMemoryStore
            _store = InMemoryStore(max_attempts=settings.transaction_max_attempts)
        logger.info("State store backend: %s", type(_store).__name__)
    return _store
