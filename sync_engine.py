"""
Sync engine: replays the pending queue against the remote store.

One drain pass at a time, strictly in enqueue order. Each failure is
classified as terminal (evict and move on), retryable (count the attempt and
stop the pass so nothing overtakes it) or abort (auth lost or network gone:
stop without touching the operation).
"""
import json
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from kv_storage import iso_now
from pos_errors import OFFLINE, RemoteError, StorageError, ValidationError
from sync_queue import OperationKind, PendingOperation, validate_payload

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
MAX_CONSECUTIVE_FAILURES = 3
EVICTED_KEY = 'stockpro_sync_evicted'
EVICTED_LIMIT = 50

TERMINAL = 'terminal'
ABORT = 'abort'
RETRY = 'retry'


class DrainResult:
    def __init__(self):
        self.succeeded: List[str] = []
        self.evicted: List[str] = []
        self.retried: List[str] = []
        self.stopped_reason = 'empty'
        self.refreshed = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'succeeded': list(self.succeeded),
            'evicted': list(self.evicted),
            'retried': list(self.retried),
            'stopped_reason': self.stopped_reason,
            'refreshed': self.refreshed,
        }


class SyncEngine:
    def __init__(self, queue, remote, store, connectivity, owner_id: Optional[str] = None, storage=None):
        self.queue = queue
        self.remote = remote
        self.store = store
        self.connectivity = connectivity
        self.owner_id = owner_id if owner_id is not None else getattr(store, 'owner_id', None)
        self.storage = storage if storage is not None else queue.storage
        self._drain_lock = threading.Lock()
        self.state = 'idle'
        self.last_sync_at: Optional[str] = None
        self.last_error: Optional[str] = None
        self.auth_required = False
        self.last_result: Optional[DrainResult] = None
        self._evicted: List[Dict[str, Any]] = self._load_evicted()

    # ---------- classification ----------
    def classify(self, exc: Exception) -> str:
        if isinstance(exc, ValidationError):
            return TERMINAL
        if isinstance(exc, RemoteError):
            if exc.terminal:
                return TERMINAL
            if exc.auth or exc.category == OFFLINE:
                return ABORT
            if not self.connectivity.is_online():
                return ABORT
            return RETRY
        return RETRY

    # ---------- drain ----------
    def drain(self) -> Optional[DrainResult]:
        """Run one drain pass; returns None if a pass is already running."""
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("drain requested while already draining; ignored")
            return None
        try:
            self.state = 'syncing'
            result = self._drain_pass()
            self.last_result = result
            return result
        finally:
            self.state = 'idle'
            self._drain_lock.release()

    def _drain_pass(self) -> DrainResult:
        result = DrainResult()
        if self.queue.length() == 0:
            return result
        if not self.owner_id:
            self.auth_required = True
            self.last_error = 'no authenticated owner; sign in to sync'
            result.stopped_reason = 'auth'
            logger.warning("sync skipped: %s", self.last_error)
            return result
        if not self.connectivity.is_online():
            result.stopped_reason = 'offline'
            return result

        logger.info("sync pass starting (pending=%d)", self.queue.length())
        consecutive_failures = 0
        while True:
            op = self.queue.peek_front()
            if op is None:
                result.stopped_reason = 'empty'
                break
            failure: Optional[Exception] = None
            try:
                reconcile = self._replay(op)
            except Exception as exc:
                failure = exc
            if failure is None:
                self.queue.remove(op.id)
                result.succeeded.append(op.id)
                consecutive_failures = 0
                self.auth_required = False
                self._reconcile(reconcile)
                continue

            outcome = self.classify(failure)
            self.last_error = f"{op.kind.value} {op.id}: {failure}"
            if outcome == ABORT:
                auth = isinstance(failure, RemoteError) and failure.auth
                result.stopped_reason = 'auth' if auth else 'offline'
                if auth:
                    self.auth_required = True
                logger.warning("sync pass aborted (%s) at %s: %s", result.stopped_reason, op.id, failure)
                break

            consecutive_failures += 1
            stop = False
            if outcome == TERMINAL:
                self._evict(op, failure, 'terminal')
                result.evicted.append(op.id)
            else:
                attempts = self.queue.increment_attempts(op.id, str(failure))
                if attempts >= MAX_ATTEMPTS:
                    self._evict(op, failure, 'max_attempts')
                    result.evicted.append(op.id)
                else:
                    result.retried.append(op.id)
                    logger.warning("sync of %s failed (attempt %d/%d), retrying later: %s",
                                   op.id, attempts, MAX_ATTEMPTS, failure)
                    stop = True
            if consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                result.stopped_reason = 'failure_ceiling'
                logger.warning("sync pass stopped after %d consecutive failures", consecutive_failures)
                break
            if stop:
                result.stopped_reason = 'retry_later'
                break

        if result.stopped_reason == 'empty':
            self.last_sync_at = iso_now()
            if result.succeeded:
                try:
                    result.refreshed = bool(self.store.refresh_from_remote())
                except RemoteError as exc:
                    logger.warning("post-sync refresh failed: %s", exc)
                except Exception:
                    logger.exception("post-sync refresh crashed")
        logger.info("sync pass done: ok=%d evicted=%d retried=%d stop=%s pending=%d",
                    len(result.succeeded), len(result.evicted), len(result.retried),
                    result.stopped_reason, self.queue.length())
        return result

    def _replay(self, op: PendingOperation) -> Optional[Tuple[str, str, Any]]:
        """Send one operation; returns (collection, local_id, remote) to reconcile."""
        validate_payload(op.kind, op.payload)
        p = op.payload
        if op.kind == OperationKind.CREATE_ENTITY:
            entity = self.remote.insert_entity(p['collection'], p['fields'], self.owner_id)
            return p['collection'], p['local_id'], entity
        if op.kind == OperationKind.UPDATE_ENTITY:
            self.remote.update_entity(p['collection'], p['id'], p['fields'])
            return None
        if op.kind == OperationKind.DELETE_ENTITY:
            self.remote.delete_entity(p['collection'], p['id'])
            return None
        if op.kind == OperationKind.RECORD_TRANSACTION:
            # create_sale also writes the stock movements; none are replayed separately
            created = self.remote.record_transaction_atomic(p, self.owner_id)
            return 'sales', p['local_id'], created.get('id')
        if op.kind == OperationKind.UPDATE_SETTINGS:
            self.remote.upsert_settings(self.owner_id, p['fields'])
            return None
        raise ValidationError(f"unsupported operation kind {op.kind!r}")

    def _reconcile(self, reconcile: Optional[Tuple[str, str, Any]]) -> None:
        if not reconcile:
            return
        collection, local_id, remote = reconcile
        remote_id = remote.get('id') if isinstance(remote, dict) else remote
        if remote_id is None:
            return
        try:
            self.store.reconcile_identifier(collection, local_id, remote)
            touched = self.queue.rewrite_reference(local_id, remote_id)
            if touched:
                logger.debug("relinked %d queued operations from %s to %s", touched, local_id, remote_id)
        except Exception:
            logger.exception("reconciling %s %s failed", collection, local_id)

    # ---------- dead letters ----------
    def _load_evicted(self) -> List[Dict[str, Any]]:
        try:
            raw = self.storage.get(EVICTED_KEY)
            data = json.loads(raw.decode('utf-8')) if raw else []
        except (StorageError, ValueError) as exc:
            logger.warning("evicted operations log unreadable: %s", exc)
            return []
        return data if isinstance(data, list) else []

    def _save_evicted(self) -> None:
        try:
            self.storage.set(EVICTED_KEY, json.dumps(self._evicted, separators=(",", ":")).encode('utf-8'))
        except StorageError as exc:
            logger.warning("evicted operations log write failed: %s", exc)

    def _evict(self, op: PendingOperation, exc: Exception, reason: str) -> None:
        self.queue.remove(op.id)
        record = op.to_dict()
        record.update({'error': str(exc), 'reason': reason, 'evicted_at': iso_now()})
        self._evicted.append(record)
        self._evicted = self._evicted[-EVICTED_LIMIT:]
        self._save_evicted()
        logger.error("evicted %s operation %s (%s): %s", op.kind.value, op.id, reason, exc)

    def evicted(self) -> List[Dict[str, Any]]:
        return list(self._evicted)

    def clear_evicted(self) -> None:
        self._evicted = []
        try:
            self.storage.remove(EVICTED_KEY)
        except StorageError as exc:
            logger.warning("evicted operations log clear failed: %s", exc)

    # ---------- status ----------
    def status(self) -> Dict[str, Any]:
        return {
            'state': self.state,
            'last_sync_at': self.last_sync_at,
            'pending_count': self.queue.length(),
            'auth_required': self.auth_required,
            'last_error': self.last_error,
            'queue_degraded': self.queue.degraded,
            'evicted_count': len(self._evicted),
        }
