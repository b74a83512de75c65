"""
Pending operation queue: durable FIFO log of mutations the remote store has
not confirmed yet.

The whole queue is stored as one JSON document under a single storage key.
If the durable store fails, the queue keeps working from memory for the rest
of the session (queued work may be lost on restart, the till keeps selling).
"""
import json
import logging
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from kv_storage import iso_now
from pos_errors import StorageError, ValidationError
from pos_models import ENTITY_COLLECTIONS, MOVEMENT_TYPES, PAYMENT_METHODS, is_number, new_id

logger = logging.getLogger(__name__)

QUEUE_KEY = 'stockpro_sync_queue'


class OperationKind(str, Enum):
    CREATE_ENTITY = 'create_entity'
    UPDATE_ENTITY = 'update_entity'
    DELETE_ENTITY = 'delete_entity'
    RECORD_TRANSACTION = 'record_transaction'
    UPDATE_SETTINGS = 'update_settings'


@dataclass
class PendingOperation:
    id: str
    kind: OperationKind
    payload: Dict[str, Any]
    enqueued_at: str
    attempts: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingOperation':
        return cls(
            id=str(data['id']),
            kind=OperationKind(data['kind']),
            payload=dict(data.get('payload') or {}),
            enqueued_at=data.get('enqueued_at') or iso_now(),
            attempts=int(data.get('attempts') or 0),
            last_error=data.get('last_error'),
        )


# ---------- payload validation ----------
def _require(payload: Dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value in (None, ''):
        raise ValidationError(f"missing required field '{key}'")
    return value


def _require_number(payload: Dict[str, Any], key: str) -> float:
    value = payload.get(key)
    if not is_number(value):
        raise ValidationError(f"field '{key}' must be a number")
    return value


def _require_collection(payload: Dict[str, Any]) -> str:
    collection = _require(payload, 'collection')
    if collection not in ENTITY_COLLECTIONS:
        raise ValidationError(f"unknown collection '{collection}'")
    return collection


def _require_dict(payload: Dict[str, Any], key: str, non_empty: bool = False) -> Dict[str, Any]:
    value = payload.get(key)
    if not isinstance(value, dict) or (non_empty and not value):
        raise ValidationError(f"field '{key}' must be a {'non-empty ' if non_empty else ''}object")
    return value


def _validate_create(payload: Dict[str, Any]) -> None:
    collection = _require_collection(payload)
    _require(payload, 'local_id')
    fields = _require_dict(payload, 'fields')
    if collection == 'products':
        _require(fields, 'name')
        _require_number(fields, 'price')
    else:
        _require(fields, 'product_id')
        if fields.get('type') not in MOVEMENT_TYPES:
            raise ValidationError(f"invalid movement type {fields.get('type')!r}")
        if _require_number(fields, 'quantity') < 0:
            raise ValidationError("movement quantity must not be negative")


def _validate_update(payload: Dict[str, Any]) -> None:
    _require_collection(payload)
    _require(payload, 'id')
    _require_dict(payload, 'fields', non_empty=True)


def _validate_delete(payload: Dict[str, Any]) -> None:
    _require_collection(payload)
    _require(payload, 'id')


def _validate_transaction(payload: Dict[str, Any]) -> None:
    _require(payload, 'local_id')
    lines = payload.get('lines')
    if not isinstance(lines, list) or not lines:
        raise ValidationError("transaction needs at least one line")
    for line in lines:
        if not isinstance(line, dict):
            raise ValidationError("transaction line must be an object")
        _require(line, 'product_id')
        _require(line, 'name')
        _require_number(line, 'price')
        _require_number(line, 'quantity')
    for key in ('total_brut', 'vat_rate', 'vat_total', 'discount', 'total_final', 'amount_given', 'change'):
        _require_number(payload, key)
    if payload.get('payment_method') not in PAYMENT_METHODS:
        raise ValidationError(f"invalid payment method {payload.get('payment_method')!r}")


def _validate_settings(payload: Dict[str, Any]) -> None:
    fields = _require_dict(payload, 'fields')
    if not isinstance(fields.get('store_name'), str):
        raise ValidationError("field 'store_name' must be a string")
    _require_number(fields, 'vat_rate')


_VALIDATORS: Dict[OperationKind, Callable[[Dict[str, Any]], None]] = {
    OperationKind.CREATE_ENTITY: _validate_create,
    OperationKind.UPDATE_ENTITY: _validate_update,
    OperationKind.DELETE_ENTITY: _validate_delete,
    OperationKind.RECORD_TRANSACTION: _validate_transaction,
    OperationKind.UPDATE_SETTINGS: _validate_settings,
}


def validate_payload(kind: OperationKind, payload: Any) -> None:
    """Raise ValidationError unless payload has the shape `kind` needs."""
    if not isinstance(payload, dict):
        raise ValidationError("operation payload must be an object")
    try:
        kind = OperationKind(kind)
    except ValueError as exc:
        raise ValidationError(f"unknown operation kind {kind!r}") from exc
    _VALIDATORS[kind](payload)
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"payload is not serializable: {exc}") from exc


# ---------- queue ----------
class PendingQueue:
    """FIFO of pending operations; every method is safe to call from any thread."""

    def __init__(self, storage, key: str = QUEUE_KEY):
        self.storage = storage
        self.key = key
        self.degraded = False
        self._lock = threading.RLock()
        self._observers: List[Callable[[int], None]] = []
        self._ops: List[PendingOperation] = self._load()

    def _load(self) -> List[PendingOperation]:
        try:
            raw = self.storage.get(self.key)
        except StorageError as exc:
            logger.warning("pending queue unreadable, using in-memory queue: %s", exc)
            self.degraded = True
            return []
        if not raw:
            return []
        try:
            return [PendingOperation.from_dict(d) for d in json.loads(raw.decode('utf-8'))]
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("discarding corrupt pending queue: %s", exc)
            return []

    def _persist(self) -> None:
        # caller holds self._lock
        if self.degraded:
            return
        try:
            if self._ops:
                raw = json.dumps([op.to_dict() for op in self._ops], separators=(",", ":"))
                self.storage.set(self.key, raw.encode('utf-8'))
            else:
                self.storage.remove(self.key)
        except StorageError as exc:
            logger.warning("pending queue write failed, continuing in memory: %s", exc)
            self.degraded = True

    def _notify(self, n: int) -> None:
        for callback in list(self._observers):
            try:
                callback(n)
            except Exception:
                logger.exception("queue observer failed")

    def subscribe(self, callback: Callable[[int], None]) -> None:
        with self._lock:
            self._observers.append(callback)

    def enqueue(self, kind: OperationKind, payload: Dict[str, Any]) -> str:
        validate_payload(kind, payload)
        op = PendingOperation(
            id=new_id(),
            kind=OperationKind(kind),
            payload=json.loads(json.dumps(payload)),
            enqueued_at=iso_now(),
        )
        with self._lock:
            self._ops.append(op)
            self._persist()
            n = len(self._ops)
        self._notify(n)
        logger.info("queued %s operation %s (pending=%d)", op.kind.value, op.id, n)
        return op.id

    def peek_front(self) -> Optional[PendingOperation]:
        with self._lock:
            return self._ops[0] if self._ops else None

    def get(self, operation_id: str) -> Optional[PendingOperation]:
        with self._lock:
            for op in self._ops:
                if op.id == operation_id:
                    return op
        return None

    def remove(self, operation_id: str) -> None:
        with self._lock:
            before = len(self._ops)
            self._ops = [op for op in self._ops if op.id != operation_id]
            n = len(self._ops)
            if n == before:
                return
            self._persist()
        self._notify(n)

    def increment_attempts(self, operation_id: str, error: Optional[str] = None) -> int:
        with self._lock:
            op = self.get(operation_id)
            if op is None:
                return 0
            op.attempts += 1
            if error is not None:
                op.last_error = error[:500]
            self._persist()
            return op.attempts

    def length(self) -> int:
        with self._lock:
            return len(self._ops)

    def __len__(self) -> int:
        return self.length()

    def clear(self) -> None:
        with self._lock:
            self._ops = []
            self._persist()
        self._notify(0)

    def operations(self) -> List[PendingOperation]:
        with self._lock:
            return [PendingOperation.from_dict(op.to_dict()) for op in self._ops]

    def rewrite_reference(self, old_id: str, new_id_: str) -> int:
        """Point queued payloads at `new_id_` wherever they reference `old_id`."""
        if not old_id or old_id == new_id_:
            return 0
        touched = 0
        with self._lock:
            for op in self._ops:
                changed = False
                payload = op.payload
                if op.kind in (OperationKind.UPDATE_ENTITY, OperationKind.DELETE_ENTITY) and payload.get('id') == old_id:
                    payload['id'] = new_id_
                    changed = True
                fields = payload.get('fields')
                if isinstance(fields, dict) and fields.get('product_id') == old_id:
                    fields['product_id'] = new_id_
                    changed = True
                for line in payload.get('lines') or []:
                    if isinstance(line, dict) and line.get('product_id') == old_id:
                        line['product_id'] = new_id_
                        changed = True
                if changed:
                    touched += 1
            if touched:
                self._persist()
        return touched
