"""In-memory stand-in for RemoteStore used by the test modules."""
import copy
import itertools
from typing import Any, Dict, List, Optional

from pos_errors import RemoteError


class FakeRemote:
    def __init__(self):
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.products: List[Dict[str, Any]] = []
        self.movements: List[Dict[str, Any]] = []
        self.sales: List[Dict[str, Any]] = []
        self.settings: Optional[Dict[str, Any]] = None
        self._ids = itertools.count(1)

    def fail(self, method: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls to `method`, in order."""
        self.failures.setdefault(method, []).extend(errors)

    def _call(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def methods(self) -> List[str]:
        return [c[0] for c in self.calls]

    def fetch_collection(self, name: str):
        self._call('fetch_collection', name)
        return copy.deepcopy(getattr(self, name))

    def fetch_settings(self, owner_id: str):
        self._call('fetch_settings', owner_id)
        return copy.deepcopy(self.settings)

    def insert_entity(self, collection: str, fields: Dict[str, Any], owner_id: str):
        self._call('insert_entity', collection, copy.deepcopy(fields), owner_id)
        entity = dict(fields, id=f"srv-{next(self._ids)}", created_at='2024-01-01T00:00:00Z')
        getattr(self, collection).insert(0, entity)
        return copy.deepcopy(entity)

    def update_entity(self, collection: str, entity_id: str, fields: Dict[str, Any]):
        self._call('update_entity', collection, entity_id, copy.deepcopy(fields))

    def delete_entity(self, collection: str, entity_id: str):
        self._call('delete_entity', collection, entity_id)

    def record_transaction_atomic(self, payload: Dict[str, Any], owner_id: str):
        self._call('record_transaction_atomic', copy.deepcopy(payload), owner_id)
        return {'id': f"sale-srv-{next(self._ids)}"}

    def upsert_settings(self, owner_id: str, fields: Dict[str, Any]):
        self._call('upsert_settings', owner_id, copy.deepcopy(fields))
        self.settings = copy.deepcopy(fields)


def transient(msg: str = 'gateway timeout') -> RemoteError:
    return RemoteError(msg, 'transient', status=504)


def terminal(msg: str = 'duplicate key value') -> RemoteError:
    return RemoteError(msg, 'constraint', code='23505', status=409)


def auth_error(msg: str = 'JWT expired') -> RemoteError:
    return RemoteError(msg, 'auth', code='PGRST301', status=401)
