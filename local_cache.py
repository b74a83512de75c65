"""
Offline snapshot of the entity collections.

The store writes through here on every optimistic mutation and after every
full remote refresh; snapshots are only read back at startup when the remote
store cannot be used.
"""
import json
import logging
from typing import Any, Dict, List

from pos_errors import StorageError

logger = logging.getLogger(__name__)

OFFLINE_DATA_KEY = 'stockpro_offline_data'
COLLECTIONS = ('products', 'movements', 'sales')


class LocalCache:
    def __init__(self, storage, prefix: str = OFFLINE_DATA_KEY):
        self.storage = storage
        self.prefix = prefix

    def _key(self, name: str) -> str:
        return f"{self.prefix}_{name}"

    def _write(self, name: str, data: Any) -> bool:
        try:
            raw = json.dumps(data, ensure_ascii=False, separators=(",", ":")).encode('utf-8')
            self.storage.set(self._key(name), raw)
            return True
        except (StorageError, TypeError, ValueError) as exc:
            logger.warning("offline cache write for %s failed: %s", name, exc)
            return False

    def _read(self, name: str) -> Any:
        try:
            raw = self.storage.get(self._key(name))
        except StorageError as exc:
            logger.warning("offline cache read for %s failed: %s", name, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as exc:
            logger.warning("discarding unreadable offline cache for %s: %s", name, exc)
            return None

    def save_collection(self, name: str, entities: List[Dict[str, Any]]) -> bool:
        return self._write(name, list(entities))

    def load_collection(self, name: str) -> List[Dict[str, Any]]:
        data = self._read(name)
        return data if isinstance(data, list) else []

    def save_settings(self, settings: Dict[str, Any]) -> bool:
        return self._write('settings', dict(settings))

    def load_settings(self) -> Dict[str, Any]:
        data = self._read('settings')
        return data if isinstance(data, dict) else {}

    def save_snapshot(self, products, movements, sales, settings) -> None:
        self.save_collection('products', products)
        self.save_collection('movements', movements)
        self.save_collection('sales', sales)
        self.save_settings(settings)
