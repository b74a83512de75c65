"""Wires storage, cache, queue, remote store, state and sync engine together."""
import logging

from connectivity import Connectivity
from kv_storage import MemoryKVStorage, SqliteKVStorage
from local_cache import LocalCache
from pos_errors import StorageError
from pos_store import PosStore
from remote_store import RemoteStore
from sync_engine import SyncEngine
from sync_queue import PendingQueue

logger = logging.getLogger(__name__)


class Services:
    def __init__(self, storage, cache, queue, remote, connectivity, store, engine):
        self.storage = storage
        self.cache = cache
        self.queue = queue
        self.remote = remote
        self.connectivity = connectivity
        self.store = store
        self.engine = engine


def open_storage(db_path: str):
    try:
        return SqliteKVStorage(db_path)
    except StorageError as exc:
        logger.error("local storage unavailable (%s); running from memory this session", exc)
        return MemoryKVStorage()


def build_services(config, storage=None, remote=None, connectivity=None) -> Services:
    storage = storage if storage is not None else open_storage(config.db_path)
    if remote is None and config.has_remote:
        remote = RemoteStore(config.remote_url, config.remote_api_key,
                             access_token=config.remote_access_token, timeout=config.remote_timeout)
    if connectivity is None:
        if remote is not None:
            connectivity = Connectivity(ping=remote.ping, online=False)
        else:
            connectivity = Connectivity(online=False)
    cache = LocalCache(storage)
    queue = PendingQueue(storage)
    store = PosStore(remote, queue, cache, connectivity, owner_id=config.owner_id)
    engine = SyncEngine(queue, remote, store, connectivity, owner_id=config.owner_id, storage=storage)
    return Services(storage, cache, queue, remote, connectivity, store, engine)
