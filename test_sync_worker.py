import unittest

from connectivity import Connectivity
from fake_remote import FakeRemote
from kv_storage import MemoryKVStorage
from local_cache import LocalCache
from pos_store import PosStore
from sync_engine import SyncEngine
from sync_queue import OperationKind, PendingQueue
from sync_worker import SyncWorker


class SyncWorkerTest(unittest.TestCase):
    def setUp(self):
        self.reachable = False
        storage = MemoryKVStorage()
        self.remote = FakeRemote()
        self.queue = PendingQueue(storage)
        self.connectivity = Connectivity(ping=lambda: self.reachable, online=False)
        store = PosStore(self.remote, self.queue, LocalCache(storage), self.connectivity, owner_id='owner-1')
        self.engine = SyncEngine(self.queue, self.remote, store, self.connectivity)
        self.worker = SyncWorker(self.engine, self.connectivity, interval=0.05)

    def test_tick_skips_while_unreachable(self):
        self.queue.enqueue(OperationKind.DELETE_ENTITY, {'collection': 'products', 'id': 'p1'})
        self.worker.tick()
        self.assertEqual(self.queue.length(), 1)
        self.assertEqual(self.remote.calls, [])

    def test_tick_drains_once_reachable(self):
        self.queue.enqueue(OperationKind.DELETE_ENTITY, {'collection': 'products', 'id': 'p1'})
        self.reachable = True
        self.worker.tick()
        self.assertEqual(self.queue.length(), 0)
        self.assertEqual(self.remote.methods()[0], 'delete_entity')

    def test_tick_with_empty_queue_does_not_drain(self):
        self.reachable = True
        self.worker.tick()
        self.assertEqual(self.remote.calls, [])

    def test_reconnect_wakes_the_loop(self):
        self.assertFalse(self.worker._wake.is_set())
        self.connectivity.set_online(True)
        self.assertTrue(self.worker._wake.is_set())

    def test_start_and_stop(self):
        self.queue.enqueue(OperationKind.DELETE_ENTITY, {'collection': 'products', 'id': 'p1'})
        self.reachable = True
        thread = self.worker.start()
        self.worker.request_sync()
        self.worker.stop(timeout=2)
        self.assertFalse(thread.is_alive())


if __name__ == "__main__":
    unittest.main()
