#!/usr/bin/env python3
"""
POS Sync Worker

Drains the pending operation queue against the remote store:
  - once at startup when operations are pending,
  - whenever connectivity comes back (offline -> online),
  - on every tick while online with operations pending.

Env vars:
  POS_DB_PATH      SQLite DB path for queue + offline cache (default: pos.db)
  REMOTE_URL       remote REST base URL (required to sync)
  REMOTE_API_KEY   remote API key
  POS_OWNER_ID     owner the queued writes belong to
  SYNC_INTERVAL    seconds between loops (default: 10)

Run:
  python sync_worker.py
"""
import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


class SyncWorker:
    def __init__(self, engine, connectivity, interval: float = 10.0):
        self.engine = engine
        self.connectivity = connectivity
        self.interval = interval
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        connectivity.on_online(self.request_sync)

    def request_sync(self) -> None:
        """Ask the loop to run a drain pass as soon as possible."""
        self._wake.set()

    def tick(self) -> None:
        online = self.connectivity.check()
        if online and self.engine.queue.length() > 0:
            try:
                self.engine.drain()
            except Exception:
                logger.exception('[sync] drain pass crashed')

    def run(self) -> None:
        logger.info('[sync] worker started, interval=%ss, pending=%d',
                    self.interval, self.engine.queue.length())
        while not self._stop.is_set():
            self.tick()
            self._wake.wait(self.interval)
            self._wake.clear()
        logger.info('[sync] worker stopped')

    def start(self) -> threading.Thread:
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self.run, daemon=True, name='pos-sync-worker')
            self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)


def main():
    from pos_app import build_services
    from pos_config import configure_logging, load_config

    config = load_config()
    configure_logging(config, fmt='[sync] %(asctime)s %(levelname)s %(message)s')
    services = build_services(config)
    if not config.has_remote:
        logger.warning('[sync] REMOTE_URL/REMOTE_API_KEY not set; queue will only grow')
    worker = SyncWorker(services.engine, services.connectivity, config.sync_interval)
    try:
        worker.run()
    except KeyboardInterrupt:
        logger.info('[sync] exiting on Ctrl+C')


if __name__ == '__main__':
    main()
