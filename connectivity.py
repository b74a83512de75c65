"""Online/offline signal with an offline -> online transition event."""
import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class Connectivity:
    def __init__(self, ping: Optional[Callable[[], bool]] = None, online: bool = True):
        self.ping = ping
        self._online = online
        self._lock = threading.Lock()
        self._listeners: List[Callable[[], None]] = []

    def is_online(self) -> bool:
        return self._online

    def on_online(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def set_online(self, online: bool) -> None:
        with self._lock:
            regained = online and not self._online
            changed = online != self._online
            self._online = online
        if changed:
            logger.info("connectivity %s", 'restored' if online else 'lost')
        if regained:
            for callback in list(self._listeners):
                try:
                    callback()
                except Exception:
                    logger.exception("online listener failed")

    def check(self) -> bool:
        """Run the ping (if any), update the flag and return it."""
        if self.ping is None:
            return self._online
        try:
            online = bool(self.ping())
        except Exception as exc:
            logger.debug("connectivity ping failed: %s", exc)
            online = False
        self.set_online(online)
        return online
