import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional

from schemas import SessionNotification

logger = logging.getLogger(__name__)


class Listeners:
    """Explicit listener list; subscribe() returns the matching unsubscribe callable."""

    def __init__(self):
        self._items: List[Callable] = []; self._lock = threading.Lock()

    def subscribe(self, fn: Callable) -> Callable[[], None]:
        with self._lock: self._items.append(fn)
        def unsubscribe():
            with self._lock:
                if fn in self._items: self._items.remove(fn)
        return unsubscribe

    def emit(self, *args):
        with self._lock: items = list(self._items)
        for fn in items:
            try:
                fn(*args)
            except Exception:
                logger.exception("listener %r failed", fn)

    def close(self):
        with self._lock: self._items.clear()

    def __len__(self): return len(self._items)


class SessionNotifier:
    def __init__(self):
        self.current: Optional[SessionNotification] = None
        self.listeners = Listeners()

    def _push(self, kind, message, minutes=None):
        self.current = SessionNotification(type=kind, message=message, minutes_remaining=minutes,
                                           timestamp=datetime.now(timezone.utc))
        self.listeners.emit(self.current)

    def warning(self, minutes: int):
        self._push("warning", f"Sesi Anda akan berakhir dalam {minutes} menit. Lakukan aktivitas untuk memperpanjang sesi.", minutes)

    def expired(self): self._push("expired", "Sesi Anda telah berakhir. Silakan login kembali.")

    def extended(self): self._push("info", "Sesi Anda telah diperpanjang.")

    def clear(self): self.current = None
