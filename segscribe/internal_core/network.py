from __future__ import annotations

import logging
import socket
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


class NetworkMonitor:
    """
    Last known reachability of the remote provider.

    Subscribers are called with the new value on transitions only; setting the
    current value again is a no-op. ``start_probe()`` runs a background TCP
    connect probe that feeds ``set_connected``.
    """

    def __init__(
        self,
        host: str = "api.openai.com",
        port: int = 443,
        interval_sec: float = 5.0,
        timeout_sec: float = 3.0,
        initially_connected: bool = True,
    ) -> None:
        self._host = host
        self._port = port
        self._interval_sec = interval_sec
        self._timeout_sec = timeout_sec
        self._connected = initially_connected
        self._subscribers: List[ConnectivityCallback] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def set_connected(self, connected: bool) -> bool:
        """Record a reachability observation; returns True if it was a transition."""
        connected = bool(connected)
        with self._lock:
            if connected == self._connected:
                return False
            self._connected = connected
            subscribers = list(self._subscribers)

        logger.info("network %s", "reachable" if connected else "unreachable")
        for callback in subscribers:
            try:
                callback(connected)
            except Exception:
                logger.exception("connectivity subscriber failed")
        return True

    def probe_once(self) -> bool:
        try:
            conn = socket.create_connection((self._host, self._port), timeout=self._timeout_sec)
        except OSError:
            return False
        conn.close()
        return True

    def start_probe(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._probe_loop,
            name="segscribe-network-probe",
            daemon=True,
        )
        self._thread.start()

    def stop_probe(self, timeout_sec: Optional[float] = None) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout_sec)
        self._thread = None

    def _probe_loop(self) -> None:
        while not self._stop.is_set():
            self.set_connected(self.probe_once())
            self._stop.wait(self._interval_sec)
