import logging
import threading
import time
from concurrent.futures import Future
from typing import Dict, List, Optional, Set

from extsock.base import IKEDaemonBackend
from extsock.config_schema import BridgeConfig, ConnectionConfig
from extsock.errors import DaemonApiError, NotFound


class MemoryBackend(IKEDaemonBackend):
    """In-memory IKE daemon stand-in for tests and dry runs.

    IKE SAs only come and go when a test calls establish() or drop().
    """

    def __init__(self, config: BridgeConfig = None, logger: logging.Logger = None, apply_delay: float = 0.0):
        super().__init__(config or BridgeConfig(backend="memory"), logger or logging.getLogger("extsock.memory"))
        self.apply_delay = apply_delay
        self.configs: Dict[str, ConnectionConfig] = {}
        self.ike_sas: Dict[str, str] = {}  # name -> remote gateway in use
        self.gateways: Dict[str, str] = {}
        self.apply_calls: List[str] = []
        self.failover_calls: List[tuple] = []
        self.fail_apply: Optional[Exception] = None
        self.fail_remove: Optional[Exception] = None
        self.rejected_gateways: Set[str] = set()
        self.max_in_flight: Dict[str, int] = {}
        self._in_flight: Dict[str, int] = {}
        self.peak_in_flight = 0  # applies running at once, across all names
        self._dpd: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def apply(self, config: ConnectionConfig):
        name = config.name
        with self._lock:
            self._in_flight[name] = self._in_flight.get(name, 0) + 1
            self.max_in_flight[name] = max(self.max_in_flight.get(name, 0), self._in_flight[name])
            self.peak_in_flight = max(self.peak_in_flight, sum(self._in_flight.values()))
        try:
            if self.apply_delay:
                time.sleep(self.apply_delay)
            if self.fail_apply is not None:
                raise self.fail_apply
            with self._lock:
                self.configs[name] = config
                self.gateways[name] = config.remote_addrs[0]
                self.apply_calls.append(name)
            self.logger.info(f"Installed '{name}'")
        finally:
            with self._lock:
                self._in_flight[name] -= 1

    def remove(self, name: str):
        if self.fail_remove is not None:
            raise self.fail_remove
        with self._lock:
            if name not in self.configs:
                raise NotFound(f"Peer config '{name}' not found")
            del self.configs[name]
            self.gateways.pop(name, None)
            had_sa = self.ike_sas.pop(name, None) is not None
        if had_sa:
            self.notify("tunnel-down", name, ike_level=True, ike_sa_name=name, reason="removed")

    def has_ike_sa(self, name: str) -> bool:
        with self._lock:
            return name in self.ike_sas

    def start_dpd(self, name: str) -> Future:
        future = Future()
        future.set_running_or_notify_cancel()
        with self._lock:
            self._dpd[name] = future
        return future

    def complete_dpd(self, name: str, alive: bool = True):
        with self._lock:
            future = self._dpd.pop(name)
        if alive:
            future.set_result(True)
        else:
            future.set_exception(DaemonApiError(f"Peer of '{name}' did not respond"))

    def failover(self, name: str, address: str):
        with self._lock:
            self.failover_calls.append((name, address))
            if name not in self.configs:
                raise DaemonApiError(f"Peer config '{name}' not installed")
            if address in self.rejected_gateways:
                raise DaemonApiError(f"Gateway {address} unreachable")
            self.gateways[name] = address

    def establish(self, name: str, child: str = None):
        with self._lock:
            address = self.gateways.get(name, "")
            self.ike_sas[name] = address
        self.notify("tunnel-up", name, ike_level=True, ike_sa_name=name, remote_addr=address)
        if child:
            self.notify("tunnel-up", name, ike_sa_name=name, child_sa_name=child)

    def drop(self, name: str):
        with self._lock:
            address = self.ike_sas.pop(name, None)
        self.notify("tunnel-down", name, ike_level=True, ike_sa_name=name, remote_addr=address)

    def poll(self):
        pass

    def cleanup(self):
        with self._lock:
            self.configs.clear()
            self.ike_sas.clear()
            self.gateways.clear()
