from abc import ABC, abstractmethod
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Dict
import logging
import queue

from extsock.config_schema import BridgeConfig, ConnectionConfig


@dataclass(frozen=True)
class Notification:
    """Tunnel lifecycle change reported by the IKE daemon."""
    kind: str  # tunnel-up, tunnel-down
    connection_name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    ike_level: bool = False  # the IKE SA itself changed, not just a CHILD_SA


class IKEDaemonBackend(ABC):
    def __init__(self, config: BridgeConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger
        self.notifications: "queue.Queue[Notification]" = queue.Queue()

    def notify(self, kind: str, connection_name: str, ike_level: bool = False, **payload):
        self.notifications.put(Notification(kind, connection_name, payload, ike_level))

    @abstractmethod
    def apply(self, config: ConnectionConfig):
        """Installs or replaces a connection. Raises DaemonApiError."""
        pass

    @abstractmethod
    def remove(self, name: str):
        """Removes a connection. Raises NotFound or DaemonApiError."""
        pass

    @abstractmethod
    def has_ike_sa(self, name: str) -> bool:
        pass

    @abstractmethod
    def start_dpd(self, name: str) -> Future:
        """Queues a liveness probe; the future resolves when it finishes."""
        pass

    @abstractmethod
    def failover(self, name: str, address: str):
        """Re-initiates a connection towards the given gateway. Raises DaemonApiError."""
        pass

    @abstractmethod
    def poll(self):
        """Detects lifecycle changes and enqueues Notifications."""
        pass

    @abstractmethod
    def cleanup(self):
        """Releases everything the backend installed."""
        pass
