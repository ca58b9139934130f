"""Per-connection rotation through redundant remote gateways."""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from extsock.config_schema import DEFAULT_MAX_RETRIES
from extsock.errors import NotFound, RetryExceeded


@dataclass
class FailoverState:
    remote_addrs: Tuple[str, ...]
    max_retries: int = DEFAULT_MAX_RETRIES
    current_index: int = 0
    failure_count: int = 0
    exhausted: bool = False

    @property
    def current_address(self) -> str:
        return self.remote_addrs[self.current_index]


@dataclass(frozen=True)
class FailoverStatus:
    """Read-only snapshot handed out by the manager."""
    name: str
    remote_addrs: Tuple[str, ...]
    current_index: int
    current_address: str
    failure_count: int
    max_retries: int
    exhausted: bool


class GatewayFailoverManager:
    """Owns the FailoverState of every applied connection, keyed by name.

    State machine per name: Active(i) stays on success, moves to
    Active((i + 1) % N) on a failure below the ceiling, and becomes
    Exhausted on a failure at the ceiling. A connection with a single
    remote address can never rotate.
    """

    def __init__(self, default_max_retries: int = DEFAULT_MAX_RETRIES, logger: logging.Logger = None):
        self.default_max_retries = default_max_retries
        self.logger = logger or logging.getLogger("extsock.failover")
        self._states: Dict[str, FailoverState] = {}
        self._lock = threading.Lock()

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._states

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._states)

    def _get(self, name: str) -> FailoverState:
        state = self._states.get(name)
        if state is None:
            raise NotFound(f"Connection '{name}' is not registered")
        return state

    def register(self, name: str, remote_addrs: Iterable[str], max_retries: int = None):
        addrs = tuple(remote_addrs)
        if not addrs:
            raise ValueError(f"Connection '{name}' needs at least one remote address")
        if max_retries is None:
            max_retries = self.default_max_retries
        # Re-registering always starts over at index 0, list order may have changed
        with self._lock:
            self._states[name] = FailoverState(remote_addrs=addrs, max_retries=max_retries)
        self.logger.debug(f"Registered '{name}' with gateways {list(addrs)} (max_retries={max_retries})")

    def unregister(self, name: str) -> bool:
        with self._lock:
            removed = self._states.pop(name, None) is not None
        if removed:
            self.logger.debug(f"Unregistered '{name}'")
        return removed

    def current_address(self, name: str) -> str:
        with self._lock:
            return self._get(name).current_address

    def on_failure(self, name: str) -> str:
        """Records a failure of the current gateway and returns the next one.

        Raises RetryExceeded when there is no alternative address or the
        ceiling has been reached; the current index is left untouched then.
        """
        with self._lock:
            state = self._get(name)
            if len(state.remote_addrs) < 2:
                raise RetryExceeded(name, state.current_address)
            if state.failure_count + 1 > state.max_retries:
                state.exhausted = True
                raise RetryExceeded(name, state.current_address)
            state.failure_count += 1
            state.current_index = (state.current_index + 1) % len(state.remote_addrs)
            address = state.current_address
            count = state.failure_count
            ceiling = state.max_retries
        self.logger.info(f"Gateway failover for '{name}' -> {address} (attempt {count}/{ceiling})")
        return address

    def on_success(self, name: str):
        with self._lock:
            state = self._get(name)
            state.failure_count = 0
            state.exhausted = False

    def reset(self, name: str):
        self.on_success(name)
        self.logger.info(f"Failover counter reset for '{name}'")

    def status(self, name: str) -> FailoverStatus:
        with self._lock:
            state = self._get(name)
            return FailoverStatus(
                name=name,
                remote_addrs=state.remote_addrs,
                current_index=state.current_index,
                current_address=state.current_address,
                failure_count=state.failure_count,
                max_retries=state.max_retries,
                exhausted=state.exhausted,
            )
