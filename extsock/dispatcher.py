"""Routes decoded commands to the translator, the failover manager and the daemon backend."""

import logging
import threading
from concurrent.futures import Future
from contextlib import contextmanager
from functools import partial
from typing import Dict, Optional

from extsock import config_schema
from extsock.base import IKEDaemonBackend
from extsock.codec import Command, CommandType, Event, EventKind, Result
from extsock.errors import Busy, DaemonApiError, ExtsockError, NotFound, RetryExceeded
from extsock.failover import GatewayFailoverManager
from extsock.publisher import EventPublisher


class NameLocks:
    """One lock per connection name, alive only while someone holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}  # name -> [lock, holders]

    @contextmanager
    def hold(self, name: str):
        with self._guard:
            entry = self._locks.setdefault(name, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[name]

    def locked(self, name: str) -> bool:
        with self._guard:
            return name in self._locks

    def __len__(self):
        with self._guard:
            return len(self._locks)


class CommandDispatcher:
    def __init__(self, backend: IKEDaemonBackend, failover: GatewayFailoverManager,
                 publisher: EventPublisher, default_max_retries: int = None,
                 logger: logging.Logger = None):
        self.backend = backend
        self.failover = failover
        self.publisher = publisher
        self.default_max_retries = (
            failover.default_max_retries if default_max_retries is None else default_max_retries
        )
        self.logger = logger or logging.getLogger("extsock.dispatcher")
        self._locks = NameLocks()
        self._dpd_lock = threading.Lock()
        self._dpd_probes: Dict[str, Future] = {}
        self._handlers = {
            CommandType.APPLY_CONFIGURATION: self.apply_configuration,
            CommandType.START_DPD: self.start_dpd,
            CommandType.REMOVE_CONFIGURATION: self.remove_configuration,
            CommandType.SUBSCRIBE: lambda body: Result.success(),
        }

    def dispatch(self, command: Command) -> Result:
        handler = self._handlers[command.type]
        try:
            return handler(command.body)
        except ExtsockError as e:
            self.logger.warning(f"{command.type.value} failed for '{command.target}': {e.message}")
            return Result.from_error(e)

    def apply_configuration(self, body: dict) -> Result:
        config = config_schema.parse(body)
        max_retries = config.max_retries if config.max_retries is not None else self.default_max_retries

        failure = None
        with self._locks.hold(config.name):
            self.logger.info(f"Applying configuration '{config.name}' (gateways: {', '.join(config.remote_addrs)})")
            self.failover.register(config.name, config.remote_addrs, max_retries)
            try:
                self.backend.apply(config)
            except DaemonApiError as e:
                # Failover state stays registered so a retry or removal can clean it up
                failure = e
        if failure is not None:
            self._publish_error(config.name, "apply-configuration", failure)
            raise failure

        self.publisher.publish(Event.create(
            EventKind.CONFIG_APPLIED, config.name,
            remote_addrs=list(config.remote_addrs),
            children=[c.name for c in config.children],
        ))
        return Result.success()

    def start_dpd(self, body: dict) -> Result:
        name = body["ike_sa_name"]
        if not self.backend.has_ike_sa(name):
            raise NotFound(f"IKE_SA '{name}' not found")

        with self._dpd_lock:
            if name in self._dpd_probes:
                raise Busy(f"DPD probe already outstanding for '{name}'")
            future = self.backend.start_dpd(name)
            self._dpd_probes[name] = future
        self.logger.info(f"DPD probe queued for '{name}'")
        future.add_done_callback(partial(self._dpd_done, name))
        return Result.success()

    def _dpd_done(self, name: str, future: Future):
        with self._dpd_lock:
            if self._dpd_probes.get(name) is future:
                del self._dpd_probes[name]
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.logger.warning(f"DPD probe for '{name}' failed: {error}")
            self._publish_error(name, "start-dpd", error)
        else:
            self.logger.debug(f"DPD probe for '{name}' completed")

    def dpd_outstanding(self, name: str) -> bool:
        with self._dpd_lock:
            return name in self._dpd_probes

    def remove_configuration(self, body: dict) -> Result:
        name = body["name"]
        with self._locks.hold(name):
            # Drop failover state before touching the daemon; it must not outlive the connection
            registered = self.failover.unregister(name)
            with self._dpd_lock:
                self._dpd_probes.pop(name, None)
            try:
                self.backend.remove(name)
            except NotFound:
                if not registered:
                    raise
                self.logger.info(f"'{name}' was never installed by the daemon, failover state cleared")
        self.logger.info(f"Removed configuration '{name}'")
        return Result.success()

    def reset(self, name: str) -> Result:
        try:
            with self._locks.hold(name):
                self.failover.reset(name)
        except NotFound as e:
            return Result.from_error(e)
        return Result.success()

    def connection_established(self, name: str):
        try:
            self.failover.on_success(name)
        except NotFound:
            pass

    def connection_failed(self, name: str) -> Optional[str]:
        """Moves a failed connection to its next gateway.

        Returns the address the daemon accepted, or None when the
        connection is unknown, has no alternative, or is exhausted.
        """
        exhausted = None
        with self._locks.hold(name):
            try:
                if len(self.failover.status(name).remote_addrs) < 2:
                    self.logger.debug(f"'{name}' has a single gateway, no failover")
                    return None
            except NotFound:
                return None

            while exhausted is None:
                try:
                    address = self.failover.on_failure(name)
                except NotFound:
                    return None
                except RetryExceeded as e:
                    self.logger.error(f"Failover exhausted for '{name}', staying on {e.address}")
                    exhausted = e
                    continue
                try:
                    self.backend.failover(name, address)
                    return address
                except DaemonApiError as e:
                    self.logger.warning(f"Failover of '{name}' to {address} rejected: {e.message}")

        self._publish_error(name, "failover", exhausted, address=exhausted.address)
        return None

    def _publish_error(self, name: str, operation: str, error: Exception, **extra):
        self.publisher.publish(Event.create(
            EventKind.ERROR, name,
            operation=operation,
            code=getattr(error, "code", "daemon-api-error"),
            message=str(error),
            **extra,
        ))
