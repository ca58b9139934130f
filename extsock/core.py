import logging
import os
import sys
import platform
import threading
from concurrent.futures import ThreadPoolExecutor
from logging.handlers import RotatingFileHandler
from enum import Enum
from pathlib import Path

from extsock.codec import Event, EventKind
from extsock.config_schema import BridgeConfig, load_config
from extsock.dispatcher import CommandDispatcher
from extsock.errors import DaemonApiError, StartupError
from extsock.failover import GatewayFailoverManager
from extsock.publisher import EventPublisher
from extsock.server import ControlSocketServer

# Constants
MAX_LOG_SIZE = 5 * 1024 * 1024  # 5 MB
LOG_BACKUP_COUNT = 3
FAILOVER_WORKERS = 4


class BridgeState(Enum):
    INIT = "INIT"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"


class ExtsockBridge:

    def __init__(self, config_path: str):
        self.config_path = config_path
        self.config: BridgeConfig = None
        self.state = BridgeState.INIT
        self.base_dir = Path(__file__).parent.parent.resolve()
        self.backend = None
        self.logger = None
        self.failover = None
        self.publisher = None
        self.dispatcher = None
        self.server = None
        self._failover_pool = None
        self._stop = threading.Event()

        # Initialize basic logging immediately
        self.setup_logging()

    def setup_logging(self):
        log_level = logging.INFO
        if self.config:
            log_level = getattr(logging, self.config.logging_level.upper(), logging.INFO)

        handlers = []
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] [%(name)s] %(message)s")

        # Config-based logging
        log_type = self.config.logging_type if self.config else "stdout"

        if log_type == "syslog":
            from logging.handlers import SysLogHandler
            address = "/dev/log" if os.path.exists("/dev/log") else ("/var/run/syslog" if os.path.exists("/var/run/syslog") else ('localhost', 514))
            sh = SysLogHandler(address=address)
            sh.setFormatter(logging.Formatter('%(name)s: %(message)s'))
            handlers.append(sh)

        if log_type == "file":
            log_file = Path(self.config.log_file) if self.config.log_file else self.base_dir / "extsock.log"
            fh = RotatingFileHandler(log_file, maxBytes=MAX_LOG_SIZE, backupCount=LOG_BACKUP_COUNT)
            fh.setFormatter(formatter)
            handlers.append(fh)

        # Always log to stdout for container/systemd visibility unless syslog was chosen
        if log_type == "stdout" or log_type == "file":
            sh = logging.StreamHandler(sys.stdout)
            sh.setFormatter(formatter)
            handlers.append(sh)

        # A broken sink must never turn into a bridge error
        logging.raiseExceptions = False
        logging.basicConfig(level=log_level, handlers=handlers, force=True)
        self.logger = logging.getLogger("extsock")

    def load_configuration(self):
        try:
            self.logger.info(f"Loading configuration from {self.config_path}")
            self.config = load_config(self.config_path)

            # Re-setup logging with config
            self.setup_logging()
            self.logger.info("Configuration loaded successfully.")

            self._init_backend()
        except Exception as e:
            self.logger.error(f"Failed to load configuration: {e}")
            self.state = BridgeState.ERROR
            raise

    def _init_backend(self):
        self.logger.info(f"Detected OS: {platform.system()}, backend: {self.config.backend}")
        backend_logger = logging.getLogger(f"extsock.backend.{self.config.backend}")

        if self.config.backend == "swanctl":
            from extsock.platforms.swanctl import SwanctlBackend
            self.backend = SwanctlBackend(self.config, backend_logger)
        elif self.config.backend == "memory":
            from extsock.platforms.memory import MemoryBackend
            self.backend = MemoryBackend(self.config, backend_logger)
        else:
            raise NotImplementedError(f"Unsupported backend: {self.config.backend}")

    def start(self):
        """Wires the components together and opens the control socket."""
        self.failover = GatewayFailoverManager(self.config.max_retries)
        self.publisher = EventPublisher()
        self.dispatcher = CommandDispatcher(self.backend, self.failover, self.publisher)
        self._failover_pool = ThreadPoolExecutor(max_workers=FAILOVER_WORKERS, thread_name_prefix="extsock-failover")
        self.publisher.add_listener(self._on_event)

        self.server = ControlSocketServer(
            self.config.socket_path, self.dispatcher, self.publisher,
            socket_mode=self.config.socket_mode,
            max_message_size=self.config.max_message_size,
        )
        self.publisher.start_pump(self.backend.notifications)
        self.server.serve_in_thread()
        self.state = BridgeState.RUNNING

    def _on_event(self, event: Event):
        # Only IKE-level changes say anything about the gateway in use
        if event.payload.get("scope") != "ike":
            return
        if event.kind == EventKind.TUNNEL_UP:
            self.dispatcher.connection_established(event.connection_name)
        elif event.kind == EventKind.TUNNEL_DOWN and event.payload.get("reason") != "removed":
            self._failover_pool.submit(self._handle_failure, event.connection_name)

    def _handle_failure(self, name: str):
        try:
            address = self.dispatcher.connection_failed(name)
            if address:
                self.logger.info(f"'{name}' failed over to {address}")
        except Exception as e:
            self.logger.error(f"Failover handling for '{name}' crashed: {e}")

    def poll_once(self):
        try:
            self.backend.poll()
        except DaemonApiError as e:
            self.logger.warning(f"Daemon poll failed: {e}")

    def stop(self):
        self._stop.set()

    def cleanup(self):
        if self.server:
            self.server.close()
            self.server = None
        if self.publisher:
            self.publisher.stop()
        if self._failover_pool:
            self._failover_pool.shutdown(wait=False)
        if self.backend:
            self.backend.cleanup()
        self.state = BridgeState.STOPPED

    def run(self) -> int:
        self.logger.info("Bridge starting...")
        try:
            self.load_configuration()
            self.start()
        except StartupError as e:
            self.logger.critical(str(e))
            self.state = BridgeState.ERROR
            return 1
        except Exception:
            return 1  # Exit if config fails

        try:
            while not self._stop.is_set():
                self.poll_once()
                self._stop.wait(self.config.poll_interval)
        except KeyboardInterrupt:
            self.logger.info("Bridge stopping (User Interrupt)...")
        finally:
            self.cleanup()
        return 0


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) < 1:
        print("Usage: extsock-bridge <config_path>")
        return 1

    bridge = ExtsockBridge(argv[0])
    return bridge.run()


if __name__ == "__main__":
    sys.exit(main())
