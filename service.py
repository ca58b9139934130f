import signal
import sys
import os
from pathlib import Path

# Service managers start us in a different CWD, so resolve paths from this file.
BASE_DIR = Path(__file__).resolve().parent
sys.path.append(str(BASE_DIR))

from extsock.core import ExtsockBridge


class BridgeService:
    """systemd-style wrapper: SIGTERM/SIGINT stop the bridge, SIGHUP is ignored."""

    def __init__(self, config_path: str):
        self.config_path = config_path
        self.bridge = None

    def handle_stop(self, signum, frame):
        if self.bridge:
            self.bridge.logger.info(f"Received signal {signum}, shutting down")
            self.bridge.stop()

    def run(self) -> int:
        self.bridge = ExtsockBridge(self.config_path)
        signal.signal(signal.SIGTERM, self.handle_stop)
        signal.signal(signal.SIGINT, self.handle_stop)
        signal.signal(signal.SIGHUP, signal.SIG_IGN)
        return self.bridge.run()


if __name__ == '__main__':
    # Assume config.json in the same dir as the service script unless given
    default_config = os.environ.get("EXTSOCK_CONFIG", str(BASE_DIR / "config.json"))
    config_path = sys.argv[1] if len(sys.argv) > 1 else default_config
    sys.exit(BridgeService(config_path).run())
