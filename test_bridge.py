import json
import os
import tempfile
import threading
import time
import unittest
from unittest.mock import MagicMock

from extsock.codec import Event, EventKind, decode
from extsock.core import BridgeState, ExtsockBridge, main

CONNECTION = {
    "command": "apply-configuration",
    "name": "segw",
    "ike_cfg": {"remote_addrs": ["10.0.0.1", "10.0.0.2", "10.0.0.3"]},
    "local_auth": {"auth": "psk", "id": "client", "secret": "psk"},
    "remote_auth": {"auth": "psk", "id": "gateway", "secret": "psk"},
}


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class BridgeTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.socket_path = os.path.join(self.tmp.name, "extsock.sock")

    def tearDown(self):
        self.tmp.cleanup()

    def write_config(self, **overrides):
        data = {
            "socket_path": self.socket_path,
            "logging": "debug",
            "logging_type": "stdout",
            "backend": "memory",
            "poll_interval": 0.1,
        }
        data.update(overrides)
        path = os.path.join(self.tmp.name, "config.json")
        with open(path, "w") as f:
            json.dump(data, f)
        return path


class TestBridgeLifecycle(BridgeTestCase):
    def test_missing_config(self):
        bridge = ExtsockBridge(os.path.join(self.tmp.name, "missing.json"))
        self.assertEqual(bridge.run(), 1)
        self.assertEqual(bridge.state, BridgeState.ERROR)

    def test_unbindable_socket(self):
        bridge = ExtsockBridge(self.write_config(socket_path="/nonexistent-dir/extsock.sock"))
        self.assertEqual(bridge.run(), 1)
        self.assertEqual(bridge.state, BridgeState.ERROR)

    def test_run_until_stopped(self):
        bridge = ExtsockBridge(self.write_config())
        codes = []
        thread = threading.Thread(target=lambda: codes.append(bridge.run()))
        thread.start()
        self.assertTrue(wait_for(lambda: bridge.state == BridgeState.RUNNING))
        self.assertTrue(os.path.exists(self.socket_path))

        bridge.stop()
        thread.join(timeout=5)
        self.assertEqual(codes, [0])
        self.assertEqual(bridge.state, BridgeState.STOPPED)
        self.assertFalse(os.path.exists(self.socket_path))

    def test_main_usage(self):
        self.assertEqual(main([]), 1)


class TestFailoverWiring(BridgeTestCase):
    def setUp(self):
        super().setUp()
        self.bridge = ExtsockBridge(self.write_config())
        self.bridge.load_configuration()
        self.bridge.start()
        self.backend = self.bridge.backend
        self.assertTrue(self.bridge.dispatcher.dispatch(decode(CONNECTION)).ok)

    def tearDown(self):
        self.bridge.cleanup()
        super().tearDown()

    def test_tunnel_down_moves_to_next_gateway(self):
        self.backend.establish("segw")
        self.backend.drop("segw")
        self.assertTrue(wait_for(lambda: self.backend.gateways.get("segw") == "10.0.0.2"))
        self.assertEqual(self.bridge.failover.status("segw").failure_count, 1)

        self.backend.establish("segw")
        self.assertTrue(wait_for(lambda: self.bridge.failover.status("segw").failure_count == 0))
        self.assertEqual(self.bridge.failover.current_address("segw"), "10.0.0.2")

    def test_child_events_do_not_trigger_failover(self):
        self.bridge._failover_pool = MagicMock()
        self.bridge._on_event(Event.create(EventKind.TUNNEL_DOWN, "segw", scope="child", child_sa_name="net"))
        self.bridge._on_event(Event.create(EventKind.TUNNEL_DOWN, "segw", scope="ike", reason="removed"))
        self.bridge._on_event(Event.create(EventKind.CONFIG_APPLIED, "segw", scope="ike"))
        self.bridge._failover_pool.submit.assert_not_called()

        self.bridge._on_event(Event.create(EventKind.TUNNEL_DOWN, "segw", scope="ike"))
        self.bridge._failover_pool.submit.assert_called_once_with(self.bridge._handle_failure, "segw")


if __name__ == '__main__':
    unittest.main()
