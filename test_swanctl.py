import os
import queue
import stat
import subprocess
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from extsock.config_schema import BridgeConfig, parse
from extsock.errors import DaemonApiError, NotFound
from extsock.platforms.swanctl import SwanctlBackend, parse_list_sas

LIST_SAS = """\
segw: #3, ESTABLISHED, IKEv2, 8e5f3f6f5f3f6f5f_i* 1a2b3c4d5e6f7a8b_r
  local  'client' @ 192.168.1.10[4500]
  remote 'gateway' @ 10.0.0.2[4500]
  AES_CBC-256/HMAC_SHA2_256_128/PRF_HMAC_SHA2_256/MODP_2048
  established 12s ago, rekeying in 13998s
  net: #5, reqid 1, INSTALLED, TUNNEL-in-UDP, ESP:AES_GCM_16-256
    installed 12s ago, rekeying in 3329s, expires in 3948s
    in  c1234567,      0 bytes,     0 packets
    out c7654321,      0 bytes,     0 packets
    local  10.10.0.0/24
    remote 10.20.0.0/16
other: #4, CONNECTING, IKEv2, 0000000000000001_i* 0000000000000000_r
  local  '%any' @ 192.168.1.10[500]
  remote '%any' @ 10.9.9.9[500]
"""

CONNECTION = {
    "name": "segw",
    "ike_cfg": {"local_addrs": ["192.168.1.10"], "remote_addrs": ["10.0.0.1", "10.0.0.2"], "version": 2},
    "local_auth": {"auth": "psk", "id": "client", "secret": 's3c"ret'},
    "remote_auth": {"auth": "pubkey", "id": "gateway", "certs": ["gw.pem"]},
    "children": [
        {
            "name": "net",
            "local_ts": ["10.10.0.0/24"],
            "remote_ts": ["10.20.0.0/16"],
            "start_action": "start",
            "dpd_action": "restart",
            "lifetime": {"rekey_time": 1800, "life_time": 3600, "rekey_bytes": 500000000, "life_bytes": 600000000},
        }
    ],
}


def completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


def commands(mock_run):
    return [c[0][0] for c in mock_run.call_args_list]


def drain(q):
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


class TestParseListSas(unittest.TestCase):
    def test_sample_output(self):
        sas = parse_list_sas(LIST_SAS)
        self.assertEqual(set(sas), {"segw", "other"})
        self.assertEqual(sas["segw"]["state"], "ESTABLISHED")
        self.assertEqual(sas["segw"]["unique_id"], 3)
        self.assertEqual(sas["segw"]["remote_addr"], "10.0.0.2")
        self.assertEqual(sas["segw"]["children"], {"net": {"unique_id": 5, "reqid": 1, "state": "INSTALLED"}})
        self.assertEqual(sas["other"]["state"], "CONNECTING")
        self.assertEqual(sas["other"]["children"], {})

    def test_rekey_keeps_established_sa(self):
        output = LIST_SAS + "segw: #9, CONNECTING, IKEv2, ffff_i* 0000_r\n"
        self.assertEqual(parse_list_sas(output)["segw"]["unique_id"], 3)

    def test_empty(self):
        self.assertEqual(parse_list_sas(""), {})


class TestSwanctlBackend(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config = BridgeConfig(conf_dir=self.tmp.name, swanctl_path="/usr/sbin/swanctl", command_timeout=10)
        self.backend = SwanctlBackend(self.config, MagicMock())
        self.connection = parse(CONNECTION)

    def tearDown(self):
        self.backend._executor.shutdown(wait=True)
        self.tmp.cleanup()

    @patch("extsock.platforms.swanctl.subprocess.run")
    def test_apply_renders_conf_and_secrets(self, mock_run):
        mock_run.return_value = completed()
        self.backend.apply(self.connection)

        conf_file = os.path.join(self.tmp.name, "extsock.conf")
        self.assertEqual(commands(mock_run), [
            ["/usr/sbin/swanctl", "--load-all", "--noprompt", "--file", conf_file],
        ])
        with open(conf_file) as f:
            conf = f.read()
        self.assertIn("    segw {", conf)
        self.assertIn("remote_addrs = 10.0.0.1,10.0.0.2", conf)
        self.assertIn("certs = gw.pem", conf)
        self.assertIn("start_action = start", conf)
        self.assertIn("rekey_time = 1800s", conf)
        self.assertIn("rekey_bytes = 500000000", conf)
        self.assertIn("life_bytes = 600000000", conf)
        self.assertIn("include secrets/*.conf", conf)
        self.assertNotIn("s3c", conf)

        secrets_file = os.path.join(self.tmp.name, "secrets", "segw.conf")
        self.assertEqual(stat.S_IMODE(os.stat(secrets_file).st_mode), 0o600)
        with open(secrets_file) as f:
            secrets = f.read()
        self.assertIn("ike-segw-local {", secrets)
        self.assertIn('secret = "s3c\\"ret"', secrets)
        self.assertNotIn("ike-segw-remote", secrets)

    @patch("extsock.platforms.swanctl.subprocess.run")
    def test_apply_failure_is_reverted(self, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="loading connection 'segw' failed")
        with self.assertRaises(DaemonApiError) as ctx:
            self.backend.apply(self.connection)
        self.assertIn("loading connection", str(ctx.exception))

        mock_run.return_value = completed()
        with self.assertRaises(NotFound):
            self.backend.remove("segw")

    @patch("extsock.platforms.swanctl.subprocess.run")
    def test_timeout_and_missing_binary(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(["swanctl"], 10)
        with self.assertRaises(DaemonApiError):
            self.backend.run_swanctl(["--list-sas"])
        mock_run.side_effect = FileNotFoundError("swanctl")
        with self.assertRaises(DaemonApiError):
            self.backend.run_swanctl(["--list-sas"])

    @patch("extsock.platforms.swanctl.subprocess.run")
    def test_remove(self, mock_run):
        mock_run.return_value = completed()
        self.backend.apply(self.connection)
        mock_run.reset_mock()

        self.backend.remove("segw")

        cmds = commands(mock_run)
        self.assertEqual(cmds[0], ["/usr/sbin/swanctl", "--terminate", "--ike", "segw", "--force"])
        self.assertEqual(cmds[1][1], "--load-all")
        self.assertFalse(os.path.exists(os.path.join(self.tmp.name, "secrets", "segw.conf")))
        with open(os.path.join(self.tmp.name, "extsock.conf")) as f:
            self.assertNotIn("segw", f.read())
        with self.assertRaises(NotFound):
            self.backend.remove("segw")

    @patch("extsock.platforms.swanctl.subprocess.run")
    def test_failover_reorders_and_initiates(self, mock_run):
        mock_run.return_value = completed()
        self.backend.apply(self.connection)
        mock_run.reset_mock()

        self.backend.failover("segw", "10.0.0.2")

        with open(os.path.join(self.tmp.name, "extsock.conf")) as f:
            self.assertIn("remote_addrs = 10.0.0.2,10.0.0.1", f.read())
        self.assertEqual(commands(mock_run)[-1], [
            "/usr/sbin/swanctl", "--initiate", "--ike", "segw", "--timeout", "10", "--child", "net",
        ])

    def test_failover_unknown_connection(self):
        with self.assertRaises(DaemonApiError):
            self.backend.failover("ghost", "10.0.0.2")

    @patch("extsock.platforms.swanctl.subprocess.run")
    def test_has_ike_sa_and_dpd(self, mock_run):
        mock_run.return_value = completed(stdout=LIST_SAS)
        self.assertTrue(self.backend.has_ike_sa("segw"))

        future = self.backend.start_dpd("segw")
        future.result(timeout=5)
        self.assertEqual(commands(mock_run)[-1], ["/usr/sbin/swanctl", "--rekey", "--ike", "segw"])

        mock_run.return_value = completed(returncode=1, stderr="no matching IKE_SA")
        self.assertFalse(self.backend.has_ike_sa("segw"))
        with self.assertRaises(DaemonApiError):
            self.backend.start_dpd("segw").result(timeout=5)

    @patch("extsock.platforms.swanctl.subprocess.run")
    def test_poll_reports_transitions(self, mock_run):
        mock_run.return_value = completed()
        self.backend.apply(self.connection)

        mock_run.return_value = completed(stdout=LIST_SAS)
        self.backend.poll()
        up = drain(self.backend.notifications)
        self.assertEqual([(n.kind, n.ike_level) for n in up], [("tunnel-up", True), ("tunnel-up", False)])
        self.assertEqual(up[0].payload["remote_addr"], "10.0.0.2")
        self.assertEqual(up[1].payload["child_sa_name"], "net")
        # Connections the bridge did not install are ignored
        self.assertTrue(all(n.connection_name == "segw" for n in up))

        self.backend.poll()
        self.assertEqual(drain(self.backend.notifications), [])

        mock_run.return_value = completed(stdout="")
        self.backend.poll()
        down = drain(self.backend.notifications)
        self.assertEqual([(n.kind, n.ike_level) for n in down], [("tunnel-down", False), ("tunnel-down", True)])
        self.assertTrue(down[1].payload["established"])

    @patch("extsock.platforms.swanctl.subprocess.run")
    def test_cleanup_terminates_everything(self, mock_run):
        mock_run.return_value = completed()
        self.backend.apply(self.connection)
        mock_run.reset_mock()

        self.backend.cleanup()

        cmds = commands(mock_run)
        self.assertEqual(cmds[0], ["/usr/sbin/swanctl", "--terminate", "--ike", "segw", "--force"])
        self.assertEqual(cmds[-1][1], "--load-all")
        self.assertFalse(os.path.exists(os.path.join(self.tmp.name, "secrets", "segw.conf")))


if __name__ == '__main__':
    unittest.main()
