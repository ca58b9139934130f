import logging
import os
import re
import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Dict, List

from extsock.base import IKEDaemonBackend
from extsock.config_schema import AuthConfig, BridgeConfig, ConnectionConfig, StartAction
from extsock.errors import DaemonApiError, NotFound

CONF_FILE = "extsock.conf"
SECRETS_DIR = "secrets"

# swanctl --list-sas text output
IKE_SA_LINE = re.compile(r"^(?P<name>[^\s:]+): #(?P<uid>\d+), (?P<state>[A-Z_]+), IKEv(?P<version>\d)")
REMOTE_LINE = re.compile(r"^\s+remote\s+'(?P<id>[^']*)' @ (?P<addr>\S+?)\[\d+\]")
CHILD_SA_LINE = re.compile(r"^\s+(?P<name>[^\s:]+): #(?P<uid>\d+), reqid (?P<reqid>\d+), (?P<state>[A-Z_]+)")


def parse_list_sas(output: str) -> Dict[str, dict]:
    """Parses `swanctl --list-sas` into {ike_sa_name: {state, unique_id, remote_addr, children}}."""
    sas = {}
    current = None
    for line in output.splitlines():
        m = IKE_SA_LINE.match(line)
        if m:
            current = {
                "unique_id": int(m.group("uid")),
                "state": m.group("state"),
                "version": int(m.group("version")),
                "remote_addr": None,
                "children": {},
            }
            # During a rekey two IKE_SAs share the name; keep the established one
            previous = sas.get(m.group("name"))
            if previous is None or previous["state"] != "ESTABLISHED" or current["state"] == "ESTABLISHED":
                sas[m.group("name")] = current
            continue
        if current is None:
            continue
        m = REMOTE_LINE.match(line)
        if m:
            current["remote_addr"] = m.group("addr")
            continue
        m = CHILD_SA_LINE.match(line)
        if m:
            current["children"][m.group("name")] = {
                "unique_id": int(m.group("uid")),
                "reqid": int(m.group("reqid")),
                "state": m.group("state"),
            }
    return sas


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class SwanctlBackend(IKEDaemonBackend):
    """Drives charon through swanctl; the rendered conf file is the daemon's record."""

    def __init__(self, config: BridgeConfig, logger: logging.Logger):
        super().__init__(config, logger)
        self.conf_dir = Path(config.conf_dir)
        self.conf_file = self.conf_dir / CONF_FILE
        self.secrets_dir = self.conf_dir / SECRETS_DIR
        # Secret-free copies; PSKs only live in the secrets files
        self._configs: Dict[str, ConnectionConfig] = {}
        self._sas: Dict[str, dict] = {}
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="extsock-dpd")

    def run_swanctl(self, args: List[str], timeout: float = None) -> str:
        """Executes swanctl and returns stdout. Raises DaemonApiError on any failure."""
        cmd = [self.config.swanctl_path] + args
        timeout = timeout or self.config.command_timeout
        self.logger.debug(f"Executing: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise DaemonApiError(f"swanctl {args[0]} timed out after {timeout}s")
        except OSError as e:
            raise DaemonApiError(f"Cannot execute {cmd[0]}: {e}")

        if result.returncode != 0:
            error = (result.stderr or result.stdout).strip()
            raise DaemonApiError(f"swanctl {args[0]} failed ({result.returncode}): {error}")
        return result.stdout

    def _generate_swanctl_conf(self) -> str:
        lines = ["# Generated by extsock, changes are overwritten", "connections {"]
        for name in sorted(self._configs):
            lines.extend(self._render_connection(self._configs[name]))
        lines.append("}")
        lines.append(f"include {SECRETS_DIR}/*.conf")
        return "\n".join(lines) + "\n"

    def _render_connection(self, conn: ConnectionConfig) -> List[str]:
        lines = [
            f"    {conn.name} {{",
            f"        version = {conn.version}",
            f"        local_addrs = {','.join(conn.local_addrs)}",
            f"        remote_addrs = {','.join(conn.remote_addrs)}",
            f"        proposals = {','.join(conn.proposals)}",
        ]
        lines.extend(self._render_auth("local", conn.local_auth))
        lines.extend(self._render_auth("remote", conn.remote_auth))
        if conn.children:
            lines.append("        children {")
            for child in conn.children:
                volume = []
                if child.lifetime.rekey_bytes:
                    volume.append(f"                rekey_bytes = {child.lifetime.rekey_bytes}")
                if child.lifetime.life_bytes:
                    volume.append(f"                life_bytes = {child.lifetime.life_bytes}")
                lines.extend([
                    f"            {child.name} {{",
                    f"                local_ts = {','.join(child.local_ts) or 'dynamic'}",
                    f"                remote_ts = {','.join(child.remote_ts) or 'dynamic'}",
                    f"                esp_proposals = {','.join(child.esp_proposals)}",
                    f"                start_action = {child.start_action}",
                    f"                dpd_action = {child.dpd_action}",
                    f"                rekey_time = {child.lifetime.rekey_time}s",
                    f"                life_time = {child.lifetime.life_time}s",
                    *volume,
                    "            }",
                ])
            lines.append("        }")
        lines.append("    }")
        return lines

    def _render_auth(self, section: str, auth: AuthConfig) -> List[str]:
        lines = [
            f"        {section} {{",
            f"            auth = {auth.method}",
            f"            id = {auth.id}",
        ]
        if auth.certs:
            lines.append(f"            certs = {','.join(auth.certs)}")
        lines.append("        }")
        return lines

    def _write_secrets(self, conn: ConnectionConfig):
        entries = []
        for section, auth in (("local", conn.local_auth), ("remote", conn.remote_auth)):
            if auth.secret is None:
                continue
            entries.extend([
                f"    ike-{conn.name}-{section} {{",
                f"        id = {auth.id}",
                f"        secret = {_quote(auth.secret)}",
                "    }",
            ])
        path = self.secrets_dir / f"{conn.name}.conf"
        if not entries:
            path.unlink(missing_ok=True)
            return
        self.secrets_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write("secrets {\n" + "\n".join(entries) + "\n}\n")

    def _reload(self):
        try:
            self.conf_dir.mkdir(parents=True, exist_ok=True)
            self.conf_file.write_text(self._generate_swanctl_conf())
        except OSError as e:
            raise DaemonApiError(f"Cannot write {self.conf_file}: {e}")
        self.run_swanctl(["--load-all", "--noprompt", "--file", str(self.conf_file)])

    def apply(self, config: ConnectionConfig):
        with self._lock:
            previous = self._configs.get(config.name)
            try:
                self._write_secrets(config)
            except OSError as e:
                raise DaemonApiError(f"Cannot write secrets for '{config.name}': {e}")
            self._configs[config.name] = replace(
                config,
                local_auth=replace(config.local_auth, secret=None),
                remote_auth=replace(config.remote_auth, secret=None),
            )
            try:
                self._reload()
            except DaemonApiError:
                if previous is None:
                    del self._configs[config.name]
                else:
                    self._configs[config.name] = previous
                raise
        self.logger.info(f"Connection '{config.name}' loaded into charon")

    def remove(self, name: str):
        with self._lock:
            if name not in self._configs:
                raise NotFound(f"Peer config '{name}' not found")
            try:
                self.run_swanctl(["--terminate", "--ike", name, "--force"])
            except DaemonApiError as e:
                self.logger.debug(f"No IKE_SA to terminate for '{name}': {e}")
            del self._configs[name]
            (self.secrets_dir / f"{name}.conf").unlink(missing_ok=True)
            self._reload()
        self.logger.info(f"Connection '{name}' unloaded")

    def has_ike_sa(self, name: str) -> bool:
        try:
            output = self.run_swanctl(["--list-sas", "--ike", name, "--noblock"])
        except DaemonApiError as e:
            self.logger.warning(f"Cannot list IKE_SAs: {e}")
            return False
        return name in parse_list_sas(output)

    def start_dpd(self, name: str) -> Future:
        # swanctl has no dedicated liveness trigger; a forced IKE rekey needs the peer to answer
        return self._executor.submit(self.run_swanctl, ["--rekey", "--ike", name])

    def failover(self, name: str, address: str):
        with self._lock:
            conn = self._configs.get(name)
            if conn is None:
                raise DaemonApiError(f"Peer config '{name}' not loaded")
            addrs = (address,) + tuple(a for a in conn.remote_addrs if a != address)
            self._configs[name] = replace(conn, remote_addrs=addrs)
            self._reload()
            children = [c.name for c in conn.children if c.start_action == StartAction.START.value]

        timeout = int(self.config.command_timeout)
        targets = children or [None]
        for child in targets:
            args = ["--initiate", "--ike", name, "--timeout", str(timeout)]
            if child:
                args += ["--child", child]
            self.run_swanctl(args, timeout=timeout + 5)
        self.logger.info(f"'{name}' re-initiated towards {address}")

    def poll(self):
        output = self.run_swanctl(["--list-sas", "--noblock"])
        with self._lock:
            managed = set(self._configs)
        current = {name: sa for name, sa in parse_list_sas(output).items() if name in managed}
        previous, self._sas = self._sas, current

        for name, sa in current.items():
            before = previous.get(name)
            established = sa["state"] == "ESTABLISHED"
            was_established = before is not None and before["state"] == "ESTABLISHED" \
                and before["unique_id"] == sa["unique_id"]
            if established and not was_established:
                self.notify("tunnel-up", name, ike_level=True, ike_sa_name=name,
                            unique_id=sa["unique_id"], remote_addr=sa["remote_addr"])
            elif not established and was_established:
                self.notify("tunnel-down", name, ike_level=True, ike_sa_name=name,
                            unique_id=sa["unique_id"], remote_addr=sa["remote_addr"],
                            established=True)
            old_children = before["children"] if before else {}
            for child, info in sa["children"].items():
                old = old_children.get(child)
                if info["state"] == "INSTALLED" and (old is None or old["state"] != "INSTALLED"):
                    self.notify("tunnel-up", name, ike_sa_name=name, child_sa_name=child,
                                reqid=info["reqid"], remote_addr=sa["remote_addr"])
            for child, old in old_children.items():
                if old["state"] == "INSTALLED" and sa["children"].get(child, {}).get("state") != "INSTALLED":
                    self.notify("tunnel-down", name, ike_sa_name=name, child_sa_name=child, reqid=old["reqid"])

        for name, before in previous.items():
            if name in current:
                continue
            for child, old in before["children"].items():
                if old["state"] == "INSTALLED":
                    self.notify("tunnel-down", name, ike_sa_name=name, child_sa_name=child, reqid=old["reqid"])
            self.notify("tunnel-down", name, ike_level=True, ike_sa_name=name,
                        unique_id=before["unique_id"], remote_addr=before["remote_addr"],
                        established=before["state"] == "ESTABLISHED")

    def cleanup(self):
        self.logger.info("Unloading extsock connections...")
        self._executor.shutdown(wait=False)
        with self._lock:
            for name in list(self._configs):
                try:
                    self.run_swanctl(["--terminate", "--ike", name, "--force"])
                except DaemonApiError as e:
                    self.logger.debug(f"Terminate '{name}' skipped: {e}")
                (self.secrets_dir / f"{name}.conf").unlink(missing_ok=True)
            self._configs.clear()
            if self.conf_file.exists():
                try:
                    self._reload()
                except DaemonApiError as e:
                    self.logger.warning(f"Failed to unload connections: {e}")
