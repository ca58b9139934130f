import json
import ipaddress
import os
import re
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, Tuple, Union

import yaml

from extsock.errors import ValidationError

DEFAULT_SOCKET_PATH = "/tmp/strongswan_extsock.sock"
DEFAULT_MAX_RETRIES = 5

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
HOSTNAME_PATTERN = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*\.?$"
)
MAX_NAME_LENGTH = 64


class AuthMethod(Enum):
    PSK = "psk"
    PUBKEY = "pubkey"


class StartAction(Enum):
    NONE = "none"
    TRAP = "trap"
    START = "start"


class DpdAction(Enum):
    NONE = "none"
    CLEAR = "clear"
    TRAP = "trap"
    RESTART = "restart"


# Older clients send the charon action names for start_action
START_ACTION_ALIASES = {
    "clear": "trap",
    "hold": "trap",
    "restart": "start",
}


@dataclass(frozen=True)
class AuthConfig:
    method: str
    id: str
    secret: Optional[str] = field(default=None, repr=False)
    certs: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = {"auth": self.method, "id": self.id}
        if self.secret is not None:
            data["secret"] = self.secret
        if self.certs:
            data["certs"] = list(self.certs)
        return data


@dataclass(frozen=True)
class LifetimeConfig:
    rekey_time: int = 3600
    life_time: int = 7200
    rekey_bytes: Optional[int] = None  # None leaves the volume limit to charon
    life_bytes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class ChildConfig:
    name: str
    local_ts: Tuple[str, ...] = ()
    remote_ts: Tuple[str, ...] = ()
    esp_proposals: Tuple[str, ...] = ("default",)
    start_action: str = StartAction.NONE.value
    dpd_action: str = DpdAction.NONE.value
    lifetime: LifetimeConfig = LifetimeConfig()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "local_ts": list(self.local_ts),
            "remote_ts": list(self.remote_ts),
            "esp_proposals": list(self.esp_proposals),
            "start_action": self.start_action,
            "dpd_action": self.dpd_action,
            "lifetime": self.lifetime.to_dict(),
        }


@dataclass(frozen=True)
class ConnectionConfig:
    name: str
    remote_addrs: Tuple[str, ...]
    local_auth: AuthConfig
    remote_auth: AuthConfig
    local_addrs: Tuple[str, ...] = ("%any",)
    version: int = 0
    proposals: Tuple[str, ...] = ("default",)
    children: Tuple[ChildConfig, ...] = ()
    max_retries: Optional[int] = None

    @property
    def failover_eligible(self) -> bool:
        return len(self.remote_addrs) > 1

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "ike_cfg": {
                "local_addrs": list(self.local_addrs),
                "remote_addrs": list(self.remote_addrs),
                "version": self.version,
                "proposals": list(self.proposals),
            },
            "local_auth": self.local_auth.to_dict(),
            "remote_auth": self.remote_auth.to_dict(),
            "children": [c.to_dict() for c in self.children],
        }
        if self.max_retries is not None:
            data["max_retries"] = self.max_retries
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionConfig":
        if not isinstance(data, dict):
            raise ValidationError("", "Connection document must be a JSON object")

        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ValidationError("name", "Connection name is required")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError("name", f"Connection name too long (max {MAX_NAME_LENGTH} characters)")
        if not NAME_PATTERN.match(name):
            raise ValidationError("name", "Only alphanumeric characters, '_', '-' and '.' are allowed")

        # IKE section is either nested under ike_cfg or given at the top level
        ike_data = data.get("ike_cfg")
        prefix = "ike_cfg."
        if ike_data is None:
            ike_data, prefix = data, ""
        elif not isinstance(ike_data, dict):
            raise ValidationError("ike_cfg", "Must be an object")

        remote_addrs = _parse_addrs(ike_data.get("remote_addrs"), prefix + "remote_addrs", allow_any=False)
        if "local_addrs" in ike_data:
            local_addrs = _parse_addrs(ike_data["local_addrs"], prefix + "local_addrs", allow_any=True)
        else:
            local_addrs = ("%any",)

        version = ike_data.get("version", 0)
        if isinstance(version, bool) or version not in (0, 1, 2):
            raise ValidationError(prefix + "version", f"Unsupported IKE version: {version!r}")

        proposals = _parse_strings(ike_data.get("proposals"), prefix + "proposals") or ("default",)

        local_auth = _parse_auth(data.get("local_auth"), "local_auth")
        remote_auth = _parse_auth(data.get("remote_auth"), "remote_auth")

        children_data = data.get("children", [])
        if not isinstance(children_data, list):
            raise ValidationError("children", "Must be a list")
        children = []
        seen = set()
        for i, child_data in enumerate(children_data):
            child = _parse_child(child_data, f"children[{i}]")
            if child.name in seen:
                raise ValidationError(f"children[{i}].name", f"Duplicate child name: {child.name}")
            seen.add(child.name)
            children.append(child)

        max_retries = data.get("max_retries")
        if max_retries is not None and (isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0):
            raise ValidationError("max_retries", "Must be a non-negative integer")

        return cls(
            name=name,
            remote_addrs=remote_addrs,
            local_auth=local_auth,
            remote_auth=remote_auth,
            local_addrs=local_addrs,
            version=version,
            proposals=proposals,
            children=tuple(children),
            max_retries=max_retries,
        )


def parse(data: Union[bytes, str, Dict[str, Any]]) -> ConnectionConfig:
    """Translates a connection document into a ConnectionConfig.

    Raises ValidationError carrying the path of the first offending field.
    """
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8", errors="replace")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValidationError("", f"Invalid JSON: {e}")
    return ConnectionConfig.from_dict(data)


def _is_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return bool(HOSTNAME_PATTERN.match(value)) and not value.replace(".", "").isdigit()


def _parse_addrs(value, path: str, allow_any: bool) -> Tuple[str, ...]:
    if value is None:
        raise ValidationError(path, "At least one address is required")
    # A single address may be given as a plain or comma separated string
    if isinstance(value, str):
        value = [v.strip() for v in value.split(",") if v.strip()]
    if not isinstance(value, list) or not value:
        raise ValidationError(path, "At least one address is required")
    addrs = []
    for i, addr in enumerate(value):
        if not isinstance(addr, str) or not addr.strip():
            raise ValidationError(f"{path}[{i}]", "Address must be a non-empty string")
        addr = addr.strip()
        if addr == "%any":
            if not allow_any:
                raise ValidationError(f"{path}[{i}]", "%any is not a valid remote gateway")
        elif not _is_address(addr):
            raise ValidationError(f"{path}[{i}]", f"Malformed address: {addr}")
        addrs.append(addr)
    return tuple(addrs)


def _parse_strings(value, path: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ValidationError(path, "Must be a list of strings")
    for i, item in enumerate(value):
        if not isinstance(item, str) or not item:
            raise ValidationError(f"{path}[{i}]", "Must be a non-empty string")
    return tuple(value)


def _parse_auth(value, path: str) -> AuthConfig:
    if value is None:
        raise ValidationError(path, "Authentication section is required")
    if not isinstance(value, dict):
        raise ValidationError(path, "Must be an object")

    method = value.get("auth")
    if not isinstance(method, str) or not method:
        raise ValidationError(f"{path}.auth", "Authentication method is required")
    if method not in [m.value for m in AuthMethod]:
        raise ValidationError(f"{path}.auth", f"Unsupported auth type: {method}")

    identity = value.get("id")
    if not isinstance(identity, str) or not identity:
        raise ValidationError(f"{path}.id", "Identity is required")

    secret = value.get("secret")
    if method == AuthMethod.PSK.value:
        if not isinstance(secret, str) or not secret:
            raise ValidationError(f"{path}.secret", "PSK authentication requires a secret")
    elif secret is not None:
        raise ValidationError(f"{path}.secret", "Secret is only valid for PSK authentication")

    certs = _parse_strings(value.get("certs"), f"{path}.certs")
    if certs and method != AuthMethod.PUBKEY.value:
        raise ValidationError(f"{path}.certs", "Certificates are only valid for pubkey authentication")

    return AuthConfig(method=method, id=identity, secret=secret, certs=certs)


def _parse_ts(value, path: str) -> Tuple[str, ...]:
    selectors = _parse_strings(value, path)
    for i, ts in enumerate(selectors):
        if ts == "dynamic":
            continue
        try:
            ipaddress.ip_network(ts, strict=False)
        except ValueError:
            raise ValidationError(f"{path}[{i}]", f"Invalid traffic selector: {ts}")
    return selectors


def _parse_child(value, path: str) -> ChildConfig:
    if not isinstance(value, dict):
        raise ValidationError(path, "Must be an object")

    name = value.get("name")
    if not isinstance(name, str) or not name:
        raise ValidationError(f"{path}.name", "Child name is required")
    if not NAME_PATTERN.match(name):
        raise ValidationError(f"{path}.name", "Only alphanumeric characters, '_', '-' and '.' are allowed")

    start_action = value.get("start_action", StartAction.NONE.value)
    if isinstance(start_action, str):
        start_action = START_ACTION_ALIASES.get(start_action, start_action)
    if start_action not in [a.value for a in StartAction]:
        raise ValidationError(f"{path}.start_action", f"Unknown action: {start_action}")

    dpd_action = value.get("dpd_action", DpdAction.NONE.value)
    if dpd_action not in [a.value for a in DpdAction]:
        raise ValidationError(f"{path}.dpd_action", f"Unknown action: {dpd_action}")

    lifetime = LifetimeConfig()
    lifetime_data = value.get("lifetime")
    if lifetime_data is not None:
        if not isinstance(lifetime_data, dict):
            raise ValidationError(f"{path}.lifetime", "Must be an object")
        for key in ("rekey_time", "life_time", "rekey_bytes", "life_bytes"):
            v = lifetime_data.get(key)
            if v is not None and (isinstance(v, bool) or not isinstance(v, int) or v <= 0):
                raise ValidationError(f"{path}.lifetime.{key}", "Must be a positive integer")
        lifetime = LifetimeConfig(
            rekey_time=lifetime_data.get("rekey_time", lifetime.rekey_time),
            life_time=lifetime_data.get("life_time", lifetime.life_time),
            rekey_bytes=lifetime_data.get("rekey_bytes"),
            life_bytes=lifetime_data.get("life_bytes"),
        )
        if lifetime.life_time <= lifetime.rekey_time:
            raise ValidationError(f"{path}.lifetime.life_time", "Must be greater than rekey_time")
        if lifetime.rekey_bytes and lifetime.life_bytes and lifetime.life_bytes <= lifetime.rekey_bytes:
            raise ValidationError(f"{path}.lifetime.life_bytes", "Must be greater than rekey_bytes")

    return ChildConfig(
        name=name,
        local_ts=_parse_ts(value.get("local_ts"), f"{path}.local_ts"),
        remote_ts=_parse_ts(value.get("remote_ts"), f"{path}.remote_ts"),
        esp_proposals=_parse_strings(value.get("esp_proposals"), f"{path}.esp_proposals") or ("default",),
        start_action=start_action,
        dpd_action=dpd_action,
        lifetime=lifetime,
    )


@dataclass
class BridgeConfig:
    socket_path: str = DEFAULT_SOCKET_PATH
    socket_mode: int = 0o660
    logging_level: str = "info"
    logging_type: str = "file"  # file, syslog, stdout
    log_file: Optional[str] = None
    backend: str = "swanctl"  # swanctl, memory
    max_retries: int = DEFAULT_MAX_RETRIES
    poll_interval: float = 5.0
    swanctl_path: str = "swanctl"
    conf_dir: str = "/etc/swanctl/conf.d/extsock"
    command_timeout: float = 30.0
    max_message_size: int = 1024 * 1024

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BridgeConfig':
        try:
            mode = data.get("socket_mode", "0660")
            if isinstance(mode, str):
                mode = int(mode, 8)

            return cls(
                socket_path=data.get("socket_path", DEFAULT_SOCKET_PATH),
                socket_mode=mode,
                logging_level=data.get("logging", "info"),
                logging_type=data.get("logging_type", "file"),
                log_file=data.get("log_file"),
                backend=data.get("backend", "swanctl"),
                max_retries=int(data.get("max_retries", DEFAULT_MAX_RETRIES)),
                poll_interval=float(data.get("poll_interval", 5)),
                swanctl_path=data.get("swanctl_path", "swanctl"),
                conf_dir=data.get("conf_dir", "/etc/swanctl/conf.d/extsock"),
                command_timeout=float(data.get("command_timeout", 30)),
                max_message_size=int(data.get("max_message_size", 1024 * 1024)),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ValueError(f"Config parsing error: {e}")

    def validate(self):
        if not self.socket_path:
            raise ValueError("socket_path is required")
        if self.logging_type not in ("file", "syslog", "stdout"):
            raise ValueError(f"Invalid logging_type: {self.logging_type}")
        if self.logging_level.lower() not in ("debug", "info", "warning", "error"):
            raise ValueError(f"Invalid logging level: {self.logging_level}")
        if self.backend not in ("swanctl", "memory"):
            raise ValueError(f"Unknown backend: {self.backend}")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.poll_interval <= 0 or self.command_timeout <= 0:
            raise ValueError("poll_interval and command_timeout must be positive")
        if self.max_message_size < 1024:
            raise ValueError("max_message_size must be at least 1024 bytes")


def load_config(file_path: str) -> BridgeConfig:
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Config file not found: {file_path}")

    content = Path(file_path).read_text()

    data = {}
    if file_path.endswith('.json'):
        data = json.loads(content)
    elif file_path.endswith('.yaml') or file_path.endswith('.yml'):
        data = yaml.safe_load(content)
    else:
        # Try JSON first
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            try:
                data = yaml.safe_load(content)
            except yaml.YAMLError:
                raise ValueError("Could not parse config as JSON or YAML.")

    config = BridgeConfig.from_dict(data or {})
    config.validate()
    return config
