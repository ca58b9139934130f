"""JSON command/result/event envelopes and stream framing for the control socket."""

import codecs
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from extsock.errors import DecodeError

MAX_MESSAGE_SIZE = 1024 * 1024  # 1 MiB


class CommandType(str, Enum):
    APPLY_CONFIGURATION = "apply-configuration"
    START_DPD = "start-dpd"
    REMOVE_CONFIGURATION = "remove-configuration"
    SUBSCRIBE = "subscribe"


class ResultCode(str, Enum):
    OK = "ok"
    MALFORMED_REQUEST = "malformed-request"
    CONFIG_INVALID = "config-invalid"
    DAEMON_API_ERROR = "daemon-api-error"
    NOT_FOUND = "not-found"
    RETRY_EXCEEDED = "retry-exceeded"
    BUSY = "busy"


class EventKind(str, Enum):
    TUNNEL_UP = "tunnel-up"
    TUNNEL_DOWN = "tunnel-down"
    CONFIG_APPLIED = "config-applied"
    ERROR = "error"


@dataclass(frozen=True)
class Command:
    type: CommandType
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def target(self) -> Optional[str]:
        """Connection name the command operates on, if any."""
        if self.type == CommandType.START_DPD:
            return self.body.get("ike_sa_name")
        return self.body.get("name")


@dataclass(frozen=True)
class Result:
    code: ResultCode = ResultCode.OK
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.code == ResultCode.OK

    @classmethod
    def success(cls) -> "Result":
        return cls()

    @classmethod
    def failure(cls, code, reason: str) -> "Result":
        return cls(code=ResultCode(code), reason=reason)

    @classmethod
    def from_error(cls, error) -> "Result":
        return cls.failure(error.code, error.message)


@dataclass(frozen=True)
class Event:
    kind: EventKind
    connection_name: str
    timestamp: float
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, kind, connection_name: str, **payload) -> "Event":
        return cls(kind=EventKind(kind), connection_name=connection_name,
                   timestamp=time.time(), payload=payload)


def decode(data: Union[bytes, str, Dict[str, Any]]) -> Command:
    """Decodes one request document into a Command.

    Unknown fields are carried along untouched; only the discriminator and
    the fields needed to route the command are checked here.
    """
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError:
            raise DecodeError("Request is not valid UTF-8")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise DecodeError("Request must be a JSON object")

    discriminator = data.get("command", data.get("type"))
    if not isinstance(discriminator, str):
        raise DecodeError("Missing 'command' field")
    try:
        command_type = CommandType(discriminator)
    except ValueError:
        raise DecodeError(f"Unknown command: {discriminator}")

    body = {k: v for k, v in data.items() if k not in ("command", "type")}
    if command_type == CommandType.START_DPD:
        _require_name(body, "ike_sa_name")
    elif command_type == CommandType.REMOVE_CONFIGURATION:
        _require_name(body, "name")
    return Command(type=command_type, body=body)


def _require_name(body: Dict[str, Any], key: str):
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise DecodeError(f"'{key}' must be a non-empty string")


def encode(value: Union[Event, Result]) -> bytes:
    if isinstance(value, Result):
        if value.ok:
            doc = {"result": "ok"}
        else:
            doc = {"result": "fail", "code": value.code.value, "reason": value.reason}
    elif isinstance(value, Event):
        doc = dict(value.payload)
        doc.update({
            "event": value.kind.value,
            "connection_name": value.connection_name,
            "timestamp": datetime.fromtimestamp(value.timestamp, timezone.utc).isoformat(),
        })
    else:
        raise TypeError(f"Cannot encode {type(value).__name__}")
    return (json.dumps(doc, separators=(",", ":"), default=str) + "\n").encode("utf-8")


class FrameBuffer:
    """Splits a byte stream into complete top-level JSON objects.

    Documents may arrive split across reads or back-to-back in one read.
    Boundaries are found by tracking brace depth outside string literals.
    """

    def __init__(self, max_size: int = MAX_MESSAGE_SIZE):
        self.max_size = max_size
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._text = ""
        self._reset_scan()

    def _reset_scan(self):
        self._pos = 0
        self._depth = 0
        self._in_string = False
        self._escaped = False
        self._end = None  # end offset of the first complete object, once found

    def reset(self):
        self._decoder.reset()
        self._text = ""
        self._reset_scan()

    def __len__(self):
        return len(self._text)

    def feed(self, data: bytes):
        """Buffers a chunk; complete documents are taken out with next_document()."""
        try:
            self._text += self._decoder.decode(data)
        except UnicodeDecodeError:
            self.reset()
            raise DecodeError("Request is not valid UTF-8")
        if len(self._text) > self.max_size and self._find_end() is None:
            size = len(self._text)
            self.reset()
            raise DecodeError(f"Request exceeds {self.max_size} bytes (buffered {size})")

    def next_document(self) -> Optional[Dict[str, Any]]:
        """Returns the next complete object, or None when more bytes are needed.

        Raises DecodeError after discarding the offending text.
        """
        stripped = self._text.lstrip()
        if len(stripped) != len(self._text):
            self._text = stripped
            self._reset_scan()
        if not self._text:
            return None

        if self._text[0] != "{":
            start = self._text.find("{", 1)
            junk = self._text if start < 0 else self._text[:start]
            self._text = "" if start < 0 else self._text[start:]
            self._reset_scan()
            raise DecodeError(f"Expected a JSON object, got {junk[:32]!r}")

        end = self._find_end()
        if end is None:
            if len(self._text) > self.max_size:
                size = len(self._text)
                self.reset()
                raise DecodeError(f"Request exceeds {self.max_size} bytes (buffered {size})")
            return None
        raw, self._text = self._text[:end], self._text[end:]
        self._reset_scan()
        if end > self.max_size:
            raise DecodeError(f"Request exceeds {self.max_size} bytes ({end})")
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Invalid JSON: {e}")

    def _find_end(self) -> Optional[int]:
        if self._end is not None:
            return self._end
        text = self._text
        while self._pos < len(text):
            ch = text[self._pos]
            self._pos += 1
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif ch == "\\":
                    self._escaped = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                self._in_string = True
            elif ch in "{[":
                self._depth += 1
            elif ch in "}]":
                self._depth -= 1
                if self._depth == 0:
                    self._end = self._pos
                    return self._end
        return None
