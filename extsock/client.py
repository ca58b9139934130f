"""Command line client for the extsock control socket."""

import argparse
import json
import socket
import sys
from pathlib import Path

from extsock.codec import FrameBuffer
from extsock.config_schema import DEFAULT_SOCKET_PATH
from extsock.errors import DecodeError

BUF_SIZE = 4096


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="extsock-client",
        description="Send commands to the extsock bridge and watch tunnel events.",
    )
    p.add_argument("--socket", default=DEFAULT_SOCKET_PATH,
                   help=f"Control socket path (default: {DEFAULT_SOCKET_PATH})")
    sub = p.add_subparsers(dest="action", required=True)

    apply_p = sub.add_parser("apply-config", help="Apply a connection document")
    apply_p.add_argument("file", type=Path, help="JSON connection document")
    apply_p.add_argument("--wait-events", action="store_true", help="Stay attached and print events")

    dpd_p = sub.add_parser("start-dpd", help="Probe the peer of an IKE_SA")
    dpd_p.add_argument("ike_sa_name")
    dpd_p.add_argument("--wait-events", action="store_true", help="Stay attached and print events")

    remove_p = sub.add_parser("remove-config", help="Remove a connection")
    remove_p.add_argument("name")

    sub.add_parser("monitor-events", help="Print events until the bridge closes the socket")
    return p


def connect_socket(path: str) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.connect(path)
    return sock


def read_documents(sock: socket.socket, frames: FrameBuffer):
    """Yields decoded documents until the server closes the connection."""
    while True:
        while True:
            try:
                doc = frames.next_document()
            except DecodeError as e:
                print(f"[raw]   {e.message}")
                continue
            if doc is None:
                break
            yield doc
        data = sock.recv(BUF_SIZE)
        if not data:
            return
        try:
            frames.feed(data)
        except DecodeError as e:
            print(f"[raw]   {e.message}")


def request(sock: socket.socket, frames: FrameBuffer, doc: dict) -> dict:
    sock.sendall(json.dumps(doc).encode("utf-8"))
    for reply in read_documents(sock, frames):
        if "result" in reply:
            return reply
        print_event(reply)
    raise ConnectionError("Connection closed by server before a result arrived")


def print_event(doc: dict):
    if "event" in doc:
        print(f"[event] {doc['event']} {doc.get('connection_name', '')}")
    print(f"[json]  {json.dumps(doc)}")


def print_result(action: str, reply: dict) -> bool:
    if reply.get("result") == "ok":
        print(f"[cmd] {action}: ok")
        return True
    print(f"[cmd] {action}: failed ({reply.get('code', 'unknown')}): {reply.get('reason', '')}")
    return False


def monitor_events(sock: socket.socket, frames: FrameBuffer):
    for doc in read_documents(sock, frames):
        print_event(doc)
    print("[info] Connection closed by server.")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        sock = connect_socket(args.socket)
    except OSError as e:
        print(f"connect: {e}", file=sys.stderr)
        return 1

    frames = FrameBuffer()
    wait_events = getattr(args, "wait_events", False) or args.action == "monitor-events"
    try:
        if wait_events:
            if not print_result("subscribe", request(sock, frames, {"command": "subscribe"})):
                return 1

        if args.action == "apply-config":
            try:
                doc = json.loads(args.file.read_text())
            except (OSError, json.JSONDecodeError) as e:
                print(f"[error] Cannot read {args.file}: {e}", file=sys.stderr)
                return 1
            doc["command"] = "apply-configuration"
            ok = print_result("apply-configuration", request(sock, frames, doc))
        elif args.action == "start-dpd":
            ok = print_result("start-dpd", request(sock, frames, {"command": "start-dpd", "ike_sa_name": args.ike_sa_name}))
        elif args.action == "remove-config":
            ok = print_result("remove-configuration", request(sock, frames, {"command": "remove-configuration", "name": args.name}))
        else:
            ok = True

        if wait_events:
            monitor_events(sock, frames)
        return 0 if ok else 1
    except (OSError, ConnectionError) as e:
        print(f"[error] {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    finally:
        sock.close()


if __name__ == "__main__":
    sys.exit(main())
