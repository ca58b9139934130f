"""Unix-domain control socket: one thread per client connection."""

import logging
import os
import socketserver
import stat
import threading

from extsock.codec import CommandType, FrameBuffer, Result, decode, encode
from extsock.dispatcher import CommandDispatcher
from extsock.errors import DecodeError, StartupError
from extsock.publisher import ClientChannel, EventPublisher

RECV_SIZE = 4096


class ControlRequestHandler(socketserver.BaseRequestHandler):
    server: "ControlSocketServer"

    def setup(self):
        self.channel = ClientChannel(self.request, name=f"client-{threading.get_ident()}")
        self.frames = FrameBuffer(self.server.max_message_size)
        self.logger = self.server.logger

    def handle(self):
        self.logger.debug(f"{self.channel.name} connected")
        while True:
            try:
                data = self.request.recv(RECV_SIZE)
            except OSError as e:
                self.logger.debug(f"{self.channel.name} receive error: {e}")
                break
            if not data:
                self.logger.debug(f"{self.channel.name} disconnected")
                break
            try:
                self.frames.feed(data)
            except DecodeError as e:
                if not self._reply(Result.from_error(e)):
                    break
                continue
            if not self._drain():
                break

    def _drain(self) -> bool:
        """Handles every complete document buffered so far; False once the peer is gone."""
        while True:
            try:
                doc = self.frames.next_document()
                if doc is None:
                    return True
                command = decode(doc)
            except DecodeError as e:
                self.logger.info(f"{self.channel.name} sent a malformed request: {e.message}")
                if not self._reply(Result.from_error(e)):
                    return False
                continue

            # Runs to completion even if the client goes away meanwhile
            result = self.server.dispatcher.dispatch(command)
            if command.type == CommandType.SUBSCRIBE and result.ok:
                self.server.publisher.subscribe(self.channel)
            if not self._reply(result):
                return False

    def _reply(self, result: Result) -> bool:
        try:
            self.channel.send(encode(result))
            return True
        except (OSError, ConnectionError) as e:
            self.logger.info(f"Result undeliverable to {self.channel.name}: {e}")
            return False

    def finish(self):
        self.server.publisher.unsubscribe(self.channel)
        self.channel.close()


class ControlSocketServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True
    block_on_close = False

    def __init__(self, socket_path: str, dispatcher: CommandDispatcher, publisher: EventPublisher,
                 socket_mode: int = 0o660, max_message_size: int = 1024 * 1024,
                 logger: logging.Logger = None):
        self.socket_path = socket_path
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.max_message_size = max_message_size
        self.logger = logger or logging.getLogger("extsock.server")
        self._thread = None

        try:
            _remove_stale_socket(socket_path)
            super().__init__(socket_path, ControlRequestHandler)
        except OSError as e:
            raise StartupError(f"Failed to bind control socket {socket_path}: {e}")
        try:
            os.chmod(socket_path, socket_mode)
        except OSError as e:
            self.server_close()
            raise StartupError(f"Failed to set mode on {socket_path}: {e}")
        self.logger.info(f"Control socket listening on {socket_path}")

    def serve_in_thread(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.serve_forever, name="extsock-server", daemon=True)
        self._thread.start()
        return self._thread

    def close(self):
        if self._thread:
            self.shutdown()
            self._thread.join(timeout=2)
            self._thread = None
        self.server_close()
        _remove_stale_socket(self.socket_path)
        self.logger.info("Control socket closed")


def _remove_stale_socket(path: str):
    try:
        if stat.S_ISSOCK(os.stat(path).st_mode):
            os.unlink(path)
    except FileNotFoundError:
        pass
