"""Fan-out of lifecycle events to every attached socket client."""

import logging
import queue
import select
import socket
import threading
import time
from typing import Callable, Dict, List, Optional

from extsock.base import Notification
from extsock.codec import Event, encode

SEND_TIMEOUT = 5.0
SUBSCRIBER_QUEUE_SIZE = 256


class ClientChannel:
    """Write side of one client connection.

    Results and events share the socket, so every write holds the
    channel lock to keep documents whole. A peer that stops reading for
    send_timeout seconds is treated as gone.
    """

    def __init__(self, sock: socket.socket, name: str = "client", send_timeout: float = SEND_TIMEOUT):
        self.sock = sock
        self.name = name
        self.send_timeout = send_timeout
        self.closed = False
        self._lock = threading.Lock()

    def send(self, data: bytes):
        with self._lock:
            if self.closed:
                raise ConnectionError(f"{self.name} is closed")
            try:
                self._send_all(data)
            except OSError:
                self.closed = True
                raise

    def _send_all(self, data: bytes):
        view = memoryview(data)
        deadline = time.monotonic() + self.send_timeout
        while view:
            try:
                sent = self.sock.send(view, socket.MSG_DONTWAIT)
            except BlockingIOError:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not select.select([], [self.sock], [], remaining)[1]:
                    raise TimeoutError(f"{self.name} stopped reading for {self.send_timeout}s")
                continue
            view = view[sent:]

    def close(self):
        with self._lock:
            self.closed = True

    def __repr__(self):
        return f"<ClientChannel {self.name}>"


class Subscription:
    """Bounded outbound queue drained by a writer thread for one subscriber."""

    def __init__(self, handle, on_error: Callable, maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self.handle = handle
        self._on_error = on_error
        self._queue: "queue.Queue[Optional[bytes]]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._idle = threading.Condition()
        self._pending = 0
        self._thread = threading.Thread(target=self._run, name=f"extsock-writer-{handle!r}", daemon=True)
        self._thread.start()

    def offer(self, data: bytes) -> bool:
        """Queues data without blocking; False when the queue is full or closed."""
        if self._closed.is_set():
            return False
        with self._idle:
            self._pending += 1
        try:
            self._queue.put_nowait(data)
        except queue.Full:
            self._done()
            return False
        return True

    def _done(self, count: int = 1):
        with self._idle:
            self._pending = max(0, self._pending - count)
            if self._pending == 0:
                self._idle.notify_all()

    def _run(self):
        while True:
            data = self._queue.get()
            if data is None or self._closed.is_set():
                break
            try:
                self.handle.send(data)
            except (OSError, ConnectionError) as e:
                self._on_error(self, e)
                break
            finally:
                self._done()
        self._drop_pending()

    def _drop_pending(self):
        with self._idle:
            self._pending = 0
            self._idle.notify_all()

    def flush(self, timeout: float = None) -> bool:
        """Waits until everything queued so far was written or dropped."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def close(self):
        self._closed.set()
        self._drop_pending()
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass  # the writer sees _closed after its current item

    def __repr__(self):
        return f"<Subscription {self.handle!r}>"


class EventPublisher:
    def __init__(self, logger: logging.Logger = None, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.logger = logger or logging.getLogger("extsock.publisher")
        self.queue_size = queue_size
        self._subscribers: Dict[object, Subscription] = {}
        self._lock = threading.Lock()
        self._listeners: List[Callable[[Event], None]] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, handle):
        with self._lock:
            if handle in self._subscribers:
                return
            self._subscribers[handle] = Subscription(handle, self._writer_failed, self.queue_size)
        self.logger.debug(f"Subscribed {handle!r}")

    def unsubscribe(self, handle):
        with self._lock:
            subscription = self._subscribers.pop(handle, None)
        if subscription is not None:
            subscription.close()
            self.logger.debug(f"Unsubscribed {handle!r}")

    def _writer_failed(self, subscription: Subscription, error: Exception):
        self.logger.info(f"Dropping subscriber {subscription.handle!r}: {error}")
        with self._lock:
            if self._subscribers.get(subscription.handle) is subscription:
                del self._subscribers[subscription.handle]
        subscription.close()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def add_listener(self, callback: Callable[[Event], None]):
        self._listeners.append(callback)

    def publish(self, event: Event) -> int:
        """Queues the event for every subscriber; returns how many accepted it.

        Never blocks on a subscriber: one whose queue is full is dropped.
        """
        data = encode(event)
        with self._lock:
            targets = list(self._subscribers.items())

        queued = 0
        for handle, subscription in targets:
            if subscription.offer(data):
                queued += 1
            else:
                self.logger.warning(f"Dropping subscriber {handle!r}: outbound queue full")
                self.unsubscribe(handle)

        self.logger.debug(f"Event {event.kind.value} for '{event.connection_name}' queued for {queued} subscriber(s)")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                self.logger.error(f"Event listener failed for {event.kind.value}: {e}")
        return queued

    def flush(self, timeout: float = 2.0) -> bool:
        """Waits for every subscriber to write out what was queued so far."""
        with self._lock:
            targets = list(self._subscribers.values())
        deadline = time.monotonic() + timeout
        return all([s.flush(max(0.0, deadline - time.monotonic())) for s in targets])

    def pump(self, source: "queue.Queue[Notification]", stop: threading.Event, timeout: float = 0.5):
        """Publishes daemon notifications from source until stop is set."""
        while not stop.is_set():
            try:
                notification = source.get(timeout=timeout)
            except queue.Empty:
                continue
            payload = dict(notification.payload)
            payload["scope"] = "ike" if notification.ike_level else "child"
            event = Event.create(notification.kind, notification.connection_name, **payload)
            self.publish(event)

    def start_pump(self, source: "queue.Queue[Notification]"):
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.pump, args=(source, self._stop), name="extsock-publisher", daemon=True
        )
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None
        with self._lock:
            subscriptions = list(self._subscribers.values())
            self._subscribers.clear()
        for subscription in subscriptions:
            subscription.close()
