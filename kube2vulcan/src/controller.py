from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterable

from kube2vulcan.src.errors import DecodeError, StreamError
from kube2vulcan.src.events import (
    ADDED,
    DELETED,
    MODIFIED,
    POD,
    PodSnapshot,
    ResourceSnapshot,
    WatchEvent,
    decode_event,
)
from kube2vulcan.src.kube import WatchStream, WatchStreamConnector
from kube2vulcan.src.metrics import METRICS
from kube2vulcan.src.ports import PortSelector
from kube2vulcan.src.store import DIRECT, VulcandRegistry
from kube2vulcan.src.translator import Endpoint

RUNNING_PHASE = "Running"
DEFAULT_RECONNECT_DELAY_SECONDS = 5.0


class ResourceHandler:
    """Applies watch events for pods and services to vulcand.

    ``ADDED`` and ``MODIFIED`` register one endpoint per eligible port;
    ``DELETED`` removes the resource's records. Any other event type is
    dropped.
    """

    def __init__(
        self,
        registry: VulcandRegistry,
        selector: PortSelector,
        unregister_strategy: str = DIRECT,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.selector = selector
        self.unregister_strategy = unregister_strategy
        self.logger = logger or logging.getLogger(__name__)

    def handle_event(self, event: WatchEvent) -> int:
        """Process one event; returns the number of endpoints registered or unregistered."""
        METRICS.events_total.labels(kind=event.kind, action=event.action or "UNKNOWN").inc()

        if event.action in {ADDED, MODIFIED}:
            return self.register_resource(event.kind, event.snapshot)
        if event.action == DELETED:
            return self.unregister_resource(event.kind, event.snapshot)

        self.logger.debug(
            "Dropping %s event %r for %s/%s",
            event.kind,
            event.action,
            event.snapshot.namespace,
            event.snapshot.name,
        )
        return 0

    def register_resource(self, kind: str, snapshot: ResourceSnapshot) -> int:
        if isinstance(snapshot, PodSnapshot) and snapshot.phase != RUNNING_PHASE:
            self.logger.debug(
                "Skipping pod %s/%s in phase %s",
                snapshot.namespace,
                snapshot.name,
                snapshot.phase,
            )
            return 0

        if not snapshot.address:
            self.logger.debug(
                "Skipping %s %s/%s without an address", kind, snapshot.namespace, snapshot.name
            )
            return 0

        self.logger.info("Inspect %s %s/%s", kind, snapshot.namespace, snapshot.name)
        ports = self.selector.select(snapshot)
        if not ports:
            self.logger.debug(
                "No proxyable port on %s %s/%s", kind, snapshot.namespace, snapshot.name
            )
            return 0

        registered = 0
        for endpoint in self.registry.translator.endpoints_for(snapshot, ports):
            if self.registry.register(endpoint):
                registered += 1
                METRICS.registrations_total.labels(kind=kind).inc()
        return registered

    def unregister_resource(self, kind: str, snapshot: ResourceSnapshot) -> int:
        METRICS.unregistrations_total.labels(kind=kind).inc()

        if self.unregister_strategy != DIRECT:
            return self.registry.unregister_resource(snapshot.namespace, snapshot.name)

        if not self.selector.includes_port_in_identifier:
            self.registry.unregister(Endpoint(name=snapshot.name, namespace=snapshot.namespace))
            return 1

        ports = self.selector.select(snapshot)
        for port in ports:
            self.registry.unregister(
                Endpoint(name=snapshot.name, namespace=snapshot.namespace, port=port)
            )
        return len(ports)


class ResourceWatcher:
    """Reads one resource kind's watch stream and feeds decoded events to a handler.

    A watcher is restartable: each call to :meth:`listen` consumes one stream
    until it fails or is stopped.
    """

    def __init__(
        self,
        kind: str,
        connector: WatchStreamConnector,
        handler: ResourceHandler,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.connector = connector
        self.handler = handler
        self.logger = logger or logging.getLogger(__name__)
        self.listening = threading.Event()
        self._stream: WatchStream | None = None
        self._stream_lock = threading.Lock()

    def open(self) -> WatchStream:
        """Open a new stream; :class:`StreamOpenError` propagates to the caller."""
        return self.connector.open()

    def process_message(self, raw: str) -> None:
        try:
            event = decode_event(raw, self.kind)
        except DecodeError as exc:
            METRICS.decode_errors_total.labels(kind=self.kind).inc()
            self.logger.warning("Dropping undecodable %s watch message: %s", self.kind, exc)
            return
        self.handler.handle_event(event)

    def listen(self, stream: WatchStream, stop_event: threading.Event) -> bool:
        """Consume ``stream`` sequentially until it fails or ``stop_event`` is set.

        Returns True when the stream failed and should be reopened.
        """
        with self._stream_lock:
            self._stream = stream
        self.listening.set()
        METRICS.watch_listening.labels(kind=self.kind).set(1)
        self.logger.info("Listening for %ss", self.kind)

        failed = False
        try:
            while not stop_event.is_set():
                raw = stream.next_message()
                self.process_message(raw)
        except StreamError as exc:
            failed = not stop_event.is_set()
            if failed:
                self.logger.error("Error reading %s watch stream: %s", self.kind, exc)
        except Exception:
            failed = not stop_event.is_set()
            if failed:
                self.logger.exception("Unexpected error in %s watch loop", self.kind)
        finally:
            self.listening.clear()
            METRICS.watch_listening.labels(kind=self.kind).set(0)
            with self._stream_lock:
                self._stream = None
            stream.close()

        if failed:
            METRICS.watch_errors_total.labels(kind=self.kind).inc()
        return failed

    def stop(self) -> None:
        """Close the active stream, unblocking a pending read."""
        with self._stream_lock:
            stream = self._stream
        if stream is not None:
            stream.close()


class WatchSupervisor:
    """Runs one watcher thread per resource kind and restarts the ones that fail.

    Per kind the cycle is ``connecting -> listening -> failed -> connecting``:
    after a failure the watcher's own thread waits a fixed delay, with no
    backoff growth and no retry ceiling, then reopens its stream. The sibling
    watcher keeps running throughout. Failure to open a stream is fatal and
    propagates out of :meth:`run_forever`.
    """

    def __init__(
        self,
        watchers: Iterable[ResourceWatcher],
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY_SECONDS,
        poll_interval: float = 1.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.watchers = {watcher.kind: watcher for watcher in watchers}
        self.reconnect_delay = reconnect_delay
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)
        self._threads: dict[str, threading.Thread] = {}

    def is_ready(self) -> bool:
        return all(watcher.listening.is_set() for watcher in self.watchers.values())

    def _watch(
        self,
        watcher: ResourceWatcher,
        stream: WatchStream,
        stop_event: threading.Event,
        fatal: queue.Queue[Exception],
    ) -> None:
        while watcher.listen(stream, stop_event):
            self.logger.info(
                "Reconnecting %s watch in %.0fs", watcher.kind, self.reconnect_delay
            )
            if stop_event.wait(timeout=self.reconnect_delay):
                return
            METRICS.watch_reconnects_total.labels(kind=watcher.kind).inc()
            try:
                stream = watcher.open()
            except Exception as exc:
                fatal.put(exc)
                return

    def _start(
        self,
        watcher: ResourceWatcher,
        stop_event: threading.Event,
        fatal: queue.Queue[Exception],
    ) -> None:
        stream = watcher.open()
        thread = threading.Thread(
            target=self._watch,
            args=(watcher, stream, stop_event, fatal),
            name=f"watch-{watcher.kind}",
            daemon=True,
        )
        self._threads[watcher.kind] = thread
        thread.start()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        fatal: queue.Queue[Exception] = queue.Queue()

        try:
            for watcher in self.watchers.values():
                self._start(watcher, stop, fatal)

            while not stop.is_set():
                try:
                    exc = fatal.get(timeout=self.poll_interval)
                except queue.Empty:
                    continue
                raise exc
        finally:
            stop.set()
            for watcher in self.watchers.values():
                watcher.stop()
            for thread in self._threads.values():
                thread.join(timeout=self.poll_interval)


def build_watchers(
    connectors: dict[str, WatchStreamConnector], handler: ResourceHandler
) -> list[ResourceWatcher]:
    """Return one watcher per connector, pods first."""
    return [
        ResourceWatcher(kind=kind, connector=connectors[kind], handler=handler)
        for kind in sorted(connectors, key=lambda kind: kind != POD)
    ]
