"""Command that runs the task controller against the cluster it is deployed in."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import ssl
import threading
import time
from collections.abc import Callable, Sequence
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Protocol

from k8sai.api import TaskList
from k8sai.clients import KubeError, NamespacedName, OpenAIClient, in_cluster_client
from k8sai.controller import ReconcileResult, TaskReconciler

log = logging.getLogger("k8sai.setup")
_access_log = logging.getLogger("k8sai.endpoints")


class _TaskLister(Protocol):
    def list_tasks(self) -> TaskList: ...


class _Reconciler(Protocol):
    def reconcile(self, request: NamespacedName) -> ReconcileResult: ...


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    """Parse the command line."""
    parser = argparse.ArgumentParser(prog="k8sai", description="Run the task controller.")
    parser.add_argument(
        "--metrics-bind-address",
        default=":8080",
        help="The address the metric endpoint binds to.",
    )
    parser.add_argument(
        "--health-probe-bind-address",
        default=":8081",
        help="The address the probe endpoint binds to.",
    )
    parser.add_argument(
        "--leader-elect",
        action="store_true",
        help="Enable leader election for controller manager.",
    )
    parser.add_argument(
        "--metrics-secure",
        action="store_true",
        help="If set the metrics endpoint is served securely",
    )
    parser.add_argument(
        "--enable-http2",
        action="store_true",
        help="If set, HTTP/2 will be enabled for the metrics and webhook servers",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=5.0,
        help="Seconds between checks of the task list.",
    )
    return parser.parse_args(argv)


class Manager:
    """Watches tasks by polling and reconciles them one at a time."""

    def __init__(
        self,
        kube: _TaskLister,
        reconciler: _Reconciler,
        *,
        interval: float = 5.0,
        error_backoff: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.kube = kube
        self.reconciler = reconciler
        self.interval = interval
        self.error_backoff = error_backoff
        self._clock = clock
        self._generations: dict[NamespacedName, object] = {}
        self._due: dict[NamespacedName, float] = {}
        self.succeeded = 0
        self.failed = 0

    def poll_once(self) -> list[NamespacedName]:
        """Reconcile every task that is new, changed or due; return their names."""
        tasks = self.kube.list_tasks()
        now = self._clock()
        present: set[NamespacedName] = set()
        handled: list[NamespacedName] = []

        for task in tasks.items:
            key = NamespacedName(namespace=task.namespace, name=task.name)
            present.add(key)
            generation = task.metadata.get("generation")
            changed = key not in self._generations or self._generations[key] != generation
            due = key in self._due and now >= self._due[key]
            if not (changed or due):
                continue

            self._generations[key] = generation
            self._due.pop(key, None)
            handled.append(key)
            try:
                result = self.reconciler.reconcile(key)
            except Exception:
                log.exception("reconcile failed for %s", key)
                self.failed += 1
                self._due[key] = now + self.error_backoff
                continue
            self.succeeded += 1
            if result.requeue_after is not None:
                self._due[key] = now + result.requeue_after

        for key in set(self._generations) - present:
            del self._generations[key]
            self._due.pop(key, None)
        return handled

    def run(self, stop_event: threading.Event) -> None:
        """Poll until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                self.poll_once()
            except KubeError as exc:
                log.error("unable to list tasks: %s", exc)
            stop_event.wait(self.interval)

    def _metrics_text(self) -> str:
        return (
            f'reconcile_total{{controller="task",result="success"}} {self.succeeded}\n'
            f'reconcile_total{{controller="task",result="error"}} {self.failed}\n'
        )


class _EndpointHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        routes: dict[str, Callable[[], str]] = getattr(self.server, "routes", {})
        render = routes.get(self.path.partition("?")[0])
        if render is None:
            self.send_error(404)
            return
        body = render().encode()
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        """Send access lines to the debug log instead of stderr."""
        _access_log.debug("%s %s", self.address_string(), format % args)


def _parse_address(address: str) -> tuple[str, int] | None:
    if address in ("", "0"):
        return None
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"invalid bind address {address!r}")
    return host, int(port)


def _serve(address: str, routes: dict[str, Callable[[], str]]) -> ThreadingHTTPServer | None:
    bind = _parse_address(address)
    if bind is None:
        return None
    server = ThreadingHTTPServer(bind, _EndpointHandler)
    server.routes = routes  # type: ignore[attr-defined]
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


def main(argv: Sequence[str] | None = None) -> int:
    """Start the controller; return the process exit status."""
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    try:
        kube = in_cluster_client()
    except (OSError, ssl.SSLError, ValueError) as exc:
        log.error("unable to start manager: %s", exc)
        return 1

    api_key = os.environ.get("OPENAI_API_KEY", "")
    if not api_key:
        log.error("OPENAI_API_KEY not found")
        kube.close()
        return 1

    with kube, OpenAIClient(api_key) as openai:
        manager = Manager(kube, TaskReconciler(kube, openai), interval=args.poll_interval)
        servers: list[ThreadingHTTPServer] = []
        try:
            for address, routes in (
                (args.health_probe_bind_address, {"/healthz": lambda: "ok", "/readyz": lambda: "ok"}),
                (args.metrics_bind_address, {"/metrics": manager._metrics_text}),
            ):
                server = _serve(address, routes)
                if server is not None:
                    servers.append(server)
        except (OSError, ValueError) as exc:
            log.error("unable to set up health check: %s", exc)
            for server in servers:
                server.shutdown()
            return 1

        stop = threading.Event()
        signal.signal(signal.SIGINT, lambda *_: stop.set())
        signal.signal(signal.SIGTERM, lambda *_: stop.set())

        log.info("starting manager")
        try:
            manager.run(stop)
        finally:
            for server in servers:
                server.shutdown()
                server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())