from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubernetes.client import CoordinationV1Api

from inheritor.src.config import ControllerConfig, load_config
from inheritor.src.controller import ReconcileLoop, build_controller
from inheritor.src.health import start_health_server
from inheritor.src.kube import build_clients, load_kube_configuration
from inheritor.src.leader import LeaseLeaderElector
from inheritor.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
# Leadership handoff waits this long for the loop to finish its current pass.
LOOP_STOP_JOIN_TIMEOUT_SECONDS = 45
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


class LeadershipRunner:
    """Starts the reconcile loop on a thread while this replica holds the lease.

    A loop that exits on its own, or crashes, sets ``shutdown_event`` so the
    process terminates and Kubernetes restarts it.
    """

    def __init__(
        self,
        loop: ReconcileLoop,
        shutdown_event: threading.Event,
        leader_ready: threading.Event,
        join_timeout_seconds: float = LOOP_STOP_JOIN_TIMEOUT_SECONDS,
    ) -> None:
        self.loop = loop
        self.shutdown_event = shutdown_event
        self.leader_ready = leader_ready
        self.join_timeout_seconds = join_timeout_seconds
        self._thread: threading.Thread | None = None
        self._loop_stop = threading.Event()
        self._state_lock = threading.Lock()

    def _run_loop(self, loop_stop: threading.Event) -> None:
        unexpected_exit = False
        try:
            self.loop.run_forever(shutdown_event=loop_stop)
            unexpected_exit = not loop_stop.is_set() and not self.shutdown_event.is_set()
            if unexpected_exit:
                LOGGER.error("Reconcile loop exited without a stop signal; terminating process")
        except Exception:
            unexpected_exit = True
            LOGGER.exception("Reconcile loop crashed")
        finally:
            if unexpected_exit:
                self.shutdown_event.set()

    def on_started_leading(self) -> None:
        with self._state_lock:
            if self.shutdown_event.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                LOGGER.error(
                    "Refusing to start a new reconcile loop while the previous one is still running"
                )
                self.shutdown_event.set()
                return

            self._loop_stop = threading.Event()
            self.leader_ready.set()
            self._thread = threading.Thread(
                target=self._run_loop, args=(self._loop_stop,), daemon=True
            )
            self._thread.start()

    def on_stopped_leading(self) -> None:
        with self._state_lock:
            self.leader_ready.clear()
            self.loop.request_stop()
            self._loop_stop.set()
            if self._thread is None:
                return

            self._thread.join(timeout=self.join_timeout_seconds)
            if self._thread.is_alive():
                LOGGER.error(
                    "Reconcile loop did not stop within %ss during leadership handoff; "
                    "forcing process shutdown",
                    self.join_timeout_seconds,
                )
                self.shutdown_event.set()
                return
            self._thread = None


def run(config: ControllerConfig, shutdown_event: threading.Event) -> None:
    """Build clients and run the controller until *shutdown_event* is set."""
    load_kube_configuration()
    core_api, custom_api = build_clients()
    loop = build_controller(config, core_api=core_api, custom_api=custom_api)

    election = config.leader_election
    leader_ready = threading.Event() if election.enabled else None
    health_server = start_health_server(
        ready=loop.ready,
        port=config.health_port,
        leader=leader_ready,
        status_provider=loop.snapshot,
    )

    try:
        if leader_ready is not None:
            elector = LeaseLeaderElector.from_config(
                coordination_api=CoordinationV1Api(),
                namespace=config.namespace,
                config=election,
            )
            runner = LeadershipRunner(loop, shutdown_event, leader_ready)
            elector.run(
                on_started_leading=runner.on_started_leading,
                on_stopped_leading=runner.on_stopped_leading,
                stop_event=shutdown_event,
            )
            runner.on_stopped_leading()
        else:
            loop.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()


def main() -> None:
    """Controller entrypoint: configure logging, load config, and run the reconcile loop."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    run(config, shutdown_event)
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
