from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import sys
import threading
from collections.abc import Sequence

from kube2vulcan.src.config import BridgeConfig, load_config
from kube2vulcan.src.controller import ResourceHandler, WatchSupervisor, build_watchers
from kube2vulcan.src.errors import BridgeError, ConfigError
from kube2vulcan.src.events import RESOURCE_KINDS
from kube2vulcan.src.health import start_health_server
from kube2vulcan.src.kube import WatchStreamConnector, build_core_api
from kube2vulcan.src.metrics import METRICS
from kube2vulcan.src.ports import ALLOW_LIST, build_port_selector
from kube2vulcan.src.store import EtcdKeysClient, VulcandRegistry
from kube2vulcan.src.translator import ConfigTranslator

RUNTIME_VERSION = "0.1.0"
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
        re.compile(r"(?i)(://)([^/@\s:]+):([^/@\s]+)@"),
        r"\1\2:[REDACTED]@",
    ),
)


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


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kube2vulcan",
        description="Mirror Kubernetes pods and services into vulcand's etcd configuration.",
    )
    parser.add_argument("--master", help="Address of the Kubernetes API server (KUBE_MASTER)")
    parser.add_argument("--etcd", help="Comma-separated etcd endpoints of vulcand (ETCD_ENDPOINTS)")
    parser.add_argument("--ports", help="Comma-separated ports to proxy (VULCAND_PORTS)")
    parser.add_argument(
        "--retain-host-header",
        action="store_true",
        default=None,
        help="Pass the client's Host header through to backends (RETAIN_HOST_HEADER)",
    )
    parser.add_argument("--policy", help="Port selection policy (PORT_POLICY)")
    parser.add_argument(
        "--unregister-strategy", help="How records are found on delete (UNREGISTER_STRATEGY)"
    )
    return parser


def config_from_args(argv: Sequence[str] | None = None) -> BridgeConfig:
    """Load configuration from the environment, with command-line flags taking precedence."""
    args = build_arg_parser().parse_args(argv)
    env = dict(os.environ)
    overrides = {
        "KUBE_MASTER": args.master,
        "ETCD_ENDPOINTS": args.etcd,
        "VULCAND_PORTS": args.ports,
        "RETAIN_HOST_HEADER": "true" if args.retain_host_header else None,
        "PORT_POLICY": args.policy,
        "UNREGISTER_STRATEGY": args.unregister_strategy,
    }
    env.update({name: value for name, value in overrides.items() if value is not None})
    return load_config(env)


def build_supervisor(config: BridgeConfig, store: EtcdKeysClient) -> WatchSupervisor:
    selector = build_port_selector(config.port_policy, config.ports)
    translator = ConfigTranslator(
        pass_host_header=config.retain_host_header,
        port_in_identifier=selector.includes_port_in_identifier,
    )
    registry = VulcandRegistry(store=store, translator=translator)
    if config.port_policy == ALLOW_LIST:
        registry.sync_listeners(config.ports)

    handler = ResourceHandler(
        registry=registry,
        selector=selector,
        unregister_strategy=config.unregister_strategy,
    )
    core_api = build_core_api(config.master)
    connectors = {kind: WatchStreamConnector(core_api, kind) for kind in RESOURCE_KINDS}
    return WatchSupervisor(
        watchers=build_watchers(connectors, handler),
        reconnect_delay=config.reconnect_delay_seconds,
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Bridge entrypoint: load config, sync listeners, and run both watch loops."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = config_from_args(argv)
    except ConfigError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    store = EtcdKeysClient(config.etcd_endpoints, timeout=config.store_timeout_seconds)
    supervisor = build_supervisor(config, store)

    health_server = None
    if config.health_port:
        health_server = start_health_server(ready=supervisor.is_ready, port=config.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = 0
    try:
        supervisor.run_forever(shutdown_event=shutdown_event)
    except BridgeError:
        logger.exception("Fatal error, stopping bridge")
        exit_code = 1
    finally:
        if health_server is not None:
            health_server.shutdown()
        store.close()

    logger.info("Bridge stopped")
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
