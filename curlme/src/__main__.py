from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from curlme.src.cache import ConfigMapInformer
from curlme.src.config import HANDLER_LOGGING, ControllerConfig, load_config
from curlme.src.controller import build_controller
from curlme.src.errors import CacheSyncTimeout
from curlme.src.handlers import EventHandler, LoggingHandler, WebsiteFetchHandler
from curlme.src.health import start_health_server
from curlme.src.kube import ConfigMapStore, build_core_api, load_kube_configuration
from curlme.src.metrics import METRICS

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
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
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
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def build_event_handler(config: ControllerConfig, store: ConfigMapStore) -> EventHandler:
    if config.event_handler == HANDLER_LOGGING:
        return LoggingHandler()
    return WebsiteFetchHandler(store=store, fetch_timeout_seconds=config.fetch_timeout_seconds)


def main() -> None:
    """Controller entrypoint: configure logging, wire the informer and workers, run until signalled."""
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api = build_core_api()

    informer = ConfigMapInformer(core_api=core_api, namespace=config.namespace)
    handler = build_event_handler(config, ConfigMapStore(core_api))
    controller = build_controller(config, informer=informer, handler=handler)

    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        sync_version=controller.last_sync_resource_version,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run(shutdown_event=shutdown_event)
    except CacheSyncTimeout:
        logging.getLogger(__name__).exception("ConfigMap cache never synced; exiting")
        sys.exit(1)
    finally:
        health_server.shutdown()


if __name__ == "__main__":
    main()
