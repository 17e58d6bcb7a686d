#!/usr/bin/env python3
"""Main entrypoint for the fieldsync daemon."""

import logging
import signal
import sys
import threading

from .cli.status import StatusConsole
from .config import load_config
from .daemon import SyncDaemon
from .factories.service_factory import ServiceFactory
from .utils.logging import StructuredLogger, setup_console_logging

logger = logging.getLogger(__name__)


def main() -> None:
    """Main entry point."""
    cli = StatusConsole()
    cli.show_banner()

    try:
        config = load_config()
    except Exception as e:
        cli.show_error(f"Failed to load configuration: {e}")
        sys.exit(1)

    setup_console_logging(config.monitoring.log_level)
    events = StructuredLogger(config.monitoring.log_dir)

    is_valid, errors = config.validate()
    if not cli.validate_config(errors) or not is_valid:
        events.log_validation_error(errors)
        sys.exit(1)

    service = ServiceFactory.create_service(config, events=events)
    health = service.health_check()
    cli.show_health(health)

    remote_online = health["remote"]["status"] == "healthy"
    if remote_online:
        with cli.progress_spinner("Draining sync queue..."):
            result = service.drain_now()
        cli.show_drain_result(result)
    else:
        cli.show_warning("Remote store unreachable, records stay queued until it returns")

    cli.show_queue_summary(service.queue_summary())
    cli.show_failed_entries(service.list_failed_entries())

    for checkpoint in service.checkpoints.list_active():
        status = service.get_sync_status(checkpoint.id)
        if status:
            cli.show_sync_status(status)

    for job_kind in sorted({c.job_kind for c in service.checkpoints.list_active()}):
        resumed = service.resume_incomplete(job_kind)
        if resumed is not None and not resumed.is_ok:
            cli.show_warning(f"Not resuming {job_kind} sync: {resumed.error.message}")

    daemon = SyncDaemon(config, service, events=events)
    daemon.online = remote_online
    daemon.start()

    stop_event = threading.Event()

    def signal_handler(signum, frame) -> None:  # type: ignore
        """Handle shutdown signals.

        Args:
            signum: Signal number
            frame: Stack frame
        """
        logger.info("Shutdown signal received, stopping daemon...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    stop_event.wait()
    daemon.stop()
    logger.info("Goodbye!")


if __name__ == "__main__":
    main()
