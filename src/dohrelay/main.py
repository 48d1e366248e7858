import argparse
import logging
import signal
import threading
from typing import List

from .config.config_parser import parse_config_file
from .config.config_schema import schema_json
from .config.logging_config import init_logging
from .runtime import Services
from .servers.webserver import start_webserver


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the DoH gateway.
    Parses arguments, loads configuration, wires services and serves HTTP
    until SIGINT/SIGTERM/SIGHUP.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 on clean shutdown (SIGHUP/interrupt), 1 on startup
        failure, 2 on SIGTERM/SIGINT.

    Example use:
        CLI:
            PYTHONPATH=src python -m dohrelay.main --config config.yaml
    """
    parser = argparse.ArgumentParser(description="Caching DNS-over-HTTPS forwarder")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument(
        "--print-schema",
        action="store_true",
        help="Print the configuration JSON Schema and exit",
    )
    args = parser.parse_args(argv)

    if args.print_schema:
        print(schema_json())
        return 0

    try:
        cfg = parse_config_file(args.config)
    except (OSError, ValueError) as exc:
        print(str(exc))
        return 1

    # Initialize logging before any other operations
    init_logging(cfg.get("logging"))
    logger = logging.getLogger("dohrelay.main")
    logger.info("Loaded config from %s", args.config)

    try:
        services = Services.build(cfg)
    except (KeyError, TypeError, ValueError, ImportError) as exc:
        logger.error("Could not initialize storage backend: %s", exc)
        return 1
    services.initialize()

    shutdown_event = threading.Event()
    exit_code = 0

    def _request_shutdown(reason: str, code: int) -> None:
        nonlocal exit_code
        if shutdown_event.is_set():
            return
        exit_code = code
        shutdown_event.set()
        logger.info("Received %s, initiating shutdown (exit code=%d)", reason, code)

    def _sighup_handler(_signum, _frame):
        _request_shutdown("SIGHUP", 0)

    def _sigterm_handler(_signum, _frame):
        _request_shutdown("SIGTERM", 2)

    def _sigint_handler(_signum, _frame):
        _request_shutdown("SIGINT", 2)

    for signame, handler in (
        ("SIGHUP", _sighup_handler),
        ("SIGTERM", _sigterm_handler),
        ("SIGINT", _sigint_handler),
    ):
        try:
            signal.signal(getattr(signal, signame), handler)
        except (AttributeError, ValueError, OSError):
            logger.warning("Could not install %s handler on this platform", signame)

    web_handle = start_webserver(services)
    logger.info("Startup Completed")

    try:
        while not shutdown_event.is_set():
            if not web_handle.is_running():
                logger.error("Webserver thread exited unexpectedly")
                if exit_code == 0:
                    exit_code = 1
                break
            shutdown_event.wait(1.0)
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        shutdown_event.set()
    finally:
        logger.info("Stopping webserver")
        web_handle.stop()
        logger.info("Flushing statistics and settings")
        services.shutdown()

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
