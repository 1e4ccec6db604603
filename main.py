# main.py
import argparse
import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Sequence

from core.config_manager import get_config

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(config):
    """Configures logging before anything else runs; the log file rotates"""
    log_file = Path(config.get('logging.file'))
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # rotating handler: 5MB max, 5 backups by default
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=config.get('logging.max_bytes', 5 * 1024 * 1024),
        backupCount=config.get('logging.backup_count', 5),
        encoding='utf-8'
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    level = getattr(logging, str(config.get('logging.level', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        handlers=[console_handler, file_handler]
    )


def setup_exception_handler():
    """Logs uncaught exceptions as CRITICAL"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Unhandled exception:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Relay eCourts captcha and case-status requests for a browser client")
    parser.add_argument("--config", type=Path, help="Optional JSON config file merged over the defaults")
    parser.add_argument("--host", help="Interface to listen on (default: server.host / HOST)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: server.port / PORT)")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the ecourts-relay command"""
    args = build_parser().parse_args(argv)

    config = get_config(args.config)
    if args.host:
        config.set('server.host', args.host)
    if args.port:
        config.set('server.port', args.port)

    setup_logging(config)
    setup_exception_handler()

    logger.info("🚀 Starting eCourts captcha relay")

    from core.relay_server import RelayServer
    server = RelayServer(config)
    return server.run()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
