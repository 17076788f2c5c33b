"""
Application Bootstrap - Book Downloader

Sets up logging and starts the download orchestrator as a long-running
process. Requests are submitted by the front-end through the orchestrator
API (``services.service_manager.get_download_orchestrator``).
"""

import logging
import signal
import threading

from config.config import Config
from utils.logger import setup_logger

logger = logging.getLogger("BookDownloader")


def create_orchestrator(config_class=Config):
    """Application factory: configure logging and build the orchestrator."""
    global logger
    logger = setup_logger("BookDownloader", config_class.LOG_FILE, config_class.LOG_LEVEL)
    logger.info("Starting Book Downloader")

    from services.service_manager import service_manager

    orchestrator = service_manager.get_download_orchestrator()
    orchestrator.start()
    return orchestrator


def main():
    create_orchestrator()
    stop_event = threading.Event()

    def handle_signal(signum, _frame):
        logger.info(f"Received signal {signum}; shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    stop_event.wait()

    from services.service_manager import service_manager
    service_manager.shutdown(timeout=30)
    logger.info("Book Downloader stopped")


if __name__ == '__main__':
    main()
