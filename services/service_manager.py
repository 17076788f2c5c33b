"""
Module Name: service_manager.py
Description:
    Centralized service initialization and access point for the downloader's
    backend services (configuration and the download orchestrator).

Location:
    /services/service_manager.py

"""

import threading
from typing import Any, Dict, Optional

from utils.logger import get_module_logger


_LOGGER = get_module_logger("Service.Manager")


class ServiceManager:
    """
    Singleton service manager to handle all service instances
    Ensures each service is initialized only once and provides thread-safe access
    """
    _instance: Optional['ServiceManager'] = None
    _lock = threading.RLock()
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, *, logger=None):
        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._services: Dict[str, Any] = {}
                    self.logger = logger or _LOGGER
                    ServiceManager._initialized = True

    def _log_initialized(self, service_name: str):
        self.logger.info("Service initialized", extra={"service": service_name})

    def get_config_service(self):
        """Get or create ConfigService instance"""
        if 'config' not in self._services:
            with self._lock:
                if 'config' not in self._services:
                    from config.config import Config
                    from services.config import ConfigService
                    config_file = Config.CONFIG_FILE or "config/config.txt"
                    self._services['config'] = ConfigService(config_file)
                    self._log_initialized("config")
        return self._services['config']

    def get_download_orchestrator(self):
        """Get or create the DownloadOrchestrator (configured from INI + environment)"""
        if 'download_orchestrator' not in self._services:
            with self._lock:
                if 'download_orchestrator' not in self._services:
                    # Import here to avoid circular imports
                    from services.download_management import DownloadOrchestrator, DownloadSettings
                    settings = DownloadSettings.load(self.get_config_service())
                    self._services['download_orchestrator'] = DownloadOrchestrator(settings)
                    self._log_initialized("download_orchestrator")
        return self._services['download_orchestrator']

    def shutdown(self, timeout: Optional[float] = None):
        """Shut down running services and forget every instance."""
        with self._lock:
            services, self._services = self._services, {}

        orchestrator = services.get('download_orchestrator')
        if orchestrator is not None:
            orchestrator.shutdown(timeout=timeout)
            self.logger.info("Service stopped", extra={"service": "download_orchestrator"})


# Global service manager instance
service_manager = ServiceManager()


# Convenience functions for easy access
def get_config_service():
    """Get ConfigService instance"""
    return service_manager.get_config_service()

def get_download_orchestrator():
    """Get DownloadOrchestrator instance"""
    return service_manager.get_download_orchestrator()
