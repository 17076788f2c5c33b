# Services package for the book downloader
# Download orchestration lives in services.download_management

from .config import ConfigService
from .service_manager import ServiceManager, service_manager

__all__ = [
    'ConfigService',

    # Service manager
    'ServiceManager',
    'service_manager'
]
