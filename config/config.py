import os
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    # Logging configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = os.environ.get('LOG_FILE') or 'book_downloader.log'

    # Optional INI file with a [downloads] section overriding the environment
    CONFIG_FILE = os.environ.get('CONFIG_FILE') or ''

    # Download job orchestration: setting key -> (environment variable, default)
    # Timeouts and delays are in seconds
    DOWNLOAD_ENVIRONMENT = {
        'max_concurrent_downloads': ('MAX_CONCURRENT_DOWNLOADS', '3'),
        'job_timeout': ('JOB_TIMEOUT', '3600'),
        'max_attempts': ('MAX_DOWNLOAD_ATTEMPTS', '5'),
        'retry_base_delay': ('RETRY_BASE_DELAY', '2'),
        'max_retry_delay': ('MAX_RETRY_DELAY', '300'),
        'retry_jitter': ('RETRY_JITTER', '0'),
        'download_timeout': ('DOWNLOAD_TIMEOUT', '60'),
        'watchdog_interval': ('WATCHDOG_INTERVAL', '5'),
        # Retention of finished jobs; "never" keeps them for the process lifetime
        'status_timeout': ('STATUS_TIMEOUT', '3600'),
        'use_cf_bypass': ('USE_CF_BYPASS', 'true'),
        'cloudflare_proxy_url': ('CLOUDFLARE_PROXY_URL', 'http://localhost:8000'),
        'cloudflare_proxy_path': ('CLOUDFLARE_PROXY_PATH', '/html'),
        'ingest_dir': ('INGEST_DIR', '/cwa-book-ingest'),
        'tmp_dir': ('TMP_DIR', ''),
        'verify_checksum': ('VERIFY_INGEST_CHECKSUM', 'false'),
    }

    @classmethod
    def download_defaults(cls) -> Dict[str, str]:
        """Built-in defaults for every download setting."""
        return {key: default for key, (_env_name, default) in cls.DOWNLOAD_ENVIRONMENT.items()}

    @classmethod
    def download_environment(cls, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Download settings explicitly set in the environment, read at call time."""
        source = os.environ if environ is None else environ
        return {
            key: source[env_name]
            for key, (env_name, _default) in cls.DOWNLOAD_ENVIRONMENT.items()
            if source.get(env_name, '') != ''
        }
