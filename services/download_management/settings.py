"""
Download Settings
=================

Resolves the orchestrator configuration. Sources, lowest precedence first:
built-in defaults, the ``[downloads]`` section of the INI file, then
environment variables that are explicitly set (``.env`` included).
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from config.config import Config
from services.config.validation import ConfigValidation
from utils.logger import get_module_logger

logger = get_module_logger("DownloadManagement.Settings")

NEVER_VALUES = {'never', 'none', 'forever'}


def _coerce_bool(value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in {'true', '1', 'yes', 'on'}:
        return True
    if text in {'false', '0', 'no', 'off'}:
        return False
    return default


def _coerce_int(value, default: int, minimum: Optional[int] = None) -> int:
    try:
        result = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and result < minimum:
        return default
    return result


def _coerce_float(value, default: float, minimum: Optional[float] = 0.0) -> float:
    try:
        result = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and result < minimum:
        return default
    return result


def _coerce_retention(value, default: Optional[float]) -> Optional[float]:
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in NEVER_VALUES:
        return None
    return _coerce_float(text, default)


@dataclass(frozen=True)
class DownloadSettings:
    """Effective orchestrator settings (timeouts and delays in seconds)."""

    max_concurrent_downloads: int = 3
    job_timeout: float = 3600.0
    max_attempts: int = 5
    retry_base_delay: float = 2.0
    max_retry_delay: float = 300.0
    retry_jitter: float = 0.0
    download_timeout: float = 60.0
    watchdog_interval: float = 5.0
    retention_seconds: Optional[float] = 3600.0
    use_cf_bypass: bool = True
    cloudflare_proxy_url: str = 'http://localhost:8000'
    cloudflare_proxy_path: str = '/html'
    ingest_dir: str = '/cwa-book-ingest'
    tmp_dir: Optional[str] = None
    verify_checksum: bool = False

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> 'DownloadSettings':
        """Build settings from raw (string) values, falling back per key on bad input."""
        defaults = cls()
        get = values.get

        watchdog_interval = _coerce_float(get('watchdog_interval'), defaults.watchdog_interval)
        if watchdog_interval <= 0:
            watchdog_interval = defaults.watchdog_interval

        return cls(
            max_concurrent_downloads=_coerce_int(
                get('max_concurrent_downloads'), defaults.max_concurrent_downloads, minimum=1),
            job_timeout=_coerce_float(get('job_timeout'), defaults.job_timeout),
            max_attempts=_coerce_int(get('max_attempts'), defaults.max_attempts, minimum=1),
            retry_base_delay=_coerce_float(get('retry_base_delay'), defaults.retry_base_delay),
            max_retry_delay=_coerce_float(get('max_retry_delay'), defaults.max_retry_delay),
            retry_jitter=_coerce_float(get('retry_jitter'), defaults.retry_jitter),
            download_timeout=_coerce_float(get('download_timeout'), defaults.download_timeout),
            watchdog_interval=watchdog_interval,
            retention_seconds=_coerce_retention(get('status_timeout'), defaults.retention_seconds),
            use_cf_bypass=_coerce_bool(get('use_cf_bypass'), defaults.use_cf_bypass),
            cloudflare_proxy_url=(get('cloudflare_proxy_url') or defaults.cloudflare_proxy_url).strip(),
            cloudflare_proxy_path=(get('cloudflare_proxy_path') or defaults.cloudflare_proxy_path).strip(),
            ingest_dir=(get('ingest_dir') or defaults.ingest_dir).strip(),
            tmp_dir=(get('tmp_dir') or '').strip() or None,
            verify_checksum=_coerce_bool(get('verify_checksum'), defaults.verify_checksum),
        )

    @classmethod
    def load(cls, config_service=None, environ: Optional[Mapping[str, str]] = None) -> 'DownloadSettings':
        """
        Merge defaults, the INI ``[downloads]`` section and the environment.

        Args:
            config_service: Optional ConfigService providing the INI file
            environ: Environment mapping (defaults to ``os.environ``)

        Returns:
            DownloadSettings with invalid values replaced by defaults
        """
        raw: Dict[str, str] = Config.download_defaults()

        if config_service is not None:
            ini_values = config_service.get_download_config()
            raw.update({
                key: value for key, value in ini_values.items()
                if key in raw and str(value).strip() != ''
            })

        raw.update(Config.download_environment(environ))

        problems = ConfigValidation().validate_downloads(raw)
        if problems:
            logger.warning(
                "Download configuration has %d problem(s); affected settings use defaults", len(problems)
            )

        settings = cls.from_mapping(raw)
        logger.debug(f"Download settings resolved: {settings.to_dict()}")
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
