import logging
from typing import Dict, List


class ConfigValidation:
    """Handles configuration validation for the download orchestrator"""

    POSITIVE_INT_KEYS = ('max_concurrent_downloads', 'max_attempts')
    NON_NEGATIVE_FLOAT_KEYS = (
        'job_timeout', 'retry_base_delay', 'max_retry_delay', 'retry_jitter',
        'download_timeout', 'watchdog_interval',
    )
    BOOL_VALUES = {'true', 'false', '1', '0', 'yes', 'no', 'on', 'off'}

    def __init__(self):
        self.logger = logging.getLogger("ConfigService.Validation")

    def validate_config(self, config: Dict[str, Dict[str, str]]) -> Dict[str, bool]:
        """Validate configuration sections and return status."""
        validation_results = {}

        downloads = config.get('downloads', {})
        validation_results['downloads'] = not self.validate_downloads(downloads)

        return validation_results

    def validate_downloads(self, downloads: Dict[str, str]) -> List[str]:
        """Return a list of problems found in a downloads section (empty when valid)."""
        problems: List[str] = []

        for key in self.POSITIVE_INT_KEYS:
            if key not in downloads:
                continue
            try:
                if int(str(downloads[key]).strip()) < 1:
                    problems.append(f"{key} must be at least 1")
            except ValueError:
                problems.append(f"{key} is not an integer: {downloads[key]!r}")

        for key in self.NON_NEGATIVE_FLOAT_KEYS:
            if key not in downloads:
                continue
            try:
                if float(str(downloads[key]).strip()) < 0:
                    problems.append(f"{key} must not be negative")
            except ValueError:
                problems.append(f"{key} is not a number: {downloads[key]!r}")

        retention = str(downloads.get('status_timeout', '')).strip().lower()
        if retention and retention not in ('never', 'none'):
            try:
                if float(retention) < 0:
                    problems.append("status_timeout must not be negative")
            except ValueError:
                problems.append(f"status_timeout is not a number or 'never': {retention!r}")

        for key in ('use_cf_bypass', 'verify_checksum'):
            value = str(downloads.get(key, 'false')).strip().lower()
            if value not in self.BOOL_VALUES:
                problems.append(f"{key} is not a boolean: {value!r}")

        proxy_url = str(downloads.get('cloudflare_proxy_url', '')).strip()
        if proxy_url and not (proxy_url.startswith('http://') or proxy_url.startswith('https://')):
            problems.append(f"Invalid bypass proxy URL format: {proxy_url}")

        if 'ingest_dir' in downloads and not str(downloads['ingest_dir']).strip():
            problems.append("ingest_dir must not be empty")

        for problem in problems:
            self.logger.warning(f"Download configuration problem: {problem}")
        if not problems:
            self.logger.debug("Download configuration validation passed")
        return problems
