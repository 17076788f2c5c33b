import configparser
import logging
import os

from config.config import Config


class ConfigDefaults:
    """Handles default configuration generation for the downloader"""

    def __init__(self, config_file: str):
        self.config_file = config_file
        self.logger = logging.getLogger("ConfigService.Defaults")

    def ensure_config_exists(self):
        """Ensure configuration file exists, create default if not."""
        if not os.path.exists(self.config_file):
            self.logger.warning("Configuration file not found. Creating default...")
            self.generate_default_config()

    def generate_default_config(self):
        """Generate a complete default configuration file with all sections."""
        config = configparser.ConfigParser()

        sections = [
            self._add_downloads_config,
            self._add_logging_config,
        ]

        for add_section in sections:
            add_section(config)

        try:
            directory = os.path.dirname(self.config_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.config_file, "w") as configfile:
                config.write(configfile)
            self.logger.info(f"Default configuration created at {self.config_file}")
        except OSError as e:
            self.logger.error(f"Failed to create default configuration: {e}")

    def _add_downloads_config(self, config: configparser.ConfigParser):
        """Add download orchestration section (mirrors the environment defaults)."""
        config["downloads"] = Config.download_defaults()

    def _add_logging_config(self, config: configparser.ConfigParser):
        """Add logging section."""
        config["logging"] = {
            "log_level": "INFO",
            "log_file": "book_downloader.log",
        }
