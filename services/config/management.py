import configparser
import logging
import os
from typing import Dict

from .defaults import ConfigDefaults
from .validation import ConfigValidation


class ConfigService:
    """INI-backed configuration service with default generation and validation."""

    def __init__(self, config_file: str = "config/config.txt", create_defaults: bool = True):
        self.config_file = config_file
        self.logger = logging.getLogger("ConfigService.Management")

        # Initialize modular components
        self.defaults = ConfigDefaults(self.config_file)
        self.validation = ConfigValidation()

        if create_defaults:
            self.defaults.ensure_config_exists()

    def load_config(self) -> configparser.ConfigParser:
        """Load configuration from disk with duplicate section recovery."""
        parser = configparser.ConfigParser()
        try:
            with open(self.config_file, "r", encoding="utf-8") as config_handle:
                parser.read_file(config_handle)
            return parser
        except configparser.DuplicateSectionError as duplicate_error:
            self.logger.warning(
                "Duplicate section detected in %s: %s. Attempting automatic recovery...",
                self.config_file,
                duplicate_error,
            )
            return self._recover_from_duplicate_sections()
        except FileNotFoundError:
            self.logger.debug("Configuration file %s not found", self.config_file)
            return parser
        except configparser.Error as exc:
            self.logger.error(f"Failed to load configuration: {exc}")
            return parser

    def get_section(self, section_name: str) -> Dict[str, str]:
        """Get all raw values from a section (empty dict when missing)."""
        config = self.load_config()
        section_name = section_name.lower()
        if not config.has_section(section_name):
            return {}
        return dict(config.items(section_name))

    def get_download_config(self) -> Dict[str, str]:
        """Get the download orchestration section."""
        return self.get_section('downloads')

    def validate_config(self) -> Dict[str, bool]:
        """Validate configuration sections and return status."""
        config = self.load_config()
        config_dict = {section: dict(config.items(section)) for section in config.sections()}
        return self.validation.validate_config(config_dict)

    def _write_config(self, config: configparser.ConfigParser) -> None:
        """Persist the current configuration parser to disk."""
        directory = os.path.dirname(self.config_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as configfile:
            config.write(configfile)

    def _recover_from_duplicate_sections(self) -> configparser.ConfigParser:
        """Attempt to repair duplicate sections by rewriting a clean copy."""
        recovery_parser = configparser.ConfigParser(strict=False)
        try:
            with open(self.config_file, "r", encoding="utf-8") as config_handle:
                recovery_parser.read_file(config_handle)

            cleaned_parser = configparser.ConfigParser()
            for section in recovery_parser.sections():
                cleaned_parser[section] = {key: value for key, value in recovery_parser.items(section)}

            self._write_config(cleaned_parser)
            self.logger.info("Duplicate sections removed; configuration rewritten")
            return cleaned_parser
        except (OSError, configparser.Error) as exc:
            self.logger.error(f"Failed to recover configuration: {exc}")
            return configparser.ConfigParser()
