"""Manages loading, updating, and validating the application's configuration.

This module is responsible for handling the `config.ini` file. It includes
functionality to:
- Create a new configuration file from the template if one doesn't exist.
- Update an existing configuration file with new options from the template
  while preserving user-defined values and comments.
- Load the configuration into a `ConfigParser` object.
- Validate the configuration and map it onto typed `UploadSettings`.
"""
import configparser
import logging
import shutil
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List

import configupdater

from .core_logic.error_classifier import DEFAULT_MAX_FILE_SIZE_BYTES
from .core_logic.resilience import RetryPolicy
from .transports.base import Transport


def update_config(config_path: str, template_path: str) -> None:
    """Updates an existing config.ini from a template, preserving user values.

    New sections and options from the template are added to the user's file;
    existing values, comments and layout are kept. If the file changes, a
    timestamped backup is written to a `backup` subdirectory first. If no
    configuration file exists, one is created from the template.

    Args:
        config_path: The path to the user's configuration file (e.g., 'config.ini').
        template_path: The path to the template file (e.g., 'config.ini.template').

    Raises:
        SystemExit: If the template is missing or the file cannot be written.
    """
    config_file = Path(config_path)
    template_file = Path(template_path)
    logging.info("STATE: Checking for configuration updates...")

    if not template_file.is_file():
        logging.error(f"FATAL: Config template '{template_path}' not found.")
        sys.exit(1)

    if not config_file.is_file():
        logging.warning(f"Configuration file not found at '{config_path}'.")
        logging.warning("Creating a new one from the template. Please review and fill it out.")
        try:
            shutil.copy2(template_file, config_file)
        except OSError as e:
            logging.error(f"FATAL: Could not create config file: {e}")
            sys.exit(1)
        return

    try:
        updater = configupdater.ConfigUpdater()
        updater.read(config_file, encoding='utf-8')
        template_updater = configupdater.ConfigUpdater()
        template_updater.read(template_file, encoding='utf-8')

        changes_made = False
        for section_name in template_updater.sections():
            template_section = template_updater[section_name]
            if not updater.has_section(section_name):
                updater.add_section(section_name)
                logging.info(f"CONFIG: Added new section to config: [{section_name}]")
                changes_made = True
            user_section = updater[section_name]
            for key, opt in template_section.items():
                if user_section.has_option(key):
                    continue
                user_section.set(key, opt.value)
                changes_made = True
                logging.info(f"CONFIG: Added new option in [{section_name}]: {key}")

        if changes_made:
            backup_dir = config_file.parent / 'backup'
            backup_dir.mkdir(exist_ok=True)
            backup_path = backup_dir / f"{config_file.stem}.bak_{time.strftime('%Y%m%d-%H%M%S')}"
            shutil.copy2(config_file, backup_path)
            logging.info(f"CONFIG: Backed up existing configuration to '{backup_path}'")
            with config_file.open('w', encoding='utf-8') as f:
                updater.write(f)
            logging.info("CONFIG: Configuration file has been updated with new options.")
        else:
            logging.info("CONFIG: Configuration file is already up-to-date.")
    except Exception as e:
        logging.error(f"FATAL: An error occurred during config update: {e}", exc_info=True)
        sys.exit(1)


def load_config(config_path: str = "config.ini") -> configparser.ConfigParser:
    """Loads the configuration from the specified .ini file.

    Raises:
        SystemExit: If the configuration file does not exist at `config_path`.
    """
    config_file = Path(config_path)
    if not config_file.is_file():
        logging.error(f"FATAL: Configuration file not found at '{config_path}'.")
        logging.error("Please copy 'config.ini.template' to 'config.ini' and fill in your details.")
        sys.exit(1)
    config = configparser.ConfigParser()
    config.read(config_file, encoding='utf-8')
    return config


class ConfigValidator:
    """Validates the structure and values of the upload configuration.

    Attributes:
        config (configparser.ConfigParser): The configuration object to validate.
        errors (List[str]): Critical problems. The configuration is invalid if
            this list is not empty after validation.
        warnings (List[str]): Non-critical problems worth reporting.
    """

    REQUIRED_SECTIONS = {
        'UPLOADS': ['max_attempts'],
        'TRANSPORT': ['mode'],
    }

    SFTP_OPTIONS = ['host', 'port', 'username', 'password', 'remote_root']

    VALID_TRANSPORT_MODES = ['local', 'sftp']

    def __init__(self, config: configparser.ConfigParser):
        self.config = config
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self) -> bool:
        """Runs all validation checks and prints resulting errors or warnings.

        Returns:
            `True` if the configuration is valid (no errors), `False` otherwise.
        """
        self._check_required_sections()
        self._check_required_options()
        self._check_transport_mode()
        self._check_numeric_values()
        self._check_retry_delays()

        if self.errors:
            print("Configuration errors found:", file=sys.stderr)
            for error in self.errors:
                print(f" ❌ {error}", file=sys.stderr)
            return False

        if self.warnings:
            print("Configuration warnings:", file=sys.stderr)
            for warning in self.warnings:
                print(f" ⚠️ {warning}", file=sys.stderr)

        return True

    def _check_required_sections(self) -> None:
        for section in self.REQUIRED_SECTIONS:
            if not self.config.has_section(section):
                self.errors.append(f"Missing required section: [{section}]")

    def _check_required_options(self) -> None:
        """Checks that required options exist and are non-empty in their sections."""
        for section, options in self.REQUIRED_SECTIONS.items():
            if not self.config.has_section(section):
                continue
            for option in options:
                if not self.config.has_option(section, option):
                    self.errors.append(f"Missing option '{option}' in [{section}]")
                elif not self.config.get(section, option).strip():
                    self.errors.append(f"Option '{option}' in [{section}] is empty")

    def _check_transport_mode(self) -> None:
        """Validates the transport 'mode' and the options that mode needs."""
        if not self.config.has_section('TRANSPORT'):
            return

        mode = self.config.get('TRANSPORT', 'mode', fallback='local').strip().lower()
        if mode not in self.VALID_TRANSPORT_MODES:
            self.errors.append(f"Invalid transport mode '{mode}'. Must be one of: {', '.join(self.VALID_TRANSPORT_MODES)}")
            return

        if mode == 'local':
            root = self.config.get('TRANSPORT', 'destination_root', fallback='').strip()
            if not root:
                self.errors.append("mode='local' requires 'destination_root' in [TRANSPORT]")
            elif not Path(root).is_absolute():
                self.warnings.append(f"destination_root '{root}' is not an absolute path")
        elif mode == 'sftp':
            if not self.config.has_section('SFTP'):
                self.errors.append("mode='sftp' requires an [SFTP] section")
                return
            for option in self.SFTP_OPTIONS:
                if not self.config.get('SFTP', option, fallback='').strip():
                    self.errors.append(f"Option '{option}' in [SFTP] is missing or empty")

    def _check_numeric_values(self) -> None:
        """Validates that numeric options parse and lie within a sensible range."""
        numeric_options = {
            ('UPLOADS', 'max_concurrent_uploads'): (0, 64, int),
            ('UPLOADS', 'max_attempts'): (1, 10, int),
            ('UPLOADS', 'retry_base_delay'): (0, 300, float),
            ('UPLOADS', 'retry_backoff'): (1, 10, float),
            ('UPLOADS', 'retry_max_delay'): (0, 3600, float),
            ('UPLOADS', 'max_file_size_mb'): (1, 1024 * 1024, float),
            ('UPLOADS', 'progress_interval'): (0, 60, float),
            ('TRANSPORT', 'chunk_size'): (1024, 16 * 1024 * 1024, int),
            ('TRANSPORT', 'upload_limit_kbps'): (0, 10 * 1024 * 1024, int),
            ('SFTP', 'port'): (1, 65535, int),
        }

        for (section, option), (min_val, max_val, kind) in numeric_options.items():
            if not self.config.has_option(section, option):
                continue
            try:
                value = kind(self.config.get(section, option))
            except ValueError:
                type_name = 'an integer' if kind is int else 'a number'
                self.errors.append(f"Option '{option}' in [{section}] must be {type_name}")
                continue
            if value < min_val:
                self.errors.append(f"{option}={value} in [{section}] must be at least {min_val}")
            elif value > max_val:
                self.warnings.append(f"{option}={value} is outside recommended range [{min_val}-{max_val}]")

    def _check_retry_delays(self) -> None:
        try:
            base = self.config.getfloat('UPLOADS', 'retry_base_delay', fallback=2.0)
            max_delay = self.config.getfloat('UPLOADS', 'retry_max_delay', fallback=30.0)
        except ValueError:
            return  # reported by _check_numeric_values
        if max_delay < base:
            self.warnings.append(f"retry_max_delay ({max_delay:g}) is below retry_base_delay ({base:g}); every retry waits {max_delay:g}s")


@dataclass
class UploadSettings:
    """Typed view of a validated configuration."""
    transport_mode: str = 'local'
    destination_root: str = ''
    chunk_size: int = 65536
    upload_limit_kbps: int = 0
    max_concurrent_uploads: int = 0
    max_attempts: int = 3
    retry_base_delay: float = 2.0
    retry_backoff: float = 2.0
    retry_max_delay: float = 30.0
    max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES
    progress_interval: float = 0.5
    sftp_host: str = ''
    sftp_port: int = 22
    sftp_username: str = ''
    sftp_password: str = ''
    sftp_remote_root: str = '/'

    @classmethod
    def from_config(cls, config: configparser.ConfigParser) -> "UploadSettings":
        defaults = cls()
        return cls(
            transport_mode=config.get('TRANSPORT', 'mode', fallback=defaults.transport_mode).strip().lower(),
            destination_root=config.get('TRANSPORT', 'destination_root', fallback=defaults.destination_root).strip(),
            chunk_size=config.getint('TRANSPORT', 'chunk_size', fallback=defaults.chunk_size),
            upload_limit_kbps=config.getint('TRANSPORT', 'upload_limit_kbps', fallback=defaults.upload_limit_kbps),
            max_concurrent_uploads=config.getint('UPLOADS', 'max_concurrent_uploads', fallback=defaults.max_concurrent_uploads),
            max_attempts=config.getint('UPLOADS', 'max_attempts', fallback=defaults.max_attempts),
            retry_base_delay=config.getfloat('UPLOADS', 'retry_base_delay', fallback=defaults.retry_base_delay),
            retry_backoff=config.getfloat('UPLOADS', 'retry_backoff', fallback=defaults.retry_backoff),
            retry_max_delay=config.getfloat('UPLOADS', 'retry_max_delay', fallback=defaults.retry_max_delay),
            max_file_size_bytes=int(config.getfloat('UPLOADS', 'max_file_size_mb', fallback=100) * 1024 * 1024),
            progress_interval=config.getfloat('UPLOADS', 'progress_interval', fallback=defaults.progress_interval),
            sftp_host=config.get('SFTP', 'host', fallback=defaults.sftp_host),
            sftp_port=config.getint('SFTP', 'port', fallback=defaults.sftp_port),
            sftp_username=config.get('SFTP', 'username', fallback=defaults.sftp_username),
            sftp_password=config.get('SFTP', 'password', fallback=defaults.sftp_password),
            sftp_remote_root=config.get('SFTP', 'remote_root', fallback=defaults.sftp_remote_root),
        )

    @property
    def max_bytes_per_sec(self) -> int:
        return self.upload_limit_kbps * 1024

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.retry_base_delay,
            backoff=self.retry_backoff,
            max_delay=self.retry_max_delay,
        )

    def create_transport(self) -> Transport:
        """Builds the transport selected by `transport_mode`.

        Raises:
            ValueError: If the mode is not supported.
        """
        if self.transport_mode == 'local':
            from .transports.local import LocalDirectoryTransport
            return LocalDirectoryTransport(
                Path(self.destination_root),
                chunk_size=self.chunk_size,
                max_bytes_per_sec=self.max_bytes_per_sec,
                progress_interval=self.progress_interval,
            )
        elif self.transport_mode == 'sftp':
            from .transports.sftp import SFTPTransport
            return SFTPTransport(
                self.sftp_host,
                self.sftp_port,
                self.sftp_username,
                self.sftp_password,
                self.sftp_remote_root,
                chunk_size=self.chunk_size,
                max_bytes_per_sec=self.max_bytes_per_sec,
                progress_interval=self.progress_interval,
            )
        raise ValueError(f"Unsupported transport mode: {self.transport_mode}")
