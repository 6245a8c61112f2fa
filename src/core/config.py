"""
Configuration options for the inscriber services.
"""

from argparse import ArgumentParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from dynaconf import Dynaconf, Validator

from .errors import ConfigurationError
from .log import get_logger

logger = get_logger(__name__)


@dataclass
class ConfigOpts:
    service_name: str
    settings_files: Optional[list[str]] = None
    validators: list[Validator] = field(default_factory=list)


class Config:
    """Configurations

    Settings are read from TOML files with dynaconf and can be overridden
    on the command line; every CLI flag defaults to its TOML value.
    """

    def __init__(self, opts: ConfigOpts, argv: Optional[Sequence[str]] = None):
        self.service_name = opts.service_name
        self._parser = ArgumentParser(prog=opts.service_name)

        # Add config argument first for early parsing
        self._parser.add_argument(
            "--config",
            "-c",
            type=str,
            help="Path to configuration file (TOML format)",
            default=None,
        )

        known_args, _ = self._parser.parse_known_args(argv)

        settings_files = ["settings.toml", ".secrets.toml"]
        if opts.settings_files:
            settings_files.extend(opts.settings_files)
        if known_args.config:
            config_path = Path(known_args.config)
            if not config_path.exists():
                raise ConfigurationError(
                    f"Config file not found: {known_args.config}"
                )
            settings_files = [known_args.config]
            logger.info("Using custom config file: %s", known_args.config)

        self.settings: Dynaconf = Dynaconf(
            settings_files=settings_files,
            envvar_prefix="INSCRIBER",
            load_dotenv=True,
            validators=opts.validators,
        )

        self.add_args()

        options = self._parser.parse_args(argv)
        logger.info(
            "Current config: %s",
            {k: v for k, v in vars(options).items() if not self._is_secret(k)},
        )

        for key, value in vars(options).items():
            self.settings[key] = value

    @staticmethod
    def _is_secret(key: str) -> bool:
        return any(token in key for token in ("password", "api_key", "secret"))

    def add_args(self):
        """Add command line arguments shared by every service."""
        self._parser.add_argument(
            "--log-file",
            type=str,
            help="File path to write logs (in addition to stdout). Leave empty to disable.",
            default=self.settings.get("log_file", f"logs/{self.service_name}.log"),
        )
