# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 Andrew Wyatt (Fewtarius)

"""
liveslot Configuration Module

Handles loading and managing installer configuration from YAML files.
"""

import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class InstallConfig(BaseModel):
    """Install slot layout."""
    home: Optional[Path] = Field(default=None, description="Override for the home directory (defaults to $HOME)")
    root_dir_name: str = Field(default=".c9", description="Product root directory under home")
    installs_dir_name: str = Field(default="installs", description="Directory under the product root holding installs")
    package_name: str = Field(default="c9local", description="Package name; also the install slot directory name")
    metadata_file: str = Field(default="package.json", description="Metadata file inside the slot recording the installed version")
    command_name: str = Field(default="c9", description="Executable under <slot>/bin used for command registration")


class RemoteConfig(BaseModel):
    """Remote release service settings."""
    manifest_url: str = Field(
        default="http://static.c9.io/c9local/prod/latest.json",
        description="URL of the JSON release manifest",
    )
    download_base_url: str = Field(
        default="http://d6ff1xmuve0sx.cloudfront.net/c9local/prod",
        description="Base URL for release archives",
    )
    timeout_seconds: int = Field(default=30, ge=1, description="Manifest request timeout in seconds")


class FetcherConfig(BaseModel):
    """External install subprocess settings."""
    command: List[str] = Field(
        default_factory=lambda: ["npm", "install", "{url}"],
        description="Install command; {url} is replaced with the download URL",
    )
    strip_env_prefixes: List[str] = Field(
        default_factory=lambda: ["npm_"],
        description="Environment variable prefixes removed before spawning the installer",
    )
    terminate_timeout_seconds: int = Field(default=10, ge=1, description="Seconds to wait after SIGTERM before killing")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="WARNING", description="Log level (WARNING, INFO, DEBUG)")
    file: Optional[Path] = Field(default=None, description="Log file path (null = console only)")


class Config(BaseModel):
    """Main configuration container."""
    install: InstallConfig = Field(default_factory=InstallConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    fetcher: FetcherConfig = Field(default_factory=FetcherConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file. If None, uses LIVESLOT_CONFIG env var
              or defaults to ./liveslot.yaml

    Returns:
        Config object with loaded settings
    """
    if path is None:
        path = os.environ.get("LIVESLOT_CONFIG", "./liveslot.yaml")

    config_path = Path(path)

    if config_path.exists():
        logger.info("Loading configuration from: %s", config_path)
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}

            return Config(
                install=InstallConfig(**data.get("install", {})),
                remote=RemoteConfig(**data.get("remote", {})),
                fetcher=FetcherConfig(**data.get("fetcher", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except Exception as e:
            logger.warning("Failed to load config file: %s. Using defaults.", e)
            return Config()
    else:
        logger.info("Config file not found at %s. Using defaults.", config_path)
        return Config()


def setup_logging(config: LoggingConfig, verbose: bool = False) -> None:
    """
    Configure logging based on configuration.

    Args:
        config: Logging configuration settings
        verbose: Force DEBUG level regardless of config
    """
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)

    handlers = [logging.StreamHandler()]

    if config.file:
        try:
            log_dir = config.file.parent
            log_dir.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(config.file))
        except Exception as e:
            # If file logging fails, continue with console-only logging
            print(f"Warning: Could not setup file logging: {e}", file=sys.stderr)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )

    if config.file:
        logger.info("Logging configured: level=%s, file=%s", config.level, config.file)
    else:
        logger.info("Logging configured: level=%s (console only)", config.level)
