"""
Shared utilities for CLI commands.

Provides the configuration loading and message formatting used by every
command, so they all report problems the same way.
"""

import logging
import os
import sys
from typing import Iterable, Optional

from languagepack.config import BuildpackConfig, load_config

logger = logging.getLogger(__name__)


def load_buildpack_config(args) -> BuildpackConfig:
    """
    Load the buildpack configuration for a command.

    Args:
        args: Parsed arguments with an optional config path

    Returns:
        BuildpackConfig with file overrides and DOMAIN applied

    Raises:
        ConfigurationError: If the configuration file is invalid
    """
    config_path = getattr(args, "config", None)
    config = load_config(config_path, environ=os.environ)
    logger.debug(f"Using artifact store {config.vendor_url}")
    return config


def print_error(message: str, details: Optional[str] = None):
    """
    Print error message to stderr in consistent format.

    Args:
        message: Main error message
        details: Optional additional details
    """
    print(f"ERROR: {message}", file=sys.stderr)
    if details:
        print(f"  {details}", file=sys.stderr)


def print_warning(message: str):
    """Print warning message to stderr."""
    print(f"WARNING: {message}", file=sys.stderr)


def print_warnings(warnings: Iterable[str]):
    """Print the warnings collected during a build, one block each."""
    for warning in warnings:
        print_warning(warning)
        print(file=sys.stderr)
