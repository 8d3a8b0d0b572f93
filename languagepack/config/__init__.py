"""Configuration module for languagepack."""

from languagepack.config.parser import (
    DEFAULT_DOMAIN,
    BuildpackConfig,
    load_config,
)

__all__ = [
    "DEFAULT_DOMAIN",
    "BuildpackConfig",
    "load_config",
]
