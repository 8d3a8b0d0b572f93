"""YAML configuration parser for languagepack.

The buildpack ships compiled-in defaults for every artifact it vendors. A
YAML file may override them, and may carry a `cdn` table remapping artifact
base URLs to CDN hosts.
"""

import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from languagepack.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_DOMAIN = "cloudcontrolled.com"


@dataclass(frozen=True)
class BuildpackConfig:
    """Compiled-in buildpack constants and their overrides."""

    name: str = "ruby"
    buildpack_version: str = "v77"
    default_ruby_version: str = "ruby-2.0.0"

    vendor_folder: str = "vendor/cloudcontrol"
    libyaml_version: str = "0.1.4"
    bundler_version: str = "1.6.3"
    node_version: str = "0.4.7"
    jvm_version: str = "openjdk7"
    rbx_base_url: str = "http://binaries.rubini.us/heroku"

    domain: str = DEFAULT_DOMAIN
    ruby_dir: str = "buildpack-ruby"
    java_dir: str = "buildpack-java"

    # Scratch root for the bootstrap ruby used by source-build versions
    build_ruby_root: str = "/tmp"
    # Directory holding buildpack support files such as syck_hack.rb
    support_dir: Optional[str] = None

    cdn: Dict[str, str] = field(default_factory=dict)

    @property
    def bucket_url(self) -> str:
        return f"https://packages.{self.domain}"

    @property
    def vendor_url(self) -> str:
        return f"{self.bucket_url}/{self.ruby_dir}"

    @property
    def jvm_base_url(self) -> str:
        return f"{self.bucket_url}/{self.java_dir}"

    @property
    def libyaml_path(self) -> str:
        return f"libyaml-{self.libyaml_version}"

    @property
    def bundler_gem_path(self) -> str:
        return f"bundler-{self.bundler_version}"

    @property
    def node_js_binary_path(self) -> str:
        return f"node-{self.node_version}"

    def cdn_url(self, url: str) -> str:
        """Map a base URL to its CDN replacement, if one is configured."""
        return self.cdn.get(url, url)


def load_config(
    config_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> BuildpackConfig:
    """
    Build the buildpack configuration.

    Args:
        config_path: Optional YAML file with overrides
        environ: Environment used for DOMAIN lookup

    Returns:
        BuildpackConfig with defaults, file overrides and environment applied

    Raises:
        ConfigurationError: If the file is missing, malformed or has unknown keys
    """
    config = BuildpackConfig()
    environ = environ or {}

    if environ.get("DOMAIN"):
        config = replace(config, domain=environ["DOMAIN"])

    if config_path is None:
        return config

    data = _read_yaml(Path(config_path))
    return _apply_overrides(config, data)


def _read_yaml(config_path: Path) -> dict:
    """Read a YAML mapping from disk."""
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if data is None:
        logger.debug(f"Configuration file is empty: {config_path}")
        return {}

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration file must contain a mapping: {config_path}"
        )

    return data


def _apply_overrides(config: BuildpackConfig, data: dict) -> BuildpackConfig:
    """Validate override keys and merge them into config."""
    known = {f.name for f in fields(BuildpackConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown configuration keys: {', '.join(unknown)}"
        )

    cdn = data.get("cdn", {})
    if not isinstance(cdn, dict):
        raise ConfigurationError("cdn must be a mapping of base URL to CDN URL")

    overrides = {}
    for key, value in data.items():
        if key == "cdn":
            overrides[key] = {str(k): str(v) for k, v in cdn.items()}
        elif value is not None:
            overrides[key] = str(value)

    return replace(config, **overrides)
