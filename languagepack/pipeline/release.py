"""
Release information for a compiled application.

Describes the config vars and default process types the platform should
apply when running the slug. Reads the ruby version recorded by compile
from the build directory.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from languagepack.cache.metadata import LAST_RUBY_VERSION_KEY, MetadataStore
from languagepack.cache.store import CacheStore
from languagepack.config import BuildpackConfig
from languagepack.core.shell import ShellRunner
from languagepack.pipeline.environment import BuildEnvironment, default_config_vars
from languagepack.pipeline.ruby import compute_slug_vendor_base
from languagepack.runtime.manifest import detect_ruby_version
from languagepack.runtime.version import resolve

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_TYPES = {
    "rake": "bundle exec rake",
    "console": "bundle exec irb",
}


def release_info(
    build_path: Path,
    config: Optional[BuildpackConfig] = None,
    environ: Optional[Mapping[str, str]] = None,
    shell: Optional[ShellRunner] = None,
) -> Dict[str, Any]:
    """
    Collect release information for a compiled build directory.

    Args:
        build_path: Compiled application directory
        config: Buildpack configuration
        environ: Environment used to run the vendored ruby
        shell: Command runner (bound to build_path when omitted)

    Returns:
        Mapping with addons, config_vars and default_process_types
    """
    build_path = Path(build_path).resolve()
    config = config or BuildpackConfig()
    shell = shell or ShellRunner(build_path)

    metadata = MetadataStore(build_path, CacheStore(None, build_path), config.vendor_folder)
    ruby_version = resolve(
        detect_ruby_version(build_path),
        metadata.read(LAST_RUBY_VERSION_KEY),
        config.default_ruby_version,
    )

    env = BuildEnvironment.from_mapping(environ or {}).prepend_path(
        str(build_path / f"vendor/{ruby_version.version_without_patchlevel}" / "bin")
    )
    slug_vendor_base = compute_slug_vendor_base(ruby_version, shell, env)
    logger.debug(f"Release for {ruby_version} with gems in {slug_vendor_base}")

    return {
        "addons": [],
        "config_vars": default_config_vars(slug_vendor_base, jruby=ruby_version.is_jruby),
        "default_process_types": dict(DEFAULT_PROCESS_TYPES),
    }


def render_release(info: Mapping[str, Any]) -> str:
    return yaml.safe_dump(dict(info), default_flow_style=False, explicit_start=True)
