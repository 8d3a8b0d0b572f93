"""
Build environment record.

The pipeline never touches os.environ. It starts from a snapshot of the
process environment and derives new records as steps add variables; each
external command receives the record current at that point.

The environment exported to the running application is described
separately as ProfileExport entries and rendered to ``.profile.d/ruby.sh``.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from languagepack.core.filesystem import atomic_write

logger = logging.getLogger(__name__)

PROFILE_SCRIPT = ".profile.d/ruby.sh"

DEFAULT_LANG = "en_US.UTF-8"
DEFAULT_JAVA_OPTS = "-Xmx384m -Xss512k -XX:+UseCompressedOops -Dfile.encoding=UTF-8"
DEFAULT_JRUBY_OPTS = "-Xcompile.invokedynamic=true"
DEFAULT_JAVA_TOOL_OPTIONS = "-Djava.rmi.server.useCodebaseOnly=true"

BUNDLER_BINSTUBS_PATH = "vendor/bundle/bin"


class BuildEnvironment:
    """
    Immutable set of environment variables.

    Example:
        >>> env = BuildEnvironment.from_mapping({"PATH": "/usr/bin"})
        >>> env.merged({"LANG": "C"}).without("GIT_DIR").as_dict()
        {'PATH': '/usr/bin', 'LANG': 'C'}
    """

    __slots__ = ("_variables",)

    def __init__(self, variables: Optional[Mapping[str, str]] = None):
        self._variables = MappingProxyType(dict(variables or {}))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "BuildEnvironment":
        return cls({str(k): str(v) for k, v in mapping.items()})

    def __contains__(self, key: str) -> bool:
        return key in self._variables

    def __eq__(self, other) -> bool:
        if not isinstance(other, BuildEnvironment):
            return NotImplemented
        return dict(self._variables) == dict(other._variables)

    def __repr__(self) -> str:
        return f"BuildEnvironment({dict(self._variables)!r})"

    @property
    def variables(self) -> Mapping[str, str]:
        return self._variables

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._variables.get(key, default)

    def merged(self, updates: Mapping[str, str]) -> "BuildEnvironment":
        """New record with updates applied over this one."""
        variables = dict(self._variables)
        variables.update(updates)
        return BuildEnvironment(variables)

    def with_defaults(self, defaults: Mapping[str, str]) -> "BuildEnvironment":
        """New record where defaults only fill variables that are unset."""
        variables = dict(defaults)
        variables.update(self._variables)
        return BuildEnvironment(variables)

    def without(self, *keys: str) -> "BuildEnvironment":
        return BuildEnvironment(
            {k: v for k, v in self._variables.items() if k not in keys}
        )

    def prepend_path(self, *entries: str) -> "BuildEnvironment":
        """New record with entries put in front of PATH."""
        parts = [str(e) for e in entries if e]
        current = self._variables.get("PATH")
        if current:
            parts.append(current)
        return self.merged({"PATH": ":".join(parts)})

    def as_dict(self) -> Dict[str, str]:
        return dict(self._variables)


# ============================================================================
# Application environment
# ============================================================================


def default_path() -> str:
    return f"/app/bin:/app/{BUNDLER_BINSTUBS_PATH}:/usr/local/bin:/usr/bin:/bin"


def default_config_vars(slug_vendor_base: str, jruby: bool = False) -> Dict[str, str]:
    """
    Variables the platform sets for the running application.

    Args:
        slug_vendor_base: Build-relative gem directory
        jruby: Whether the application runs on JRuby
    """
    config_vars = {
        "LANG": DEFAULT_LANG,
        "PATH": default_path(),
        "GEM_PATH": slug_vendor_base,
    }
    if jruby:
        config_vars.update(
            {
                "JAVA_OPTS": DEFAULT_JAVA_OPTS,
                "JRUBY_OPTS": DEFAULT_JRUBY_OPTS,
                "JAVA_TOOL_OPTIONS": DEFAULT_JAVA_TOOL_OPTIONS,
            }
        )
    return config_vars


class ExportMode(Enum):
    OVERRIDE = "override"
    DEFAULT = "default"


@dataclass(frozen=True)
class ProfileExport:
    """One variable exported to the running application."""

    key: str
    value: str
    mode: ExportMode = ExportMode.OVERRIDE

    def render(self) -> str:
        if self.mode is ExportMode.DEFAULT:
            return f'export {self.key}="${{{self.key}:-{self.value}}}"'
        escaped = self.value.replace('"', '\\"')
        return f'export {self.key}="{escaped}"'


def profile_exports(slug_vendor_base: str, jruby: bool = False) -> List[ProfileExport]:
    exports = [
        ProfileExport("GEM_PATH", f"$HOME/{slug_vendor_base}:$GEM_PATH"),
        ProfileExport("LANG", DEFAULT_LANG, ExportMode.DEFAULT),
        ProfileExport("PATH", f"$HOME/bin:$HOME/{slug_vendor_base}/bin:$PATH"),
    ]
    if jruby:
        exports.extend(
            [
                ProfileExport("JAVA_OPTS", DEFAULT_JAVA_OPTS, ExportMode.DEFAULT),
                ProfileExport("JRUBY_OPTS", DEFAULT_JRUBY_OPTS, ExportMode.DEFAULT),
                ProfileExport(
                    "JAVA_TOOL_OPTIONS", DEFAULT_JAVA_TOOL_OPTIONS, ExportMode.DEFAULT
                ),
            ]
        )
    return exports


def render_profile(exports: Iterable[ProfileExport]) -> str:
    return "".join(f"{export.render()}\n" for export in exports)


def write_profile(build_path: Path, exports: Iterable[ProfileExport]) -> Path:
    """Write the profile.d script sourced when the application starts."""
    path = Path(build_path) / PROFILE_SCRIPT
    atomic_write(path, render_profile(exports))
    logger.debug(f"Wrote {path}")
    return path
