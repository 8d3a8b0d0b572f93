"""
Ruby version resolution.

Version strings follow the artifact store naming:

    ruby-X.Y.Z[-pN][-ENGINE-ENGINE_VERSION]

e.g. ``ruby-2.0.0-p247``, ``ruby-1.9.3-jruby-1.7.4``, ``ruby-2.0.0-rbx-2.1.1``.
The engine suffix selects the interpreter family: JRuby runs on a vendored
JVM, Rubinius ships prebuilt archives from its own host, everything else is
MRI from the buildpack bucket.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from languagepack.core.exceptions import UnsupportedVersionError

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(
    r"^ruby-(?P<ruby_version>\d+\.\d+\.\d+)"
    r"(?:-(?P<patchlevel>p\d+))?"
    r"(?:-(?P<engine>[a-z]+)-(?P<engine_version>[\w.]+))?$"
)

# MRI releases whose archives need a bootstrap ruby to build native gems
SOURCE_BUILD_VERSIONS = frozenset({"1.8.7", "1.9.2"})


class EngineKind(Enum):
    STANDARD = "standard"
    ALTERNATE_MANAGED_RUNTIME = "alternate_managed_runtime"
    PREBUILT_VARIANT = "prebuilt_variant"


ENGINE_KINDS = {
    "jruby": EngineKind.ALTERNATE_MANAGED_RUNTIME,
    "rbx": EngineKind.PREBUILT_VARIANT,
}


@dataclass(frozen=True)
class RuntimeVersion:
    """The ruby a build installs, and where the choice came from."""

    requested_spec: Optional[str]
    resolved_version: str
    is_defaulted: bool
    engine_kind: EngineKind
    needs_build_from_source: bool

    ruby_version: str
    patchlevel: Optional[str] = None
    engine: str = "ruby"
    engine_version: Optional[str] = None

    def __str__(self) -> str:
        return self.resolved_version

    @property
    def version_without_patchlevel(self) -> str:
        return re.sub(r"-p\d+", "", self.resolved_version, count=1)

    @property
    def is_jruby(self) -> bool:
        return self.engine_kind is EngineKind.ALTERNATE_MANAGED_RUNTIME

    @property
    def is_rbx(self) -> bool:
        return self.engine_kind is EngineKind.PREBUILT_VARIANT

    @property
    def bootstrap_version(self) -> str:
        """Name of the bootstrap ruby archive, without extension."""
        return self.resolved_version.replace("ruby", "ruby-build", 1)

    def to_gemfile(self) -> str:
        """Gemfile directive that pins this version."""
        line = f'ruby "{self.ruby_version}"'
        if self.patchlevel:
            line += f', :patchlevel => "{self.patchlevel[1:]}"'
        if self.engine != "ruby":
            line += f', :engine => "{self.engine}", :engine_version => "{self.engine_version}"'
        return line


def parse_version(
    version: str,
    requested_spec: Optional[str] = None,
    is_defaulted: bool = False,
) -> RuntimeVersion:
    """
    Parse a version string into a RuntimeVersion.

    Raises:
        UnsupportedVersionError: If version is not in artifact store format
    """
    match = VERSION_PATTERN.match(version.strip())
    if not match:
        raise UnsupportedVersionError(version)

    engine = match.group("engine") or "ruby"
    engine_kind = ENGINE_KINDS.get(engine, EngineKind.STANDARD)
    ruby_version = match.group("ruby_version")

    return RuntimeVersion(
        requested_spec=requested_spec,
        resolved_version=match.group(0),
        is_defaulted=is_defaulted,
        engine_kind=engine_kind,
        needs_build_from_source=(
            engine_kind is EngineKind.STANDARD and ruby_version in SOURCE_BUILD_VERSIONS
        ),
        ruby_version=ruby_version,
        patchlevel=match.group("patchlevel"),
        engine=engine,
        engine_version=match.group("engine_version"),
    )


def resolve(
    manifest_hint: Optional[str],
    cached_last_version: Optional[str],
    tool_default: str,
    supported_versions: Optional[Sequence[str]] = None,
) -> RuntimeVersion:
    """
    Pick the ruby version for this build.

    A version declared by the application wins, then the version used by
    the previous build, then the compiled-in default. Callers pass
    cached_last_version only for applications that have been built before.

    Args:
        manifest_hint: Version declared by the application, if any
        cached_last_version: Version resolved by the previous build, if any
        tool_default: Compiled-in default version
        supported_versions: Versions the artifact store can serve; when
            given, the resolved version must be listed exactly

    Returns:
        RuntimeVersion for this build

    Raises:
        UnsupportedVersionError: If the version is malformed or not served

    Example:
        >>> resolve("ruby-2.0.0-p247", None, "ruby-2.0.0").version_without_patchlevel
        'ruby-2.0.0'
    """
    requested = manifest_hint or None
    candidate = requested or cached_last_version or tool_default

    try:
        version = parse_version(
            candidate, requested_spec=requested, is_defaulted=requested is None
        )
    except UnsupportedVersionError as e:
        raise UnsupportedVersionError(candidate, supported_versions) from e

    if supported_versions is not None:
        if version.resolved_version not in supported_versions:
            raise UnsupportedVersionError(version.resolved_version, supported_versions)

    logger.debug(
        f"Resolved ruby version {version.resolved_version} "
        f"(requested={requested}, cached={cached_last_version}, default={tool_default})"
    )
    return version
