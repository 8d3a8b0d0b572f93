"""
Cache invalidation rules.

Before bundler runs, the metadata recorded by the previous build is compared
against facts observed on the freshly installed ruby. Each rule is a pure
function of (metadata, facts, observations) and either stays silent or
returns the message explaining why it fires. A rule that fires contributes
its purge actions; actions from all rules are unioned, so later rules never
undo an earlier purge and a namespace is purged at most once per build.

Purges touch only the working tree while the build runs. The persistent
cache namespaces are cleared when the build commits, so a build that fails
leaves the previous committed cache as it was.

The rules encode historical fixes for caches written by older buildpack
releases. They run in a fixed order so their messages read the same way on
every build.

Example:
    >>> decision = decide(metadata.snapshot(), facts, observations)
    >>> decision.action_for(DEPENDENCY_NAMESPACE)
    <CacheAction.PURGE: 'purge'>
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Mapping, Optional, Sequence, Tuple

from languagepack.cache.metadata import (
    BUILDPACK_VERSION_KEY,
    BUNDLER_VERSION_KEY,
    RUBY_VERSION_KEY,
    RUBYGEMS_VERSION_KEY,
    MetadataStore,
)
from languagepack.cache.store import CacheStore
from languagepack.core.filesystem import remove_path, safe_rmtree

logger = logging.getLogger(__name__)

VENDOR_NAMESPACE = "vendor"
DEPENDENCY_NAMESPACE = "vendor/bundle"
# Written by buildpack v37; its presence means the whole vendor cache is unusable
LEGACY_MARKER = "vendor/ruby_version"
# Bundler 1.3 changed where git gems keep their gemspecs
STALE_GIT_GEMSPEC_PATTERN = "vendor/bundle/*/*/bundler/gems/*/**/*.gemspec"

# Releases up to and including this one wrote broken dependency caches
BUILDPACK_VERSION_FLOOR = 76
AFFECTED_RUBYGEMS_VERSION = "2.0.0"
AFFECTED_RUBY_RELEASE = "ruby 2.0.0p0"


class CacheAction(Enum):
    """What happens to a cache namespace."""

    KEEP = "keep"
    PURGE = "purge"


class PurgeKind(Enum):
    NAMESPACE = "namespace"
    LEGACY_MARKER = "legacy_marker"


@dataclass(frozen=True)
class PurgeAction:
    """A single thing to discard before dependencies are installed."""

    kind: PurgeKind
    target: str

    @classmethod
    def namespace(cls, name: str) -> "PurgeAction":
        return cls(PurgeKind.NAMESPACE, name)

    @classmethod
    def legacy_marker(cls, path: str = LEGACY_MARKER) -> "PurgeAction":
        return cls(PurgeKind.LEGACY_MARKER, path)


PURGE_DEPENDENCIES = PurgeAction.namespace(DEPENDENCY_NAMESPACE)


@dataclass(frozen=True)
class FreshFacts:
    """Facts observed on the current build's tooling."""

    ruby_version: str
    """Full `ruby -v` output of the installed interpreter"""

    bundler_version: str
    rubygems_version: str
    buildpack_version: str

    def as_metadata(self) -> Dict[str, str]:
        return {
            RUBY_VERSION_KEY: self.ruby_version,
            BUILDPACK_VERSION_KEY: self.buildpack_version,
            BUNDLER_VERSION_KEY: self.bundler_version,
            RUBYGEMS_VERSION_KEY: self.rubygems_version,
        }


@dataclass(frozen=True)
class CacheObservations:
    """Filesystem and cache probes taken before the rules run."""

    legacy_marker_present: bool = False
    dependency_cache_present: bool = False
    dependency_dir_present: bool = False
    stale_git_gemspecs_present: bool = False


RuleCheck = Callable[[Mapping[str, str], FreshFacts, CacheObservations], Optional[str]]


@dataclass(frozen=True)
class InvalidationRule:
    """A named check and the purges it triggers."""

    name: str
    check: RuleCheck
    actions: FrozenSet[PurgeAction]

    def evaluate(
        self,
        metadata: Mapping[str, str],
        facts: FreshFacts,
        observations: CacheObservations,
    ) -> Optional[str]:
        return self.check(metadata, facts, observations)


@dataclass(frozen=True)
class TriggeredRule:
    name: str
    message: str


@dataclass(frozen=True)
class InvalidationDecision:
    """Union of the actions of every rule that fired."""

    actions: FrozenSet[PurgeAction] = frozenset()
    triggered: Tuple[TriggeredRule, ...] = field(default_factory=tuple)

    def action_for(self, namespace: str) -> CacheAction:
        if PurgeAction.namespace(namespace) in self.actions:
            return CacheAction.PURGE
        return CacheAction.KEEP

    @property
    def namespace_actions(self) -> Dict[str, CacheAction]:
        return {
            name: self.action_for(name)
            for name in (VENDOR_NAMESPACE, DEPENDENCY_NAMESPACE)
        }

    @property
    def purged_namespaces(self) -> Tuple[str, ...]:
        """Namespaces to clear from the persistent cache, parents first."""
        return tuple(
            sorted(a.target for a in self.actions if a.kind is PurgeKind.NAMESPACE)
        )

    @property
    def purges_dependencies(self) -> bool:
        return PURGE_DEPENDENCIES in self.actions

    @property
    def removes_legacy_marker(self) -> bool:
        return any(a.kind is PurgeKind.LEGACY_MARKER for a in self.actions)


# ============================================================================
# Rules
# ============================================================================


def legacy_layout_marker(metadata, facts, observations) -> Optional[str]:
    if observations.legacy_marker_present:
        return "Broken cache detected. Purging build cache."
    return None


def missing_provenance(metadata, facts, observations) -> Optional[str]:
    if BUILDPACK_VERSION_KEY not in metadata and RUBY_VERSION_KEY in metadata:
        return "Broken cache detected. Purging build cache."
    return None


def interpreter_drift(metadata, facts, observations) -> Optional[str]:
    old = metadata.get(RUBY_VERSION_KEY)
    if observations.dependency_cache_present and old is not None:
        if old != facts.ruby_version:
            return (
                "Ruby version change detected. Clearing bundler cache.\n"
                f"Old: {old}\n"
                f"New: {facts.ruby_version}"
            )
    return None


def stale_git_gemspecs(metadata, facts, observations) -> Optional[str]:
    # Only caches written before bundler_version was recorded can carry the
    # old layout; the glob is specific to that bundler upgrade.
    if (
        observations.dependency_dir_present
        and BUNDLER_VERSION_KEY not in metadata
        and observations.stale_git_gemspecs_present
    ):
        return "Old bundler cache detected. Clearing bundler cache."
    return None


def rubygems_regression(metadata, facts, observations) -> Optional[str]:
    recorded_ruby = metadata.get(RUBY_VERSION_KEY)
    if recorded_ruby is None or AFFECTED_RUBY_RELEASE not in recorded_ruby:
        return None

    old_rubygems = metadata.get(RUBYGEMS_VERSION_KEY)
    if old_rubygems is None or (
        old_rubygems == AFFECTED_RUBYGEMS_VERSION
        and old_rubygems != facts.rubygems_version
    ):
        return f"Updating to rubygems {facts.rubygems_version}. Clearing bundler cache."
    return None


def buildpack_version_floor(metadata, facts, observations) -> Optional[str]:
    recorded = metadata.get(BUILDPACK_VERSION_KEY)
    if recorded is None:
        return None
    if parse_buildpack_version(recorded) <= BUILDPACK_VERSION_FLOOR:
        return f"Cache written by buildpack {recorded}. Clearing bundler cache."
    return None


def parse_buildpack_version(value: str) -> int:
    """
    Parse a release tag such as "v76" into its number.

    Unparseable values count as 0, which places them below the floor.
    """
    match = re.match(r"\s*(\d+)", value.replace("v", "", 1))
    return int(match.group(1)) if match else 0


RULES: Tuple[InvalidationRule, ...] = (
    InvalidationRule(
        "legacy_layout_marker",
        legacy_layout_marker,
        frozenset(
            {
                PurgeAction.namespace(VENDOR_NAMESPACE),
                PurgeAction.legacy_marker(),
                PURGE_DEPENDENCIES,
            }
        ),
    ),
    InvalidationRule("missing_provenance", missing_provenance, frozenset({PURGE_DEPENDENCIES})),
    InvalidationRule("interpreter_drift", interpreter_drift, frozenset({PURGE_DEPENDENCIES})),
    InvalidationRule("stale_git_gemspecs", stale_git_gemspecs, frozenset({PURGE_DEPENDENCIES})),
    InvalidationRule("rubygems_regression", rubygems_regression, frozenset({PURGE_DEPENDENCIES})),
    InvalidationRule(
        "buildpack_version_floor", buildpack_version_floor, frozenset({PURGE_DEPENDENCIES})
    ),
)


def decide(
    metadata: Mapping[str, str],
    facts: FreshFacts,
    observations: CacheObservations,
    rules: Sequence[InvalidationRule] = RULES,
) -> InvalidationDecision:
    """
    Evaluate every rule in order and union the actions of those that fire.

    Args:
        metadata: Values recorded by the previous build
        facts: Facts observed on the current build
        observations: Filesystem and cache probes
        rules: Rules to evaluate (defaults to RULES)

    Returns:
        InvalidationDecision describing what to purge and why
    """
    actions = set()
    triggered = []
    for rule in rules:
        message = rule.evaluate(metadata, facts, observations)
        if message is None:
            continue
        triggered.append(TriggeredRule(rule.name, message))
        actions |= rule.actions

    return InvalidationDecision(frozenset(actions), tuple(triggered))


# ============================================================================
# Applying decisions
# ============================================================================


class CacheInvalidator:
    """
    Probes the build, runs the rules and applies their purges.

    Args:
        build_path: Build directory
        cache: Persistent cache store
        metadata: Metadata store of the current build
        on_dependencies_purged: Called right after the dependency directory
            is purged, to restore support gems that live inside it
    """

    def __init__(
        self,
        build_path: Path,
        cache: CacheStore,
        metadata: MetadataStore,
        on_dependencies_purged: Callable[[], None],
    ):
        self.build_path = Path(build_path)
        self.cache = cache
        self.metadata = metadata
        self.on_dependencies_purged = on_dependencies_purged

    def observe(self) -> CacheObservations:
        dependency_dir = self.build_path / DEPENDENCY_NAMESPACE
        return CacheObservations(
            legacy_marker_present=(self.build_path / LEGACY_MARKER).exists(),
            dependency_cache_present=self.cache.exists(DEPENDENCY_NAMESPACE),
            dependency_dir_present=dependency_dir.exists(),
            stale_git_gemspecs_present=dependency_dir.exists()
            and any(self.build_path.glob(STALE_GIT_GEMSPEC_PATTERN)),
        )

    def run(self, facts: FreshFacts) -> InvalidationDecision:
        """Decide, apply purges and record the fresh facts in memory."""
        decision = decide(self.metadata.snapshot(), facts, self.observe())

        logged = set()
        for rule in decision.triggered:
            logger.debug(f"Invalidation rule fired: {rule.name}")
            if rule.message not in logged:
                logged.add(rule.message)
                logger.info(rule.message)

        self.apply(decision)

        for key, value in facts.as_metadata().items():
            self.metadata.write(key, value)

        return decision

    def apply(self, decision: InvalidationDecision) -> None:
        """Purge the working tree. Cache namespaces are cleared by commit()."""
        for action in sorted(decision.actions, key=lambda a: a.target):
            if action.kind is PurgeKind.LEGACY_MARKER:
                remove_path(self.build_path / action.target)

        if decision.purges_dependencies:
            safe_rmtree(self.build_path / DEPENDENCY_NAMESPACE, require_prefix=self.build_path)
            self.on_dependencies_purged()

    def commit(self, decision: InvalidationDecision) -> None:
        """Clear the purged namespaces from the persistent cache."""
        for namespace in decision.purged_namespaces:
            logger.debug(f"Clearing cache namespace: {namespace}")
            self.cache.clear(namespace)
