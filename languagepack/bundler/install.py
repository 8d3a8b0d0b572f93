"""
Application dependency installation via bundler.

The installer requires a committed Gemfile.lock and installs in deployment
mode against it. Before bundler runs, the vendor cache is loaded and the
invalidation rules decide which parts of it can be trusted. libyaml is
fetched into a scratch directory so psych can compile against it.

Nothing is written to the persistent cache here: install() returns a
DependencyInstallResult and the pipeline calls commit() once every other
step has succeeded.
"""

import logging
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from languagepack.bundler.lockfile import LOCKFILE_NAME, load_lockfile
from languagepack.cache.invalidation import CacheInvalidator, FreshFacts, InvalidationDecision
from languagepack.cache.metadata import MetadataStore
from languagepack.cache.store import CacheStore
from languagepack.config import BuildpackConfig
from languagepack.core.exceptions import DependencyInstallError, MissingLockFileError
from languagepack.core.filesystem import remove_path, safe_rmtree
from languagepack.core.shell import ShellRunner
from languagepack.fetcher import ArtifactFetcher
from languagepack.pipeline.environment import BUNDLER_BINSTUBS_PATH, BuildEnvironment
from languagepack.runtime.version import RuntimeVersion

logger = logging.getLogger(__name__)

DEFAULT_BUNDLE_WITHOUT = "development:test"
BUNDLE_CONFIG_NAMESPACE = ".bundle"
BUNDLE_PATH = "vendor/bundle"
SUPPORT_DIR = Path(__file__).resolve().parent.parent / "support"

SQLITE3_FAILURE = re.compile(
    r"Installing sqlite3 \([\w.]+\)( with native extensions)?\s+"
    r"Gem::Installer::ExtensionBuildError: ERROR: Failed to build gem native extension."
)
SQLITE3_HINT = (
    "Detected sqlite3 gem which is not supported.\n"
    "You might want to use another database on production."
)

WINDOWS_LOCKFILE_WARNING = """Removing `Gemfile.lock` because it was generated on Windows.
Bundler will do a full resolve so native gems are handled properly.
This may result in unexpected gem versions being used in your app."""


@dataclass(frozen=True)
class DependencyInstallResult:
    """Outcome of a successful bundle install, pending commit."""

    bundler_version: str
    output: str
    decision: InvalidationDecision
    cache_paths: Tuple[str, ...] = (BUNDLE_CONFIG_NAMESPACE, BUNDLE_PATH)
    prune_paths: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = field(default_factory=tuple)


def classify_failure(output: str) -> Optional[str]:
    """Return a remediation hint for a recognised bundler failure."""
    if SQLITE3_FAILURE.search(output):
        return SQLITE3_HINT
    return None


def _version_tuple(version: str) -> Tuple[int, ...]:
    parts = []
    for piece in version.strip().split("."):
        match = re.match(r"\d+", piece)
        parts.append(int(match.group(0)) if match else 0)
    return tuple(parts)


class BundlerInstaller:
    """
    Runs `bundle install` for the application in the build directory.

    Args:
        build_path: Build directory
        config: Buildpack configuration
        cache: Persistent cache store
        metadata: Build metadata store
        shell: Command runner bound to the build directory
        fetcher: Buildpack artifact fetcher (libyaml)
        slug_vendor_base: Build-relative gem directory of the installed ruby
        install_support_gems: Restores bundled support gems after a purge
    """

    def __init__(
        self,
        build_path: Path,
        config: BuildpackConfig,
        cache: CacheStore,
        metadata: MetadataStore,
        shell: ShellRunner,
        fetcher: ArtifactFetcher,
        slug_vendor_base: str,
        install_support_gems: Callable[[], None],
    ):
        self.build_path = Path(build_path).resolve()
        self.config = config
        self.cache = cache
        self.metadata = metadata
        self.shell = shell
        self.fetcher = fetcher
        self.slug_vendor_base = slug_vendor_base
        self.install_support_gems = install_support_gems

    @property
    def support_dir(self) -> Path:
        if self.config.support_dir:
            return Path(self.config.support_dir)
        return SUPPORT_DIR

    def install(
        self, runtime_version: RuntimeVersion, environment: BuildEnvironment
    ) -> DependencyInstallResult:
        """
        Install the application's gems.

        Args:
            runtime_version: Ruby installed by the pipeline
            environment: Build environment (GIT_DIR already removed)

        Returns:
            DependencyInstallResult to pass to commit()

        Raises:
            MissingLockFileError: If Gemfile.lock is absent
            DependencyInstallError: If bundler exits non-zero
        """
        lockfile = self.build_path / LOCKFILE_NAME
        if not lockfile.exists():
            raise MissingLockFileError()

        warnings: List[str] = []
        command = [
            "bundle",
            "install",
            "--without",
            environment.get("BUNDLE_WITHOUT") or DEFAULT_BUNDLE_WITHOUT,
            "--path",
            BUNDLE_PATH,
            "--binstubs",
            BUNDLER_BINSTUBS_PATH,
        ]

        lock = load_lockfile(self.build_path)
        if lock is not None and lock.has_windows_platform:
            warnings.append(WINDOWS_LOCKFILE_WARNING)
            logger.debug("Gemfile.lock lists a Windows platform, removing it")
            remove_path(lockfile)
        else:
            command.append("--deployment")
            self.cache.load(BUNDLE_CONFIG_NAMESPACE)

        bundler_version = self.shell.run_stdout(["bundle", "version"], env=environment.variables).strip()
        logger.info(f"-----> Installing dependencies using {bundler_version}")

        decision = self.load_bundler_cache(environment)

        command.append("--no-clean")
        with tempfile.TemporaryDirectory(prefix="libyaml-") as tmpdir:
            libyaml_dir = Path(tmpdir) / self.config.libyaml_path
            self.install_libyaml(libyaml_dir)
            bundle_env = self.bundle_environment(runtime_version, environment, libyaml_dir)

            logger.info(f"Running: {' '.join(command)}")
            result = self.shell.run(command, env=bundle_env.variables)

        for line in result.output.splitlines():
            logger.info(f"       {line}")

        if not result.success:
            raise DependencyInstallError(
                "Failed to install gems via Bundler.",
                output=result.output,
                hint=classify_failure(result.output),
            )

        logger.info("Cleaning up the bundler cache.")
        clean = self.shell.run(["bundle", "clean"], env=environment.variables)
        if not clean.success:
            logger.debug(f"bundle clean exited with {clean.returncode}")

        return DependencyInstallResult(
            bundler_version=bundler_version,
            output=result.output,
            decision=decision,
            prune_paths=(f"{self.slug_vendor_base}/cache",),
            warnings=tuple(warnings),
        )

    def commit(self, result: DependencyInstallResult) -> None:
        """
        Store the dependency caches and keep the gem cache out of the slug.

        Namespaces purged by the invalidation rules are cleared first, so
        the previous build's cache is only discarded once this build has
        succeeded.
        """
        self.invalidator().commit(result.decision)
        for namespace in result.cache_paths:
            self.cache.store(namespace)
        for path in result.prune_paths:
            safe_rmtree(self.build_path / path, require_prefix=self.build_path)

    def load_bundler_cache(self, environment: BuildEnvironment) -> InvalidationDecision:
        """Load the vendor cache and discard whatever the rules distrust."""
        self.cache.load("vendor")

        facts = FreshFacts(
            ruby_version=self.shell.run_stdout(["ruby", "-v"], env=environment.variables).strip(),
            bundler_version=self.config.bundler_version,
            rubygems_version=self.shell.run_stdout(["gem", "-v"], env=environment.variables).strip(),
            buildpack_version=self.config.buildpack_version,
        )

        return self.invalidator().run(facts)

    def invalidator(self) -> CacheInvalidator:
        return CacheInvalidator(self.build_path, self.cache, self.metadata, self.install_support_gems)

    def install_libyaml(self, directory: Path) -> None:
        self.fetcher.fetch_untar(f"{self.config.libyaml_path}.tgz", directory)

    def bundle_environment(
        self,
        runtime_version: RuntimeVersion,
        environment: BuildEnvironment,
        libyaml_dir: Path,
    ) -> BuildEnvironment:
        """Variables bundler needs to compile native extensions."""
        yaml_include = (libyaml_dir / "include").resolve()
        yaml_lib = (libyaml_dir / "lib").resolve()

        def search_path(key: str, entry: Path) -> str:
            current = environment.get(key)
            return f"{entry}:{current}" if current else str(entry)

        variables = {
            "BUNDLE_GEMFILE": str(self.build_path / "Gemfile"),
            "BUNDLE_CONFIG": str(self.build_path / ".bundle" / "config"),
            "CPATH": search_path("CPATH", yaml_include),
            "CPPATH": search_path("CPPATH", yaml_include),
            "LIBRARY_PATH": search_path("LIBRARY_PATH", yaml_lib),
            "RUBYOPT": self.syck_hack(environment),
            "NOKOGIRI_USE_SYSTEM_LIBRARIES": "true",
        }
        if runtime_version.ruby_version == "1.8.7":
            variables["BUNDLER_LIB_PATH"] = str(
                self.build_path
                / self.slug_vendor_base
                / "gems"
                / self.config.bundler_gem_path
                / "lib"
            )
        return environment.merged(variables)

    def syck_hack(self, environment: BuildEnvironment) -> str:
        """RUBYOPT requiring the syck hack on rubies that ship syck."""
        ruby_version = self.shell.run_stdout(
            ["ruby", "-e", "puts RUBY_VERSION"], env=environment.variables
        ).strip()
        if _version_tuple(ruby_version) < (1, 9, 3):
            return f"-r{self.support_dir / 'syck_hack'}"
        return ""
