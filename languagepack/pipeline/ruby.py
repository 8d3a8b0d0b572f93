"""
Ruby installation pipeline.

RubyLanguagePack.compile() runs a fixed sequence of steps against the build
directory: resolve and install ruby (and the JVM for JRuby), build the
environment, install gems with bundler and the binaries they need. Steps
are fail-fast except the two convenience steps at the end. The build cache
and metadata are committed only after every step has succeeded, so a
failed build leaves the previous cache untouched.

Example:
    >>> pack = RubyLanguagePack(Path('/tmp/build'), Path('/tmp/cache'))
    >>> result = pack.compile()
    >>> result.ruby_version.resolved_version
    'ruby-2.0.0'
"""

import logging
import os
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import requests

from languagepack.bundler.install import (
    BUNDLE_PATH,
    BundlerInstaller,
    DependencyInstallResult,
)
from languagepack.bundler.lockfile import load_lockfile
from languagepack.cache.invalidation import InvalidationDecision
from languagepack.cache.metadata import LAST_RUBY_VERSION_KEY, MetadataStore
from languagepack.cache.store import CacheStore
from languagepack.config import BuildpackConfig
from languagepack.core.exceptions import (
    ArtifactFetchError,
    BestEffortStepFailure,
    ChecksumMismatchError,
)
from languagepack.core.filesystem import (
    ArchiveExtractionError,
    compute_file_hash,
    extract_archive,
    make_executable,
    safe_rmtree,
)
from languagepack.core.shell import ShellRunner
from languagepack.fetcher import ArtifactFetcher
from languagepack.pipeline.environment import (
    DEFAULT_JAVA_OPTS,
    BuildEnvironment,
    ProfileExport,
    default_config_vars,
    profile_exports,
    write_profile,
)
from languagepack.pipeline.steps import Fallibility, InstallationStep, run_steps
from languagepack.runtime.manifest import detect_ruby_version
from languagepack.runtime.version import RuntimeVersion, resolve

logger = logging.getLogger(__name__)

RUBY_VERSIONS_FILE = "ruby_versions.yml"
SLUG_VENDOR_JVM = "vendor/jvm"
BIN_DIR = "bin"

SLUG_VENDOR_BASE_SCRIPT = (
    "require 'rbconfig';"
    "puts \"vendor/bundle/#{RUBY_ENGINE}/#{RbConfig::CONFIG['ruby_version']}\""
)

VENDOR_BUNDLE_WARNING = """Removing `vendor/bundle`.
Checking in `vendor/bundle` is not supported. Please remove this directory
and add it to your .gitignore. To vendor your gems with Bundler, use
`bundle pack` instead."""


@dataclass(frozen=True)
class ArtifactFetchers:
    """Fetchers for each artifact host the pipeline uses."""

    buildpack: ArtifactFetcher
    jvm: ArtifactFetcher
    rbx: ArtifactFetcher

    @classmethod
    def from_config(
        cls, config: BuildpackConfig, session: Optional[requests.Session] = None
    ) -> "ArtifactFetchers":
        session = session or requests.Session()
        return cls(
            buildpack=ArtifactFetcher(config.vendor_url, cdn=config.cdn, session=session),
            jvm=ArtifactFetcher(config.jvm_base_url, cdn=config.cdn, session=session),
            rbx=ArtifactFetcher(config.rbx_base_url, cdn=config.cdn, session=session),
        )


@dataclass(frozen=True)
class BuildResult:
    """Everything a successful compile produced."""

    ruby_version: RuntimeVersion
    environment: BuildEnvironment
    config_vars: Dict[str, str]
    profile: Tuple[ProfileExport, ...]
    invalidation: Optional[InvalidationDecision]
    warnings: Tuple[str, ...] = ()


def compute_slug_vendor_base(
    ruby_version: RuntimeVersion, shell: ShellRunner, environment: BuildEnvironment
) -> str:
    """
    Build-relative directory gems are installed into.

    Asks the installed ruby for its engine and ABI version, except for
    1.8.7 whose layout is fixed.
    """
    if ruby_version.ruby_version == "1.8.7":
        return "vendor/bundle/1.8"
    return shell.run_stdout(
        ["ruby", "-e", SLUG_VENDOR_BASE_SCRIPT], env=environment.variables
    ).strip()


def link_binaries(build_path: Path, source_dir: str) -> None:
    """Symlink every executable in <source_dir>/bin into bin/."""
    bin_dir = build_path / BIN_DIR
    bin_dir.mkdir(parents=True, exist_ok=True)
    source = build_path / source_dir / "bin"
    if not source.is_dir():
        return

    for binary in sorted(source.iterdir()):
        link = bin_dir / binary.name
        if link.exists() or link.is_symlink():
            logger.debug(f"Not linking {binary.name}, bin/{binary.name} already exists")
            continue
        link.symlink_to(Path("..") / source_dir / "bin" / binary.name)


class RubyLanguagePack:
    """
    Compiles a Ruby application in place.

    Args:
        build_path: Application build directory
        cache_path: Persistent cache directory (None disables caching)
        config: Buildpack configuration
        environ: Process environment the build starts from
        fetchers: Artifact fetchers (built from config when omitted)
        shell: Command runner (bound to build_path when omitted)
    """

    def __init__(
        self,
        build_path: Path,
        cache_path: Optional[Path] = None,
        config: Optional[BuildpackConfig] = None,
        environ: Optional[Mapping[str, str]] = None,
        fetchers: Optional[ArtifactFetchers] = None,
        shell: Optional[ShellRunner] = None,
    ):
        self.build_path = Path(build_path).resolve()
        self.config = config or BuildpackConfig()
        self.base_env = BuildEnvironment.from_mapping(
            os.environ if environ is None else environ
        )
        self.cache = CacheStore(cache_path, self.build_path)
        self.metadata = MetadataStore(self.build_path, self.cache, self.config.vendor_folder)
        self.fetchers = fetchers or ArtifactFetchers.from_config(self.config)
        self.shell = shell or ShellRunner(self.build_path)

        self.env = self.base_env
        self.ruby_version: Optional[RuntimeVersion] = None
        self.config_vars: Dict[str, str] = {}
        self.profile: Tuple[ProfileExport, ...] = ()
        self.warnings: List[str] = []
        self.dependency_result: Optional[DependencyInstallResult] = None
        self._slug_vendor_base: Optional[str] = None
        self._installer: Optional[BundlerInstaller] = None

    def warn(self, message: str) -> None:
        """Record a warning shown to the developer at the end of the build."""
        logger.debug(f"Warning recorded: {message.splitlines()[0]}")
        self.warnings.append(message)

    # ========================================================================
    # Derived paths
    # ========================================================================

    @property
    def slug_vendor_ruby(self) -> str:
        return f"vendor/{self.ruby_version.version_without_patchlevel}"

    @property
    def build_ruby_path(self) -> Path:
        return Path(self.config.build_ruby_root) / self.ruby_version.version_without_patchlevel

    @property
    def ruby_install_binstub_path(self) -> Path:
        if self.ruby_version.needs_build_from_source:
            return self.build_ruby_path / "bin"
        return self.build_path / self.slug_vendor_ruby / "bin"

    @property
    def slug_vendor_base(self) -> str:
        if self._slug_vendor_base is None:
            self._slug_vendor_base = compute_slug_vendor_base(
                self.ruby_version, self.shell, self.env
            )
        return self._slug_vendor_base

    @property
    def git_free_env(self) -> BuildEnvironment:
        """Environment with GIT_DIR removed; it confuses bundler's git sources."""
        return self.env.without("GIT_DIR")

    @property
    def installer(self) -> BundlerInstaller:
        if self._installer is None:
            self._installer = BundlerInstaller(
                self.build_path,
                self.config,
                self.cache,
                self.metadata,
                self.shell,
                self.fetchers.buildpack,
                self.slug_vendor_base,
                self.install_language_pack_gems,
            )
        return self._installer

    # ========================================================================
    # Steps
    # ========================================================================

    def remove_vendor_bundle(self) -> None:
        vendor_bundle = self.build_path / BUNDLE_PATH
        if vendor_bundle.exists() or vendor_bundle.is_symlink():
            self.warn(VENDOR_BUNDLE_WARNING)
            safe_rmtree(vendor_bundle, require_prefix=self.build_path)

    def ruby_versions(self) -> List[str]:
        """Versions the artifact store can serve."""
        versions = self.fetchers.buildpack.read_yaml(RUBY_VERSIONS_FILE)
        if not isinstance(versions, list):
            raise ArtifactFetchError(f"{RUBY_VERSIONS_FILE} does not contain a list of versions")
        return [str(v) for v in versions]

    def resolve_ruby_version(self) -> None:
        declared = detect_ruby_version(self.build_path)
        cached = None
        if declared is None and not self.metadata.new_app:
            cached = self.metadata.read(LAST_RUBY_VERSION_KEY)

        self.ruby_version = resolve(
            declared,
            cached,
            self.config.default_ruby_version,
            supported_versions=self.ruby_versions(),
        )

    def bootstrap_build_ruby(self) -> None:
        """Fetch the ruby used to build gems for source-build versions."""
        self.build_ruby_path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Fetching build ruby into {self.build_ruby_path}")
        self.fetchers.buildpack.fetch_untar(
            f"{self.ruby_version.bootstrap_version}.tgz", self.build_ruby_path
        )

    def install_ruby(self) -> None:
        directory = self.build_path / self.slug_vendor_ruby
        directory.mkdir(parents=True, exist_ok=True)

        if self.ruby_version.is_rbx:
            self._install_rbx(directory)
        else:
            self.fetchers.buildpack.fetch_untar(
                f"{self.ruby_version.resolved_version}.tgz", directory
            )

        link_binaries(self.build_path, self.slug_vendor_ruby)
        self.metadata.write(LAST_RUBY_VERSION_KEY, self.ruby_version.resolved_version)

        logger.info(f"-----> Using Ruby version: {self.ruby_version.resolved_version}")
        if self.ruby_version.is_defaulted:
            self.warn(
                "You have not declared a Ruby version in your Gemfile.\n"
                "To set your Ruby version add this line to your Gemfile:\n"
                f"{self.ruby_version.to_gemfile()}"
            )

    def _install_rbx(self, directory: Path) -> None:
        archive_name = f"{self.ruby_version.resolved_version}.tar.bz2"
        archive = self.fetchers.rbx.fetch(archive_name, directory)
        sha_file = self.fetchers.rbx.fetch(f"{archive_name}.sha1", directory)

        published = sha_file.read_text(encoding="utf-8").split()
        expected = published[0] if published else ""
        actual = compute_file_hash(archive, "sha1")
        if expected != actual:
            raise ChecksumMismatchError(archive_name, expected, actual, label="RBX")

        try:
            extract_archive(archive, directory)
        except ArchiveExtractionError as e:
            raise ArtifactFetchError(f"Failed to extract {archive_name}: {e}") from e

        # Rubinius archives are rooted at app/<slug_vendor_ruby>
        nested = directory / "app" / self.slug_vendor_ruby
        if nested.is_dir():
            for child in nested.iterdir():
                shutil.move(str(child), str(directory / child.name))
        safe_rmtree(directory / "app", require_prefix=directory)
        archive.unlink()
        sha_file.unlink()

    def install_jvm(self) -> None:
        logger.info(f"-----> Installing JVM: {self.config.jvm_version}")
        self.fetchers.jvm.fetch_untar(
            f"{self.config.jvm_version}.tar.gz", self.build_path / SLUG_VENDOR_JVM
        )
        link_binaries(self.build_path, SLUG_VENDOR_JVM)

    def setup_environment(self) -> None:
        """Build the environment for the rest of the build and the app profile."""
        jruby = self.ruby_version.is_jruby
        ruby_env = self.base_env.prepend_path(str(self.ruby_install_binstub_path))
        if jruby:
            ruby_env = ruby_env.merged({"JAVA_OPTS": DEFAULT_JAVA_OPTS})
        self.env = ruby_env

        self.config_vars = default_config_vars(self.slug_vendor_base, jruby=jruby)
        gem_home = self.build_path / self.slug_vendor_base
        self.env = ruby_env.with_defaults(self.config_vars).merged(
            {
                "GEM_HOME": str(gem_home),
                "PATH": ":".join(
                    [
                        str(self.ruby_install_binstub_path),
                        str(gem_home / "bin"),
                        self.config_vars["PATH"],
                    ]
                ),
            }
        )

        self.profile = tuple(profile_exports(self.slug_vendor_base, jruby=jruby))
        write_profile(self.build_path, self.profile)

    def install_language_pack_gems(self) -> None:
        """Install the gems the buildpack itself needs (bundler)."""
        directory = self.build_path / self.slug_vendor_base
        directory.mkdir(parents=True, exist_ok=True)
        for gem in (self.config.bundler_gem_path,):
            self.fetchers.buildpack.fetch_untar(f"{gem}.tgz", directory)

        bin_dir = directory / "bin"
        if bin_dir.is_dir():
            make_executable(bin_dir.iterdir())

    def build_bundler(self) -> None:
        self.dependency_result = self.installer.install(self.ruby_version, self.git_free_env)
        self.warnings.extend(self.dependency_result.warnings)

    def binaries(self) -> List[str]:
        # execjs fails at load time without a javascript runtime
        lock = load_lockfile(self.build_path)
        if lock is not None and lock.has_gem("execjs"):
            return [self.config.node_js_binary_path]
        return []

    def install_binaries(self) -> None:
        bin_dir = self.build_path / BIN_DIR
        for binary in self.binaries():
            self.fetchers.buildpack.fetch_untar(f"{binary}.tgz", bin_dir)
        if bin_dir.is_dir():
            make_executable(bin_dir.iterdir())

    def bundler_link_missing(self) -> bool:
        link = self.build_path / BIN_DIR / "bundle"
        return not (link.exists() or link.is_symlink())

    def symlink_bundler(self) -> None:
        version = re.search(r"\d\.\d\.\d", self.ruby_version.resolved_version)
        if version is None:
            raise BestEffortStepFailure(
                f"Cannot link bundler for {self.ruby_version.resolved_version}"
            )
        bin_dir = self.build_path / BIN_DIR
        bin_dir.mkdir(parents=True, exist_ok=True)
        (bin_dir / "bundle").symlink_to(
            Path("..") / BUNDLE_PATH / "ruby" / version.group(0) / "bin" / "bundle"
        )

    def rake_task_defined(self, task: str) -> bool:
        result = self.shell.run(
            ["bundle", "exec", "rake", task, "--dry-run"], env=self.git_free_env.variables
        )
        return result.success

    def run_assets_precompile(self) -> None:
        logger.info("-----> Running: rake assets:precompile")
        env = self.git_free_env
        env = env.merged({"PATH": f"{env.get('PATH', '')}:{self.build_path / BIN_DIR}"})

        start = time.monotonic()
        result = self.shell.run(["bundle", "exec", "rake", "assets:precompile"], env=env.variables)
        elapsed = time.monotonic() - start

        for line in result.output.splitlines():
            logger.info(f"       {line}")
        if not result.success:
            raise BestEffortStepFailure(
                f"Precompiling assets failed with exit code {result.returncode}"
            )
        logger.info(f"Asset precompilation completed ({elapsed:.2f}s)")

    def commit(self) -> None:
        """Persist dependency caches and metadata for the next build."""
        if self.dependency_result is not None:
            self.installer.commit(self.dependency_result)
        self.metadata.save()

    STEPS: Tuple[InstallationStep, ...] = (
        InstallationStep("remove_vendor_bundle", remove_vendor_bundle),
        InstallationStep("resolve_ruby_version", resolve_ruby_version),
        InstallationStep(
            "bootstrap_build_ruby",
            bootstrap_build_ruby,
            guard=lambda pack: pack.ruby_version.needs_build_from_source,
        ),
        InstallationStep("install_ruby", install_ruby),
        InstallationStep(
            "install_jvm", install_jvm, guard=lambda pack: pack.ruby_version.is_jruby
        ),
        InstallationStep("setup_environment", setup_environment),
        InstallationStep("install_language_pack_gems", install_language_pack_gems),
        InstallationStep("build_bundler", build_bundler),
        InstallationStep("install_binaries", install_binaries),
        InstallationStep(
            "symlink_bundler",
            symlink_bundler,
            guard=bundler_link_missing,
            fallibility=Fallibility.BEST_EFFORT,
        ),
        InstallationStep(
            "run_assets_precompile",
            run_assets_precompile,
            guard=lambda pack: pack.rake_task_defined("assets:precompile"),
            fallibility=Fallibility.BEST_EFFORT,
        ),
        InstallationStep("commit", commit),
    )

    def compile(self) -> BuildResult:
        """
        Run every step and commit the cache.

        Returns:
            BuildResult describing the installed ruby and environment

        Raises:
            LanguagePackError: On the first fatal step failure; nothing is
                committed in that case
        """
        run_steps(self.STEPS, self)

        return BuildResult(
            ruby_version=self.ruby_version,
            environment=self.env,
            config_vars=dict(self.config_vars),
            profile=self.profile,
            invalidation=(
                self.dependency_result.decision if self.dependency_result else None
            ),
            warnings=tuple(self.warnings),
        )
