"""
End-to-end tests for RubyLanguagePack.compile against fake fetchers and a
scripted shell.
"""

import hashlib
import logging
import os

import pytest

from conftest import GEMFILE_LOCK, FakeShell, write_tarball
from languagepack.config import BuildpackConfig
from languagepack.core.exceptions import (
    ChecksumMismatchError,
    DependencyInstallError,
    MissingLockFileError,
    UnsupportedVersionError,
)
from languagepack.pipeline.ruby import SLUG_VENDOR_BASE_SCRIPT, RubyLanguagePack

pytestmark = pytest.mark.integration

RUBY_200 = "ruby 2.0.0p247 (2013-06-27 revision 41674) [x86_64-linux]"
RUBY_193 = "ruby 1.9.3p448 (2013-06-27 revision 41675) [x86_64-linux]"

SUPPORTED = [
    "ruby-1.8.7",
    "ruby-1.9.3",
    "ruby-2.0.0",
    "ruby-1.9.3-jruby-1.7.4",
    "ruby-2.0.0-rbx-2.1.1",
]

RUBY_ARCHIVE = {"bin/ruby": "#!/bin/sh\n", "bin/gem": "#!/bin/sh\n"}
BUNDLER_ARCHIVE = {"bin/bundle": "#!/usr/bin/env ruby\n", "gems/bundler-1.6.3/lib/bundler.rb": ""}

PRECOMPILE_DRY_RUN = ["bundle", "exec", "rake", "assets:precompile", "--dry-run"]


def ruby_shell(ruby_v=RUBY_200, vendor_base="vendor/bundle/ruby/2.0.0", ruby_version="2.0.0"):
    """Shell answering like an installed ruby without an assets task."""
    shell = FakeShell()
    shell.respond(["ruby", "-e", SLUG_VENDOR_BASE_SCRIPT], f"{vendor_base}\n")
    shell.respond(["ruby", "-e", "puts RUBY_VERSION"], f"{ruby_version}\n")
    shell.respond(["ruby", "-v"], f"{ruby_v}\n")
    shell.respond(["gem", "-v"], "2.0.14\n")
    shell.respond(["bundle", "version"], "Bundler version 1.6.3\n")
    shell.respond(PRECOMPILE_DRY_RUN, "Don't know how to build task 'assets:precompile'", 1)
    return shell


def make_app(tmp_path, name, ruby_directive=None):
    path = tmp_path / name
    path.mkdir()
    gemfile = 'source "https://rubygems.org"\n'
    if ruby_directive:
        gemfile += f"{ruby_directive}\n"
    gemfile += 'gem "sinatra"\n'
    (path / "Gemfile").write_text(gemfile)
    (path / "Gemfile.lock").write_text(GEMFILE_LOCK)
    return path


@pytest.fixture
def artifacts(fetchers):
    fetchers.buildpack.yaml_documents["ruby_versions.yml"] = SUPPORTED
    fetchers.buildpack.archives.update(
        {
            "ruby-1.8.7.tgz": RUBY_ARCHIVE,
            "ruby-build-1.8.7.tgz": RUBY_ARCHIVE,
            "ruby-1.9.3.tgz": RUBY_ARCHIVE,
            "ruby-2.0.0.tgz": RUBY_ARCHIVE,
            "ruby-1.9.3-jruby-1.7.4.tgz": {"bin/jruby": "#!/bin/sh\n"},
            "bundler-1.6.3.tgz": BUNDLER_ARCHIVE,
            "libyaml-0.1.4.tgz": {"include/yaml.h": "", "lib/libyaml.a": ""},
            "node-0.4.7.tgz": {"node": ""},
        }
    )
    fetchers.jvm.archives["openjdk7.tar.gz"] = {"bin/java": "#!/bin/sh\n"}
    return fetchers


@pytest.fixture
def make_pack(tmp_path, cache_dir, artifacts):
    def _make(build_path, shell, environ=None, **config):
        config.setdefault("build_ruby_root", str(tmp_path / "build-ruby"))
        return RubyLanguagePack(
            build_path,
            cache_dir,
            config=BuildpackConfig(**config),
            environ={"PATH": "/usr/bin:/bin"} if environ is None else environ,
            fetchers=artifacts,
            shell=shell,
        )

    return _make


def cached_metadata(cache_dir, key):
    path = cache_dir / "vendor" / "cloudcontrol" / key
    return path.read_text() if path.exists() else None


class TestFreshBuild:
    """Test the first build of an application."""

    def test_defaults_ruby_and_commits(self, ruby_app, make_pack, cache_dir):
        result = make_pack(ruby_app, ruby_shell()).compile()

        assert result.ruby_version.resolved_version == "ruby-2.0.0"
        assert result.ruby_version.is_defaulted
        assert result.invalidation.triggered == ()
        assert cached_metadata(cache_dir, "buildpack_ruby_version") == "ruby-2.0.0"
        assert cached_metadata(cache_dir, "ruby_version") == RUBY_200
        assert cached_metadata(cache_dir, "buildpack_version") == "v77"
        assert cached_metadata(cache_dir, "bundler_version") == "1.6.3"
        assert cached_metadata(cache_dir, "rubygems_version") == "2.0.14"
        assert (cache_dir / "vendor" / "bundle").is_dir()

    def test_defaulted_version_warning(self, ruby_app, make_pack):
        result = make_pack(ruby_app, ruby_shell()).compile()

        warning = next(w for w in result.warnings if "not declared a Ruby version" in w)
        assert 'ruby "2.0.0"' in warning

    def test_declared_version_has_no_warning(self, tmp_path, make_pack):
        app = make_app(tmp_path, "app", 'ruby "2.0.0"')

        result = make_pack(app, ruby_shell()).compile()

        assert not result.ruby_version.is_defaulted
        assert result.warnings == ()

    def test_fetch_order(self, ruby_app, make_pack, artifacts):
        make_pack(ruby_app, ruby_shell()).compile()

        assert artifacts.buildpack.requests == [
            "ruby_versions.yml",
            "ruby-2.0.0.tgz",
            "bundler-1.6.3.tgz",
            "libyaml-0.1.4.tgz",
        ]
        assert artifacts.jvm.requests == []
        assert artifacts.rbx.requests == []

    def test_binaries_linked(self, ruby_app, make_pack):
        pack = make_pack(ruby_app, ruby_shell())
        pack.compile()

        bin_dir = pack.build_path / "bin"
        assert os.readlink(bin_dir / "ruby") == "../vendor/ruby-2.0.0/bin/ruby"
        assert os.readlink(bin_dir / "bundle") == "../vendor/bundle/ruby/2.0.0/bin/bundle"

    def test_environment(self, ruby_app, make_pack):
        pack = make_pack(ruby_app, ruby_shell())
        result = pack.compile()

        gem_home = pack.build_path / "vendor" / "bundle" / "ruby" / "2.0.0"
        assert result.environment.get("GEM_HOME") == str(gem_home)
        assert result.environment.get("PATH").startswith(
            f"{pack.build_path / 'vendor' / 'ruby-2.0.0' / 'bin'}:{gem_home / 'bin'}:"
        )
        assert result.config_vars["GEM_PATH"] == "vendor/bundle/ruby/2.0.0"
        assert result.config_vars["LANG"] == "en_US.UTF-8"

    def test_profile_written(self, ruby_app, make_pack):
        make_pack(ruby_app, ruby_shell()).compile()

        profile = (ruby_app / ".profile.d" / "ruby.sh").read_text()
        assert 'export GEM_PATH="$HOME/vendor/bundle/ruby/2.0.0:$GEM_PATH"' in profile
        assert 'export LANG="${LANG:-en_US.UTF-8}"' in profile

    def test_process_environment_untouched(self, ruby_app, make_pack):
        environ = {"PATH": "/usr/bin:/bin", "GIT_DIR": "/srv/repo.git"}
        shell = ruby_shell()

        make_pack(ruby_app, shell, environ=environ).compile()

        assert environ == {"PATH": "/usr/bin:/bin", "GIT_DIR": "/srv/repo.git"}
        assert "GIT_DIR" not in shell.env_for("bundle", "install")

    def test_checked_in_vendor_bundle_removed(self, ruby_app, make_pack):
        checked_in = ruby_app / "vendor" / "bundle" / "ruby" / "1.9.1" / "gems" / "rack-1.4.0"
        checked_in.mkdir(parents=True)

        result = make_pack(ruby_app, ruby_shell()).compile()

        assert not checked_in.exists()
        assert any("Removing `vendor/bundle`" in w for w in result.warnings)

    def test_execjs_installs_node(self, ruby_app, make_pack, artifacts):
        lock = ruby_app / "Gemfile.lock"
        lock.write_text(lock.read_text().replace("    rack (1.5.2)\n", "    execjs (2.0.2)\n    rack (1.5.2)\n"))

        make_pack(ruby_app, ruby_shell()).compile()

        assert "node-0.4.7.tgz" in artifacts.buildpack.requests
        assert (ruby_app / "bin" / "node").exists()

    def test_without_cache_directory(self, ruby_app, artifacts):
        pack = RubyLanguagePack(
            ruby_app, None, environ={"PATH": "/usr/bin"}, fetchers=artifacts, shell=ruby_shell()
        )

        result = pack.compile()

        assert result.ruby_version.resolved_version == "ruby-2.0.0"
        assert (ruby_app / "vendor" / "cloudcontrol" / "buildpack_ruby_version").exists()


class TestFatalFailures:
    """Test fatal failures abort the build and commit nothing."""

    def test_unsupported_version(self, tmp_path, make_pack, artifacts, cache_dir):
        app = make_app(tmp_path, "app", 'ruby "9.9.9"')
        shell = ruby_shell()

        with pytest.raises(UnsupportedVersionError) as exc_info:
            make_pack(app, shell).compile()

        assert "Invalid RUBY_VERSION specified: ruby-9.9.9" in str(exc_info.value)
        assert "ruby-2.0.0" in str(exc_info.value)
        assert artifacts.buildpack.requests == ["ruby_versions.yml"]
        assert shell.calls == []
        assert not (cache_dir / "vendor").exists()

    def test_rbx_checksum_mismatch(self, tmp_path, make_pack, artifacts, cache_dir):
        app = make_app(
            tmp_path, "app", 'ruby "2.0.0", :engine => "rbx", :engine_version => "2.1.1"'
        )
        artifacts.rbx.files.update(
            {
                "ruby-2.0.0-rbx-2.1.1.tar.bz2": b"tampered",
                "ruby-2.0.0-rbx-2.1.1.tar.bz2.sha1": b"0000000000000000000000000000000000000000\n",
            }
        )

        with pytest.raises(ChecksumMismatchError, match="RBX Checksum"):
            make_pack(app, ruby_shell()).compile()

        assert cached_metadata(cache_dir, "buildpack_ruby_version") is None
        assert "bundler-1.6.3.tgz" not in artifacts.buildpack.requests

    def test_bundle_install_failure(self, ruby_app, make_pack, cache_dir):
        shell = ruby_shell()
        shell.respond(["bundle", "install"], "Could not find rack-1.5.2 in any of the sources", 7)

        with pytest.raises(DependencyInstallError, match="Failed to install gems via Bundler"):
            make_pack(ruby_app, shell).compile()

        assert not (cache_dir / "vendor").exists()
        assert PRECOMPILE_DRY_RUN not in shell.commands()

    def test_missing_lockfile(self, ruby_app, make_pack, cache_dir):
        (ruby_app / "Gemfile.lock").unlink()

        with pytest.raises(MissingLockFileError):
            make_pack(ruby_app, ruby_shell()).compile()

        assert not (cache_dir / "vendor").exists()

    def test_failed_build_keeps_previous_cache(self, tmp_path, ruby_app, make_pack, cache_dir):
        make_pack(ruby_app, ruby_shell()).compile()
        app = make_app(tmp_path, "second", 'ruby "1.9.3"')
        shell = ruby_shell(RUBY_193, "vendor/bundle/ruby/1.9.1", "1.9.3")
        shell.respond(["bundle", "install"], "boom", 1)

        with pytest.raises(DependencyInstallError):
            make_pack(app, shell).compile()

        # Interpreter drift was detected, but only the working tree was purged
        assert not (app / "vendor" / "bundle" / "ruby" / "2.0.0").exists()
        assert (cache_dir / "vendor" / "bundle" / "ruby" / "2.0.0").is_dir()
        assert cached_metadata(cache_dir, "ruby_version") == RUBY_200
        assert cached_metadata(cache_dir, "buildpack_ruby_version") == "ruby-2.0.0"

    def test_failed_build_keeps_legacy_vendor_cache(
        self, tmp_path, ruby_app, make_pack, cache_dir
    ):
        make_pack(ruby_app, ruby_shell()).compile()
        (cache_dir / "vendor" / "ruby_version").write_text("1.9.2")
        app = make_app(tmp_path, "second")
        shell = ruby_shell()
        shell.respond(["bundle", "install"], "boom", 1)

        with pytest.raises(DependencyInstallError):
            make_pack(app, shell).compile()

        assert not (app / "vendor" / "ruby_version").exists()
        assert (cache_dir / "vendor" / "ruby_version").exists()
        assert (cache_dir / "vendor" / "bundle" / "ruby" / "2.0.0").is_dir()
        assert cached_metadata(cache_dir, "ruby_version") == RUBY_200

    def test_legacy_vendor_cache_cleared_after_success(
        self, tmp_path, ruby_app, make_pack, cache_dir
    ):
        make_pack(ruby_app, ruby_shell()).compile()
        (cache_dir / "vendor" / "ruby_version").write_text("1.9.2")
        app = make_app(tmp_path, "second")

        result = make_pack(app, ruby_shell()).compile()

        assert [r.name for r in result.invalidation.triggered] == ["legacy_layout_marker"]
        assert not (cache_dir / "vendor" / "ruby_version").exists()
        assert cached_metadata(cache_dir, "ruby_version") == RUBY_200
        assert cached_metadata(cache_dir, "buildpack_version") == "v77"


class TestRuntimeVariants:
    """Test the non-MRI and source-build runtimes."""

    def test_rbx(self, tmp_path, make_pack, artifacts):
        app = make_app(
            tmp_path, "app", 'ruby "2.0.0", :engine => "rbx", :engine_version => "2.1.1"'
        )
        archive = write_tarball(
            tmp_path / "rbx" / "rbx.tar.bz2",
            {"app/vendor/ruby-2.0.0-rbx-2.1.1/bin/ruby": "rbx"},
            mode="w:bz2",
        )
        data = archive.read_bytes()
        artifacts.rbx.files.update(
            {
                "ruby-2.0.0-rbx-2.1.1.tar.bz2": data,
                "ruby-2.0.0-rbx-2.1.1.tar.bz2.sha1": (
                    f"{hashlib.sha1(data).hexdigest()}  ruby-2.0.0-rbx-2.1.1.tar.bz2\n"
                ).encode(),
            }
        )

        result = make_pack(app, ruby_shell(vendor_base="vendor/bundle/rbx/2.1")).compile()

        ruby_dir = app / "vendor" / "ruby-2.0.0-rbx-2.1.1"
        assert result.ruby_version.is_rbx
        assert (ruby_dir / "bin" / "ruby").read_text() == "rbx"
        assert sorted(p.name for p in ruby_dir.iterdir()) == ["bin"]
        assert artifacts.rbx.requests == [
            "ruby-2.0.0-rbx-2.1.1.tar.bz2",
            "ruby-2.0.0-rbx-2.1.1.tar.bz2.sha1",
        ]

    def test_jruby_installs_jvm(self, tmp_path, make_pack, artifacts):
        app = make_app(
            tmp_path, "app", 'ruby "1.9.3", :engine => "jruby", :engine_version => "1.7.4"'
        )

        result = make_pack(app, ruby_shell(vendor_base="vendor/bundle/jruby/1.9")).compile()

        assert artifacts.jvm.requests == ["openjdk7.tar.gz"]
        assert os.readlink(app / "bin" / "java") == "../vendor/jvm/bin/java"
        assert "JAVA_OPTS" in result.environment
        assert result.config_vars["JRUBY_OPTS"] == "-Xcompile.invokedynamic=true"
        profile = (app / ".profile.d" / "ruby.sh").read_text()
        assert 'export JRUBY_OPTS="${JRUBY_OPTS:--Xcompile.invokedynamic=true}"' in profile

    def test_source_build_ruby(self, tmp_path, make_pack, artifacts):
        app = make_app(tmp_path, "app", 'ruby "1.8.7"')
        shell = ruby_shell(ruby_version="1.8.7")

        result = make_pack(app, shell).compile()

        requests = artifacts.buildpack.requests
        assert requests.index("ruby-build-1.8.7.tgz") < requests.index("ruby-1.8.7.tgz")
        build_ruby_bin = tmp_path / "build-ruby" / "ruby-1.8.7" / "bin"
        assert (build_ruby_bin / "ruby").exists()
        assert result.environment.get("PATH").startswith(str(build_ruby_bin))
        assert result.config_vars["GEM_PATH"] == "vendor/bundle/1.8"
        assert ["ruby", "-e", SLUG_VENDOR_BASE_SCRIPT] not in shell.commands()
        assert shell.env_for("bundle", "install")["RUBYOPT"].endswith("syck_hack")


class TestRepeatBuilds:
    """Test builds that start from a previous build's cache."""

    def test_unchanged_rebuild_keeps_cache(self, tmp_path, ruby_app, make_pack, artifacts):
        make_pack(ruby_app, ruby_shell()).compile()
        artifacts.buildpack.requests.clear()
        app = make_app(tmp_path, "second")

        result = make_pack(app, ruby_shell()).compile()

        assert result.invalidation.triggered == ()
        assert artifacts.buildpack.requests.count("bundler-1.6.3.tgz") == 1

    def test_previous_version_beats_new_default(self, tmp_path, ruby_app, make_pack):
        make_pack(ruby_app, ruby_shell()).compile()
        app = make_app(tmp_path, "second")

        result = make_pack(app, ruby_shell(), default_ruby_version="ruby-1.9.3").compile()

        assert result.ruby_version.resolved_version == "ruby-2.0.0"
        assert result.ruby_version.is_defaulted

    def test_ruby_change_purges_once(
        self, tmp_path, ruby_app, make_pack, artifacts, cache_dir, caplog
    ):
        make_pack(ruby_app, ruby_shell()).compile()
        artifacts.buildpack.requests.clear()
        caplog.clear()
        app = make_app(tmp_path, "second", 'ruby "1.9.3"')

        with caplog.at_level(logging.INFO):
            result = make_pack(
                app, ruby_shell(RUBY_193, "vendor/bundle/ruby/1.9.1", "1.9.3")
            ).compile()

        assert [r.name for r in result.invalidation.triggered] == ["interpreter_drift"]
        assert caplog.text.count("Ruby version change detected") == 1
        assert f"Old: {RUBY_200}" in caplog.text
        # Support gems are reinstalled after the purge
        assert artifacts.buildpack.requests.count("bundler-1.6.3.tgz") == 2
        assert (app / "vendor" / "bundle" / "ruby" / "1.9.1" / "bin" / "bundle").exists()
        assert not (cache_dir / "vendor" / "bundle" / "ruby" / "2.0.0").exists()
        assert (cache_dir / "vendor" / "bundle" / "ruby" / "1.9.1").is_dir()
        assert cached_metadata(cache_dir, "ruby_version") == RUBY_193
        assert cached_metadata(cache_dir, "buildpack_ruby_version") == "ruby-1.9.3"

    def test_old_buildpack_cache_purged(
        self, tmp_path, ruby_app, make_pack, artifacts, cache_dir, caplog
    ):
        make_pack(ruby_app, ruby_shell()).compile()
        (cache_dir / "vendor" / "cloudcontrol" / "buildpack_version").write_text("v76")
        artifacts.buildpack.requests.clear()
        app = make_app(tmp_path, "second")

        with caplog.at_level(logging.INFO):
            result = make_pack(app, ruby_shell()).compile()

        assert [r.name for r in result.invalidation.triggered] == ["buildpack_version_floor"]
        assert "Cache written by buildpack v76. Clearing bundler cache." in caplog.text
        assert artifacts.buildpack.requests.count("bundler-1.6.3.tgz") == 2
        assert cached_metadata(cache_dir, "buildpack_version") == "v77"


class TestBestEffortSteps:
    """Test convenience steps never abort the build."""

    def test_failed_precompile_does_not_abort(self, ruby_app, make_pack, cache_dir, caplog):
        shell = ruby_shell()
        shell.respond(PRECOMPILE_DRY_RUN, "** Execute (dry run) assets:precompile")
        shell.respond(["bundle", "exec", "rake", "assets:precompile"], "rake aborted!", 1)

        with caplog.at_level(logging.WARNING):
            result = make_pack(ruby_app, shell).compile()

        assert result.ruby_version.resolved_version == "ruby-2.0.0"
        assert "Step run_assets_precompile failed, continuing" in caplog.text
        assert cached_metadata(cache_dir, "buildpack_ruby_version") == "ruby-2.0.0"

    def test_precompile(self, ruby_app, make_pack, caplog):
        shell = ruby_shell()
        shell.respond(PRECOMPILE_DRY_RUN, "** Execute (dry run) assets:precompile")

        with caplog.at_level(logging.INFO):
            make_pack(ruby_app, shell).compile()

        assert ["bundle", "exec", "rake", "assets:precompile"] in shell.commands()
        assert "Asset precompilation completed" in caplog.text
        env = shell.env_for("bundle", "exec", "rake", "assets:precompile")
        assert "GIT_DIR" not in env

    def test_existing_bundle_binstub_kept(self, ruby_app, make_pack):
        (ruby_app / "bin").mkdir()
        (ruby_app / "bin" / "bundle").write_text("#!/bin/sh\n")

        make_pack(ruby_app, ruby_shell()).compile()

        assert not (ruby_app / "bin" / "bundle").is_symlink()
