"""
Pytest configuration and shared fixtures for languagepack tests.
"""

import io
import logging
import tarfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest

from languagepack.core.shell import CommandResult


# ============================================================================
# Logging
# ============================================================================


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Undo logging.basicConfig(force=True) calls made by CLI runs."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if type(handler) is logging.StreamHandler:
            root.removeHandler(handler)
    root.setLevel(level)


# ============================================================================
# Archives
# ============================================================================


def write_tarball(
    path: Path,
    files: Dict[str, str],
    mode: str = "w:gz",
    executables: Sequence[str] = (),
) -> Path:
    """Create a tarball at path holding files (name -> text content)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, mode) as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755 if name in executables else 0o644
            tar.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture
def tarball(tmp_path) -> Callable[..., Path]:
    """Factory building tarballs under tmp_path/archives."""

    def _make(name: str, files: Dict[str, str], **kwargs) -> Path:
        return write_tarball(tmp_path / "archives" / name, files, **kwargs)

    return _make


# ============================================================================
# Build directories
# ============================================================================


@pytest.fixture
def build_dir(tmp_path) -> Path:
    """Empty application build directory."""
    path = tmp_path / "build"
    path.mkdir()
    return path


@pytest.fixture
def cache_dir(tmp_path) -> Path:
    """Empty persistent cache directory."""
    path = tmp_path / "cache"
    path.mkdir()
    return path


GEMFILE_LOCK = """GEM
  remote: https://rubygems.org/
  specs:
    rack (1.5.2)
    sinatra (1.4.3)
      rack (~> 1.4)

PLATFORMS
  ruby

DEPENDENCIES
  sinatra
"""


@pytest.fixture
def ruby_app(build_dir) -> Path:
    """Build directory holding a minimal Gemfile and Gemfile.lock."""
    (build_dir / "Gemfile").write_text('source "https://rubygems.org"\ngem "sinatra"\n')
    (build_dir / "Gemfile.lock").write_text(GEMFILE_LOCK)
    return build_dir


# ============================================================================
# Collaborator fakes
# ============================================================================


class FakeFetcher:
    """
    In-memory artifact fetcher.

    Archives are described as dicts of file name to content and written
    into the target directory on fetch_untar; plain artifacts are bytes.
    Every requested name is recorded in `requests`.
    """

    def __init__(
        self,
        archives: Optional[Dict[str, Dict[str, str]]] = None,
        files: Optional[Dict[str, bytes]] = None,
        yaml_documents: Optional[Dict[str, object]] = None,
    ):
        self.archives = archives or {}
        self.files = files or {}
        self.yaml_documents = yaml_documents or {}
        self.requests: List[str] = []

    def fetch(self, name: str, directory: Path) -> Path:
        from languagepack.core.exceptions import ArtifactFetchError

        self.requests.append(name)
        if name not in self.files:
            raise ArtifactFetchError(f"404 Not Found: {name}")
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / Path(name).name
        path.write_bytes(self.files[name])
        return path

    def fetch_untar(self, name: str, directory: Path) -> Path:
        from languagepack.core.exceptions import ArtifactFetchError

        self.requests.append(name)
        if name not in self.archives:
            raise ArtifactFetchError(f"404 Not Found: {name}")
        directory = Path(directory)
        for relative, content in self.archives[name].items():
            target = directory / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)
        return directory

    fetch_bunzip2 = fetch_untar

    def read_yaml(self, name: str):
        from languagepack.core.exceptions import ArtifactFetchError

        self.requests.append(name)
        if name not in self.yaml_documents:
            raise ArtifactFetchError(f"404 Not Found: {name}")
        return self.yaml_documents[name]


class FakeShell:
    """
    Scripted command runner.

    Responses are matched on the command's leading words; the longest
    matching prefix wins. Unmatched commands succeed with empty output.
    Every command and its environment are recorded in `calls`.
    """

    def __init__(self, responses: Optional[Dict[tuple, object]] = None):
        self.responses: Dict[tuple, object] = dict(responses or {})
        self.calls: List[tuple] = []

    def respond(self, prefix: Sequence[str], output: str = "", returncode: int = 0):
        self.responses[tuple(prefix)] = (returncode, output)

    def _lookup(self, command: List[str]):
        best = None
        for prefix, response in self.responses.items():
            if tuple(command[: len(prefix)]) == prefix:
                if best is None or len(prefix) > len(best[0]):
                    best = (prefix, response)
        if best is None:
            return 0, ""
        response = best[1]
        if callable(response):
            return response(command)
        return response

    def run(self, command, env=None, cwd=None) -> CommandResult:
        cmd = [str(c) for c in command]
        self.calls.append((cmd, dict(env or {})))
        returncode, output = self._lookup(cmd)
        return CommandResult(cmd, returncode, output)

    def run_stdout(self, command, env=None, cwd=None) -> str:
        from languagepack.core.exceptions import CommandError

        result = self.run(command, env=env, cwd=cwd)
        if not result.success:
            raise CommandError(f"Command failed with exit code {result.returncode}")
        return result.output

    def commands(self) -> List[List[str]]:
        return [cmd for cmd, _ in self.calls]

    def env_for(self, *prefix: str) -> Dict[str, str]:
        """Environment of the first recorded command starting with prefix."""
        for cmd, env in self.calls:
            if tuple(cmd[: len(prefix)]) == prefix:
                return env
        raise AssertionError(f"No command starting with {prefix} was run")


@pytest.fixture
def fake_shell() -> FakeShell:
    return FakeShell()


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def fetchers():
    """One fake fetcher per artifact host."""
    from languagepack.pipeline.ruby import ArtifactFetchers

    return ArtifactFetchers(buildpack=FakeFetcher(), jvm=FakeFetcher(), rbx=FakeFetcher())
