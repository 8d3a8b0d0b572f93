"""
Build metadata persisted across builds.

Metadata is a small set of named text values describing the previous
successful build (ruby version, buildpack version, bundler and rubygems
versions). Each value lives in its own file under the vendor metadata
folder, which is itself a cache namespace.

Values are read once when the store is created, changed in memory during
the build and flushed together by save() at the end of a successful build.
A key that was never written is absent, which is distinct from a key
holding an empty string.

Example:
    >>> metadata = MetadataStore(build_path, cache, "vendor/cloudcontrol")
    >>> metadata.read(RUBY_VERSION_KEY)
    'ruby 2.0.0p247 (2013-06-27 revision 41674) [x86_64-linux]'
    >>> metadata.write(BUILDPACK_VERSION_KEY, "v77")
    >>> metadata.save()
"""

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from languagepack.cache.store import CacheStore
from languagepack.core.filesystem import atomic_write

logger = logging.getLogger(__name__)

# Full `ruby -v` output of the interpreter used by the last build
RUBY_VERSION_KEY = "ruby_version"
BUILDPACK_VERSION_KEY = "buildpack_version"
BUNDLER_VERSION_KEY = "bundler_version"
RUBYGEMS_VERSION_KEY = "rubygems_version"
# Resolved version string (e.g. ruby-2.0.0) of the last build
LAST_RUBY_VERSION_KEY = "buildpack_ruby_version"


def _chomp(value: str) -> str:
    """Strip a single trailing line terminator."""
    if value.endswith("\r\n"):
        return value[:-2]
    if value.endswith(("\n", "\r")):
        return value[:-1]
    return value


class MetadataStore:
    """
    Named text values carried from one build to the next.

    Attributes:
        folder: Build-relative metadata folder (also the cache namespace)
        new_app: True when no metadata from a previous build was found
    """

    def __init__(self, build_path: Path, cache: CacheStore, folder: str):
        self.build_path = Path(build_path)
        self.cache = cache
        self.folder = folder

        self.cache.load(self.folder)
        self.new_app = not self.path.exists()
        self._values: Dict[str, str] = self._read_all()

        logger.debug(
            f"Loaded {len(self._values)} metadata values from {self.path}"
            + (" (new app)" if self.new_app else "")
        )

    @property
    def path(self) -> Path:
        return self.build_path / self.folder

    def exists(self, key: str) -> bool:
        return key in self._values

    def read(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def write(self, key: str, value: str) -> None:
        """Record a value in memory; persisted by save()."""
        self._values[key] = value

    def snapshot(self) -> Mapping[str, str]:
        """Read-only copy of the current values."""
        return MappingProxyType(dict(self._values))

    def save(self) -> None:
        """Write every value to disk and store the folder in the cache."""
        for key, value in self._values.items():
            atomic_write(self.path / key, value)

        self.cache.store(self.folder)
        logger.debug(f"Saved {len(self._values)} metadata values to {self.path}")

    def _read_all(self) -> Dict[str, str]:
        values: Dict[str, str] = {}
        if not self.path.is_dir():
            return values

        for entry in sorted(self.path.iterdir()):
            if entry.name.startswith(".") or not entry.is_file():
                continue
            values[entry.name] = _chomp(entry.read_text(encoding="utf-8"))
        return values
