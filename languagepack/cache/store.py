"""
Persistent build cache.

The cache directory survives between builds of the same application. It is
organised in path-keyed namespaces ("vendor", "vendor/bundle", ".bundle")
mirroring the build directory layout. A namespace is replaced as a whole on
store: the snapshot is copied to a staging directory next to its final
location and swapped in with a rename, so a build that dies mid-copy leaves
either the previous snapshot or nothing, never a half-written one.
"""

import logging
import os
import shutil
from pathlib import Path, PurePosixPath
from typing import Optional

from languagepack.core.filesystem import recursive_copy, remove_path, safe_rmtree

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".staging-"


class CacheStore:
    """
    Path-keyed snapshots of build directory contents.

    A CacheStore created without a cache directory is disabled: nothing
    exists, loads are no-ops and stores are discarded.

    Example:
        >>> cache = CacheStore(Path('/tmp/cache'), Path('/tmp/build'))
        >>> cache.store('vendor/bundle')
        >>> cache.exists('vendor/bundle')
        True
    """

    def __init__(self, cache_path: Optional[Path], build_path: Path):
        self.cache_path = Path(cache_path).resolve() if cache_path else None
        self.build_path = Path(build_path).resolve()

        if self.cache_path is not None:
            self.cache_path.mkdir(parents=True, exist_ok=True)
            self._discard_staging()
            logger.debug(f"Using build cache at {self.cache_path}")

    @property
    def enabled(self) -> bool:
        return self.cache_path is not None

    def exists(self, namespace: str) -> bool:
        """Check whether a snapshot of namespace is present."""
        if not self.enabled:
            return False
        path = self._cache_entry(namespace)
        return path.exists() or path.is_symlink()

    def load(self, namespace: str, destination: Optional[str] = None) -> bool:
        """
        Copy a snapshot into the build directory.

        Contents are merged into the destination so artifacts installed
        earlier in the build are kept.

        Args:
            namespace: Cache namespace to load
            destination: Build-relative target (defaults to namespace)

        Returns:
            True if a snapshot was loaded
        """
        if not self.exists(namespace):
            return False

        source = self._cache_entry(namespace)
        target = self._build_entry(destination or namespace)
        logger.debug(f"Loading cache {namespace} into {target}")

        if source.is_dir() and not source.is_symlink():
            recursive_copy(source, target)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            remove_path(target)
            shutil.copy2(source, target, follow_symlinks=False)
        return True

    def store(self, namespace: str) -> None:
        """
        Replace the snapshot of namespace with the build directory contents.

        When the build directory has nothing at namespace, the snapshot is
        cleared.
        """
        if not self.enabled:
            return

        source = self._build_entry(namespace)
        if not source.exists() and not source.is_symlink():
            self.clear(namespace)
            return

        target = self._cache_entry(namespace)
        target.parent.mkdir(parents=True, exist_ok=True)
        staging = target.parent / f"{STAGING_PREFIX}{target.name}-{os.getpid()}"
        remove_path(staging)

        try:
            if source.is_dir() and not source.is_symlink():
                shutil.copytree(source, staging, symlinks=True)
            else:
                shutil.copy2(source, staging, follow_symlinks=False)

            remove_path(target)
            os.replace(staging, target)
        except Exception:
            remove_path(staging)
            raise

        logger.debug(f"Stored cache {namespace}")

    def clear(self, namespace: str) -> None:
        """Remove the snapshot of namespace entirely."""
        if not self.enabled:
            return

        target = self._cache_entry(namespace)
        if target.is_dir() and not target.is_symlink():
            safe_rmtree(target, require_prefix=self.cache_path)
        else:
            remove_path(target)
        logger.debug(f"Cleared cache {namespace}")

    def _cache_entry(self, namespace: str) -> Path:
        return self.cache_path / _validate_namespace(namespace)

    def _build_entry(self, namespace: str) -> Path:
        return self.build_path / _validate_namespace(namespace)

    def _discard_staging(self) -> None:
        """Remove staging copies left behind by an interrupted build."""
        for staging in list(self.cache_path.rglob(f"{STAGING_PREFIX}*")):
            logger.debug(f"Discarding incomplete cache snapshot {staging}")
            remove_path(staging)


def _validate_namespace(namespace: str) -> str:
    """Reject namespaces that are empty, absolute or escape the cache root."""
    path = PurePosixPath(namespace)
    if not namespace or path.is_absolute() or ".." in path.parts:
        raise ValueError(f"Invalid cache namespace: {namespace!r}")
    return str(path)
