"""
Bundler integration.

Reads Gemfile.lock and installs the application's gems.
"""

from .install import BundlerInstaller, DependencyInstallResult, classify_failure
from .lockfile import GemfileLock, load_lockfile, parse_lockfile

__all__ = [
    "BundlerInstaller",
    "DependencyInstallResult",
    "GemfileLock",
    "classify_failure",
    "load_lockfile",
    "parse_lockfile",
]
