"""
Core functionality for languagepack.

This package contains the foundational modules that other components depend on.
"""

from .download import DownloadError, download_file
from .exceptions import (
    ArtifactFetchError,
    BestEffortStepFailure,
    ChecksumMismatchError,
    CommandError,
    ConfigurationError,
    DependencyInstallError,
    LanguagePackError,
    MissingLockFileError,
    UnreadableManifestError,
    UnsupportedVersionError,
)
from .filesystem import (
    ArchiveExtractionError,
    FilesystemError,
    InsecureArchiveError,
    UnsupportedArchiveFormat,
    atomic_write,
    compute_file_hash,
    extract_archive,
    recursive_copy,
    remove_path,
    safe_rmtree,
)
from .shell import CommandResult, ShellRunner

__all__ = [
    # Download
    "DownloadError",
    "download_file",
    # Exceptions
    "LanguagePackError",
    "ConfigurationError",
    "CommandError",
    "UnsupportedVersionError",
    "ArtifactFetchError",
    "ChecksumMismatchError",
    "MissingLockFileError",
    "UnreadableManifestError",
    "DependencyInstallError",
    "BestEffortStepFailure",
    # Filesystem
    "FilesystemError",
    "ArchiveExtractionError",
    "UnsupportedArchiveFormat",
    "InsecureArchiveError",
    "atomic_write",
    "compute_file_hash",
    "extract_archive",
    "recursive_copy",
    "remove_path",
    "safe_rmtree",
    # Shell
    "CommandResult",
    "ShellRunner",
]
