"""
Centralized exception hierarchy for languagepack.

Every fatal build condition derives from LanguagePackError so the CLI can
render it without a traceback. Messages are written for the application
developer: they carry version lists, expected/actual values and commands
to run, since the developer has no access to the build host.
"""

from typing import Optional, Sequence


# ============================================================================
# Base Exceptions
# ============================================================================


class LanguagePackError(Exception):
    """Base exception for all languagepack errors."""

    pass


class ConfigurationError(LanguagePackError):
    """Raised when the buildpack configuration cannot be loaded."""

    pass


class CommandError(LanguagePackError):
    """Raised when an external command cannot be started."""

    pass


# ============================================================================
# Runtime Exceptions
# ============================================================================


class UnsupportedVersionError(LanguagePackError):
    """Raised when the requested ruby version cannot be served."""

    def __init__(self, requested: str, valid_versions: Optional[Sequence[str]] = None):
        self.requested = requested
        self.valid_versions = list(valid_versions or [])
        msg = f"Invalid RUBY_VERSION specified: {requested}"
        if self.valid_versions:
            msg += f"\nValid versions: {', '.join(self.valid_versions)}"
        super().__init__(msg)


# ============================================================================
# Artifact Exceptions
# ============================================================================


class ArtifactFetchError(LanguagePackError):
    """Raised when an artifact cannot be downloaded or extracted."""

    pass


class ChecksumMismatchError(LanguagePackError):
    """Raised when a downloaded artifact does not match its published digest."""

    def __init__(self, filename: str, expected: str, actual: str, label: str = ""):
        self.filename = filename
        self.expected = expected
        self.actual = actual
        prefix = f"{label} " if label else ""
        super().__init__(
            f"{prefix}Checksum for {filename} does not match.\n"
            f"Expected {expected} but got {actual}.\n"
            f"Please try pushing again in a few minutes."
        )


# ============================================================================
# Dependency Exceptions
# ============================================================================


class MissingLockFileError(LanguagePackError):
    """Raised when the application has no Gemfile.lock."""

    def __init__(self):
        super().__init__(
            'Gemfile.lock is required. Please run "bundle install" locally\n'
            "and commit your Gemfile.lock."
        )


class UnreadableManifestError(LanguagePackError):
    """Raised when a Gemfile or Gemfile.lock is not valid UTF-8."""

    def __init__(self, name: str, reason: str):
        self.name = name
        super().__init__(
            f"{name} could not be read: {reason}\nPlease save it with UTF-8 encoding."
        )


class DependencyInstallError(LanguagePackError):
    """Raised when bundler fails to install the application's gems."""

    def __init__(self, message: str, output: str = "", hint: Optional[str] = None):
        self.output = output
        self.hint = hint
        full = message
        if hint:
            full += f"\n\n{hint}"
        if output:
            full += f"\n\nBundler Output: {output}"
        super().__init__(full)


# ============================================================================
# Non-fatal Exceptions
# ============================================================================


class BestEffortStepFailure(LanguagePackError):
    """Expected soft failure of a convenience step; never aborts the build."""

    pass
