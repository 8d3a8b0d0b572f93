"""
Gemfile.lock reader.

Only the parts the build needs are parsed: resolved gem names and versions,
target platforms, the RUBY VERSION section and BUNDLED WITH. Sections look
like::

    GEM
      remote: https://rubygems.org/
      specs:
        execjs (2.0.2)
        rails (4.0.0)
          actionmailer (= 4.0.0)

    PLATFORMS
      ruby
      x86-mingw32

    RUBY VERSION
       ruby 2.0.0p247
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from languagepack.core.exceptions import UnreadableManifestError

logger = logging.getLogger(__name__)

LOCKFILE_NAME = "Gemfile.lock"

SPEC_SOURCES = ("GEM", "GIT", "PATH")
SPEC_PATTERN = re.compile(r"^ {4}(?P<name>[^\s(]+)(?: \((?P<version>[^)]*)\))?$")
RUBY_VERSION_PATTERN = re.compile(
    r"^ruby (?P<version>\d+\.\d+\.\d+)(?:p(?P<patchlevel>\d+))?"
    r"(?: \((?P<engine>[a-z]+) (?P<engine_version>[\w.]+)\))?$"
)
WINDOWS_PLATFORM_PATTERN = re.compile(r"mingw|mswin")


@dataclass
class GemfileLock:
    """Parsed contents of a Gemfile.lock."""

    specs: Dict[str, Optional[str]] = field(default_factory=dict)
    platforms: List[str] = field(default_factory=list)
    ruby_version: Optional[str] = None
    bundled_with: Optional[str] = None

    def has_gem(self, name: str) -> bool:
        return name in self.specs

    def gem_version(self, name: str) -> Optional[str]:
        return self.specs.get(name)

    @property
    def has_windows_platform(self) -> bool:
        """True if the lock file was generated on Windows."""
        return any(WINDOWS_PLATFORM_PATTERN.search(p) for p in self.platforms)

    def ruby_version_spec(self) -> Optional[str]:
        """
        RUBY VERSION section in artifact store form.

        Example:
            "ruby 1.9.3p392 (jruby 1.7.4)" becomes "ruby-1.9.3-p392-jruby-1.7.4"
        """
        if not self.ruby_version:
            return None

        match = RUBY_VERSION_PATTERN.match(self.ruby_version)
        if not match:
            logger.debug(f"Ignoring unrecognised RUBY VERSION: {self.ruby_version}")
            return None

        spec = f"ruby-{match.group('version')}"
        if match.group("patchlevel"):
            spec += f"-p{match.group('patchlevel')}"
        if match.group("engine") and match.group("engine") != "ruby":
            spec += f"-{match.group('engine')}-{match.group('engine_version')}"
        return spec


def parse_lockfile(content: str) -> GemfileLock:
    """Parse the text of a Gemfile.lock."""
    lock = GemfileLock()
    section = None
    in_specs = False

    for line in content.splitlines():
        if not line.strip():
            section = None
            in_specs = False
            continue

        if not line.startswith(" "):
            section = line.strip()
            in_specs = False
            continue

        if section in SPEC_SOURCES:
            if line.strip() == "specs:":
                in_specs = True
                continue
            if in_specs:
                match = SPEC_PATTERN.match(line.rstrip())
                if match:
                    lock.specs[match.group("name")] = match.group("version")
        elif section == "PLATFORMS":
            lock.platforms.append(line.strip())
        elif section == "RUBY VERSION":
            lock.ruby_version = line.strip()
        elif section == "BUNDLED WITH":
            lock.bundled_with = line.strip()

    return lock


def load_lockfile(build_path: Path) -> Optional[GemfileLock]:
    """Read Gemfile.lock from the build directory, or None if absent."""
    path = Path(build_path) / LOCKFILE_NAME
    if not path.exists():
        return None
    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise UnreadableManifestError(LOCKFILE_NAME, str(e)) from e
    return parse_lockfile(content)
