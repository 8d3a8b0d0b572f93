"""
Detect the ruby version an application declares.

The Gemfile ``ruby`` directive is authoritative; the RUBY VERSION section
of Gemfile.lock is consulted when the Gemfile has none. The result is
normalised to artifact store form (see languagepack.runtime.version).
"""

import logging
import re
from pathlib import Path
from typing import Dict, Optional

from languagepack.bundler.lockfile import load_lockfile
from languagepack.core.exceptions import UnreadableManifestError

logger = logging.getLogger(__name__)

GEMFILE_NAME = "Gemfile"

RUBY_DIRECTIVE = re.compile(r"""^\s*ruby\s*\(?\s*['"](?P<version>[^'"]+)['"](?P<options>.*)$""")
# Matches both `:engine => "jruby"` and `engine: "jruby"`
DIRECTIVE_OPTION = re.compile(
    r""":?(?P<key>engine_version|engine|patchlevel)\s*(?:=>|:)\s*['"](?P<value>[^'"]+)['"]"""
)


def parse_ruby_directive(gemfile: str) -> Optional[str]:
    """
    Extract the version declared by a Gemfile ``ruby`` directive.

    Example:
        >>> parse_ruby_directive('ruby "1.9.3", :engine => "jruby", :engine_version => "1.7.4"')
        'ruby-1.9.3-jruby-1.7.4'
    """
    for line in gemfile.splitlines():
        line = line.split("#", 1)[0]
        match = RUBY_DIRECTIVE.match(line)
        if not match:
            continue

        options: Dict[str, str] = {
            m.group("key"): m.group("value")
            for m in DIRECTIVE_OPTION.finditer(match.group("options"))
        }

        spec = f"ruby-{match.group('version')}"
        if "patchlevel" in options:
            spec += f"-p{options['patchlevel'].lstrip('p')}"
        engine = options.get("engine")
        if engine and engine != "ruby":
            spec += f"-{engine}-{options.get('engine_version', '')}"
        return spec

    return None


def detect_ruby_version(build_path: Path) -> Optional[str]:
    """
    Find the ruby version the application declares.

    Args:
        build_path: Application build directory

    Returns:
        Version in artifact store form, or None if nothing is declared
    """
    build_path = Path(build_path)
    gemfile = build_path / GEMFILE_NAME

    if gemfile.exists():
        try:
            content = gemfile.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise UnreadableManifestError(GEMFILE_NAME, str(e)) from e
        declared = parse_ruby_directive(content)
        if declared:
            logger.debug(f"Gemfile declares {declared}")
            return declared

    lock = load_lockfile(build_path)
    if lock is not None:
        declared = lock.ruby_version_spec()
        if declared:
            logger.debug(f"Gemfile.lock declares {declared}")
            return declared

    return None
