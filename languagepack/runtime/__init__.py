"""Ruby version detection and resolution."""

from .manifest import detect_ruby_version
from .version import EngineKind, RuntimeVersion, parse_version, resolve

__all__ = [
    "EngineKind",
    "RuntimeVersion",
    "detect_ruby_version",
    "parse_version",
    "resolve",
]
