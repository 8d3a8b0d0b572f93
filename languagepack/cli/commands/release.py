"""
Release command implementation.

Prints config vars and default process types for a compiled build as YAML.
"""

import logging
import os

from languagepack.cli.utils import load_buildpack_config, print_error
from languagepack.core.exceptions import LanguagePackError
from languagepack.pipeline.release import release_info, render_release

logger = logging.getLogger(__name__)


def run(args) -> int:
    """
    Run the release command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    build_path = args.build_dir.resolve()
    if not build_path.is_dir():
        print_error(f"Build directory not found: {build_path}")
        return 1

    try:
        config = load_buildpack_config(args)
        info = release_info(build_path, config=config, environ=os.environ)
    except LanguagePackError as e:
        print_error("Failed to describe release", str(e))
        return 1

    print(render_release(info), end="")
    return 0
