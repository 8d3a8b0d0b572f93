"""
Compile command implementation.

Installs ruby and the application's gems into the build directory.
"""

import logging
import os

from languagepack.cli.utils import load_buildpack_config, print_error, print_warnings
from languagepack.core.exceptions import LanguagePackError
from languagepack.pipeline.ruby import RubyLanguagePack

logger = logging.getLogger(__name__)


def run(args) -> int:
    """
    Run the compile command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 1 for error)
    """
    logger.debug(f"Arguments: {args}")

    build_path = args.build_dir.resolve()
    if not build_path.is_dir():
        print_error(f"Build directory not found: {build_path}")
        return 1

    try:
        config = load_buildpack_config(args)
        pack = RubyLanguagePack(
            build_path,
            args.cache_dir,
            config=config,
            environ=os.environ,
        )
        result = pack.compile()
    except LanguagePackError as e:
        print_error(str(e))
        return 1

    print_warnings(result.warnings)
    logger.debug(f"Compiled with {result.ruby_version}")
    return 0
