"""
Entry point for running the languagepack CLI as a module.

Usage: python -m languagepack [command] [options]
"""

from languagepack.cli.parser import main

if __name__ == "__main__":
    main()
