"""
Entry point for running the languagepack CLI as a module.

Usage: python -m languagepack.cli [command] [options]
"""

from .parser import main

if __name__ == "__main__":
    main()
