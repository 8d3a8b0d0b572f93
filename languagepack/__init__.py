"""
languagepack: build orchestration for Ruby applications.

Resolves the ruby version an application needs, installs it and its gems
into the build directory and keeps a build cache so later builds are
incremental.
"""

__version__ = "0.77.0"
