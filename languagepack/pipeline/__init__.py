"""
Build pipeline for Ruby applications.

Submodules:
- environment: immutable build environment and the application profile
- steps: step descriptors and the runner that enforces fallibility
- ruby: the ordered compile pipeline (RubyLanguagePack)
- release: release information for a compiled build
"""
