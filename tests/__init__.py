"""
mapmerge3d test suite

Structure:
- unit/: Unit tests for individual components
- integration/: Pipeline and command-line tests
"""
