"""
Invoice store test suite.

This package contains:
- unit/: Unit tests (temporary SQLite file and blob directory per test)
- integration/: Cross-process tests (worker processes sharing one database)
"""
