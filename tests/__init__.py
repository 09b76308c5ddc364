"""
Schema DDL Test Suite.

This package contains:
- unit/: Unit tests (scripted engine, no database)
- integration/: Integration tests (live PostgreSQL, opt-in)
"""
