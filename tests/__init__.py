"""
Test suite for dbconverge.

Unit tests live in tests/unit and run against mocked asyncpg objects or
the in-memory catalog defined in tests/conftest.py.
"""
