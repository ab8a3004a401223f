"""
DataStore Access Layer Test Suite
=================================

Test Organization
-----------------
- tests/unit/          : Fast unit tests against the in-memory backend
- tests/integration/   : Integration tests with testcontainers (real Redis)

Testing Philosophy
------------------
- Unit tests: fast, isolated, deterministic time (fake clock and sleep)
- Integration tests: slower, exercise the Redis backend end to end
- Use pytest markers (`unit`, `integration`) to select suites
- Follow AAA pattern: Arrange, Act, Assert
"""
