"""
ClinicBot Tests

Unit tests run without PostgreSQL or Redis: repositories are mocked and
Redis is patched out so sessions use the in-memory fallback.

Running Tests:
    pip install -e ".[test]"
    pytest tests/unit -v
"""
