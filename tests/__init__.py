"""
SignGate test suite.

Tests are organized by layer:
    tests/unit/         Unit tests (temp SQLite, fake clock)
    tests/integration/  CLI tests through click's CliRunner
    tests/safety/       Guards against drift in safety-critical defaults

Run all tests:
    pytest

Run unit tests only:
    pytest tests/unit/
"""
