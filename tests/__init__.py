"""
Test Suite

Tests for the StudioFlow automation engine.

Structure:
    tests/
    ├── __init__.py         # This file
    ├── conftest.py         # Pytest fixtures
    ├── factories.py        # Domain object builders, recording transports
    ├── unit/               # Unit tests
    │   ├── test_engine/    # Engine tests
    │   ├── test_repositories/
    │   ├── test_services/  # Transports and operator services
    │   └── test_utils/     # Utility tests
    └── integration/
        └── test_api/       # API endpoint tests

To run tests:
    pytest tests/
    pytest tests/unit/
    pytest tests/integration/
"""
