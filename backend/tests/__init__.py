"""
Test Suite

Tests for the CRM automation backend.

Structure:
    tests/
    ├── conftest.py         # Pytest fixtures (mongomock database, fake clock and collaborators)
    ├── factories.py        # Payload builders
    ├── unit/               # Engine, scheduler and service tests
    └── integration/        # HTTP collaborators and API endpoint tests

To run tests:
    pytest tests/
    pytest tests/unit/
    pytest tests/integration/
"""
