"""Shared pytest configuration for all services."""

import os

import pytest


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers and apply --engine-path."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires a real UCI engine)"
    )
    engine_path = config.getoption("--engine-path", default=None)
    if engine_path:
        os.environ["ENGINE_PATH"] = engine_path


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip integration tests unless --integration flag is passed."""
    if config.getoption("--integration", default=False):
        return
    skip_integration = pytest.mark.skip(reason="need --integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command line options."""
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="run integration tests (requires a real UCI engine)",
    )
    parser.addoption(
        "--engine-path",
        action="store",
        default=None,
        help="UCI engine binary for integration tests (overrides ENGINE_PATH)",
    )
