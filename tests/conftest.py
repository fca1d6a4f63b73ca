"""
Shared pytest fixtures for the load generator test suite.

Fixtures follow the Arrange-Act-Assert (AAA) pattern and keep every
test isolated: each test gets a fresh metric registry, run options
tuned for sub-second runs, and -- for end-to-end tests -- a live fake
microservice mesh on an ephemeral port.

Key Concepts Demonstrated:
- Fixture scopes (function, session)
- Environment setup before importing the package under test
- Live server fixture running a Flask app in a background thread
- Test data factories backed by Faker
"""

import os
import threading
from collections.abc import Generator

import pytest
from faker import Faker
from werkzeug.serving import make_server

# Set testing environment before importing the engine
os.environ["LOADGEN_ENV"] = "testing"

from loadgen.config import TestingConfig
from loadgen.metrics import MetricRegistry
from loadgen.runtime import RunOptions
from tests.mesh_app import create_mesh_app


fake = Faker()


# -----------------------------------------------------------------------------
# Engine Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def registry() -> MetricRegistry:
    """Fresh, empty metric registry for one test."""
    return MetricRegistry()


@pytest.fixture
def options_factory():
    """
    Factory fixture for :class:`RunOptions` based on ``TestingConfig``.

    Example:
        def test_something(options_factory):
            options = options_factory(think_time=0.1)
    """

    def _create_options(**overrides) -> RunOptions:
        return RunOptions.from_config(TestingConfig, **overrides)

    return _create_options


# -----------------------------------------------------------------------------
# Live Mesh Fixtures
# -----------------------------------------------------------------------------

def _serve(app) -> Generator[str, None, None]:
    server = make_server("127.0.0.1", 0, app, threaded=True)
    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_port}"
    finally:
        server.shutdown()
        server_thread.join(timeout=5)


@pytest.fixture(scope="session")
def mesh_url() -> Generator[str, None, None]:
    """Base URL of a healthy fake mesh, shared by the whole session."""
    yield from _serve(create_mesh_app())


@pytest.fixture(scope="session")
def broken_mesh_url() -> Generator[str, None, None]:
    """Base URL of a fake mesh where every endpoint answers 500."""
    yield from _serve(create_mesh_app(forced_status=500))


# -----------------------------------------------------------------------------
# Test Data Factory Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def fixture_tables() -> dict:
    """
    Random ``users`` / ``products`` fixture tables shaped like the run file's.

    Returns:
        Dictionary with three users and four products.
    """
    users = [
        {"id": index, "username": fake.user_name(), "email": fake.email()}
        for index in range(1, 4)
    ]
    products = [
        {
            "id": index,
            "name": fake.word().title(),
            "price": float(fake.pydecimal(left_digits=3, right_digits=2, positive=True)),
        }
        for index in range(1, 5)
    ]
    return {"users": users, "products": products}
