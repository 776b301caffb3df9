"""
Pytest configuration for the unit test suite.

Provides a scripted stand-in for the ``bw`` CLI and an in-memory cluster
store so reconciliation can be exercised without a vault or a cluster.
"""
import pytest

from bitwarden_operator.bitwarden_cli import BitwardenCliClient
from operator_fakes import ITEM_ID, FakeRunner, InMemorySecretStore


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow: Slow tests that should not run by default (deselect with '-m \"not slow\"')"
    )


@pytest.fixture
def fields_item():
    """Vault item with one custom field."""
    return {
        "object": "item",
        "id": ITEM_ID,
        "type": 1,
        "name": "operator-test",
        "notes": None,
        "fields": [{"name": "super-secret-field", "value": "super-secret", "type": 1}],
    }


@pytest.fixture
def note_item():
    """Secure note item without fields."""
    return {
        "object": "item",
        "id": ITEM_ID,
        "type": 2,
        "name": "operator-test-note",
        "notes": "hello-world",
        "secureNote": {"type": 0},
    }


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def session(runner):
    return BitwardenCliClient(
        client_id="user.client-id",
        client_secret="client-secret",
        client_password="master-password",
        runner=runner,
    )


@pytest.fixture
def store():
    return InMemorySecretStore()
