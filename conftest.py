import pytest

VAULT_ENV_VARS = (
    "BW_CLIENTID",
    "BW_CLIENTSECRET",
    "BW_PASSWORD",
    "BW_SESSION",
    "BW_CLI_PATH",
    "METRICS_ENDPOINT",
    "OPENTELEMETRY_ENDPOINT_URL",
)


@pytest.fixture(autouse=True)
def clean_vault_environment(monkeypatch):
    """Keep the developer's real Bitwarden credentials out of every test."""
    for name in VAULT_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield
