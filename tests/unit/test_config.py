"""Tests for bitwarden_operator/config.py: OperatorConfig."""

import pytest

from bitwarden_operator.config import OperatorConfig
from bitwarden_operator.retry_policy import RetryPolicy


def _valid(**overrides) -> OperatorConfig:
    defaults = dict(client_id="user.id", client_secret="secret", client_password="password")
    defaults.update(overrides)
    return OperatorConfig(**defaults)


class TestDefaults:

    def test_operational_defaults(self):
        config = OperatorConfig()

        assert config.metrics_endpoint == "127.0.0.1:3001"
        assert config.refresh_ttl == 3600.0
        assert config.fresh_requeue == 60.0
        assert config.sync_interval == 60.0
        assert config.max_concurrent_fetches == 1
        assert config.auto_relogin is True
        assert config.otlp_endpoint is None

    def test_default_retry_policy_is_fixed_five_seconds(self):
        policy = OperatorConfig().retry_policy()

        assert policy == RetryPolicy(initial_delay=5.0, max_delay=300.0, backoff_multiplier=1.0)
        assert policy.delay_for(7) == 5.0


class TestFromEnv:

    def test_credentials_and_endpoints(self, monkeypatch):
        monkeypatch.setenv("BW_CLIENTID", "user.id")
        monkeypatch.setenv("BW_CLIENTSECRET", "secret")
        monkeypatch.setenv("BW_PASSWORD", "password")
        monkeypatch.setenv("METRICS_ENDPOINT", "0.0.0.0:9100")
        monkeypatch.setenv("OPENTELEMETRY_ENDPOINT_URL", "http://otel:4317")

        config = OperatorConfig.from_env()

        assert config.client_id == "user.id"
        assert config.client_password == "password"
        assert config.metrics_address() == ("0.0.0.0", 9100)
        assert config.otlp_endpoint == "http://otel:4317"
        assert config.validate() == []

    def test_numeric_and_bool_conversion(self, monkeypatch):
        monkeypatch.setenv("OPERATOR_REFRESH_TTL_SECONDS", "120")
        monkeypatch.setenv("OPERATOR_WORKERS", "8")
        monkeypatch.setenv("OPERATOR_AUTO_RELOGIN", "false")
        monkeypatch.setenv("OPERATOR_RETRY_MAX_ATTEMPTS", "3")

        config = OperatorConfig.from_env()

        assert config.refresh_ttl == 120.0
        assert config.workers == 8
        assert config.auto_relogin is False
        assert config.retry_policy().max_attempts == 3

    def test_invalid_number_is_ignored(self, monkeypatch, caplog):
        monkeypatch.setenv("OPERATOR_WORKERS", "many")

        config = OperatorConfig.from_env()

        assert config.workers == 4
        assert "OPERATOR_WORKERS" in caplog.text


class TestFromDict:

    def test_sets_fields(self):
        config = OperatorConfig.from_dict({"workers": 2, "retry_jitter": 0.2})

        assert config.workers == 2
        assert config.retry_jitter == 0.2

    def test_wrong_type(self):
        with pytest.raises(TypeError):
            OperatorConfig.from_dict({"workers": "two"})

    def test_not_a_dict(self):
        with pytest.raises(TypeError):
            OperatorConfig.from_dict(["workers"])


class TestValidate:

    def test_valid(self):
        assert _valid().validate() == []

    def test_missing_credentials_named(self):
        errors = OperatorConfig().validate()

        assert "missing env variable BW_CLIENTID" in errors
        assert "missing env variable BW_CLIENTSECRET" in errors
        assert "missing env variable BW_PASSWORD" in errors

    @pytest.mark.parametrize(
        "overrides",
        [
            {"log_level": "TRACE"},
            {"metrics_endpoint": "3001"},
            {"metrics_endpoint": "localhost:http"},
            {"metrics_endpoint": "localhost:70000"},
            {"refresh_ttl": -1},
            {"fresh_requeue": 0},
            {"sync_interval": 0},
            {"workers": 0},
            {"max_concurrent_fetches": 0},
        ],
    )
    def test_invalid_values(self, overrides):
        assert len(_valid(**overrides).validate()) == 1

    def test_ipv6_metrics_endpoint(self):
        assert _valid(metrics_endpoint="[::1]:3001").metrics_address() == ("::1", 3001)


class TestToDict:

    def test_excludes_credentials(self):
        data = _valid().to_dict()

        assert "client_secret" not in data
        assert "client_password" not in data
        assert "password" not in str(data.values())
