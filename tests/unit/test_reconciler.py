"""Tests for bitwarden_operator/reconciler.py: one reconciliation pass."""

from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY

from bitwarden_operator.bitwarden_cli import CommandResult, GetItemFailed
from bitwarden_operator.reconciler import Action, MaterializationError, ReconcileEngine
from bitwarden_operator.retry_policy import RetryPolicy
from bitwarden_operator.schemas import OPERATOR_HASH_LABEL, BitwardenSecret, FieldNotFound
from operator_fakes import ITEM_ID, make_resource

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

FIELD_SPEC = {
    "content": [
        {
            "kubernetesSecretKey": "TEST",
            "bitwardenId": ITEM_ID,
            "bitwardenSecretField": "super-secret-field",
        }
    ]
}


def _counter(name: str) -> float:
    return REGISTRY.get_sample_value(name) or 0.0


def _resource(spec=None, status=None) -> BitwardenSecret:
    return BitwardenSecret.from_dict(make_resource(spec=spec or FIELD_SPEC, status=status))


@pytest.fixture
def engine(session, store):
    return ReconcileEngine(session=session, store=store, clock=lambda: NOW)


@pytest.fixture
def session_with_item(session, runner, fields_item):
    runner.add_item(fields_item)
    return session


# ===========================================================================
# Freshness
# ===========================================================================


class TestFreshness:

    def test_no_status_is_stale(self, engine):
        assert not engine.is_fresh(_resource(), NOW)

    def test_inside_ttl(self, engine):
        resource = _resource(status={"checksum": "c", "last_updated": "2024-05-01T11:30:00Z"})

        assert engine.is_fresh(resource, NOW)

    def test_outside_ttl(self, engine):
        resource = _resource(status={"checksum": "c", "last_updated": "2024-05-01T10:59:59Z"})

        assert not engine.is_fresh(resource, NOW)

    def test_unreadable_timestamp_is_stale(self, engine):
        resource = _resource(status={"checksum": "c", "last_updated": "garbage"})

        assert not engine.is_fresh(resource, NOW)

    @pytest.mark.asyncio
    async def test_fresh_pass_has_no_side_effects(self, engine, store, runner):
        resource = _resource(status={"checksum": "c", "last_updated": "2024-05-01T11:59:00Z"})
        requests_before = _counter("reconcile_requests_total")

        action = await engine.reconcile(resource)

        assert action == Action.requeue(60.0)
        assert store.calls == []
        assert runner.calls == []
        assert _counter("reconcile_requests_total") == requests_before + 1


# ===========================================================================
# Successful passes
# ===========================================================================


class TestReconcile:

    @pytest.mark.asyncio
    async def test_creates_missing_secret(self, engine, store, session_with_item):
        await session_with_item.unlock()
        successes_before = _counter("reconcile_requests_success_total")

        action = await engine.reconcile(_resource())

        assert action == Action.await_change()
        assert store.calls == ["get_secret", "create_secret", "patch_status"]
        secret = store.secrets[("default", "my-secret")]
        assert secret["data"] == {"TEST": "c3VwZXItc2VjcmV0"}
        key, status = store.status_patches[0]
        assert key == ("default", "my-secret")
        assert status["last_updated"] == "2024-05-01T12:00:00Z"
        assert len(status["checksum"]) == 64
        assert status["checksum"][:63] == secret["metadata"]["labels"][OPERATOR_HASH_LABEL]
        assert _counter("reconcile_requests_success_total") == successes_before + 1

    @pytest.mark.asyncio
    async def test_replaces_existing_secret(self, engine, store, session_with_item):
        await session_with_item.unlock()
        store.secrets[("default", "my-secret")] = {"metadata": {"name": "my-secret"}, "data": {}}

        await engine.reconcile(_resource())

        assert store.calls == ["get_secret", "replace_secret", "patch_status"]
        assert store.secrets[("default", "my-secret")]["data"] == {"TEST": "c3VwZXItc2VjcmV0"}

    @pytest.mark.asyncio
    async def test_stale_resource_is_refreshed(self, engine, store, session_with_item):
        await session_with_item.unlock()
        resource = _resource(status={"checksum": "c", "last_updated": "2024-05-01T09:00:00Z"})

        await engine.reconcile(resource)

        assert "create_secret" in store.calls

    @pytest.mark.asyncio
    async def test_item_fetched_once_per_id(self, engine, session_with_item, runner):
        await session_with_item.unlock()
        spec = {
            "bitwardenId": ITEM_ID,
            "content": [
                {"kubernetesSecretKey": "A", "bitwardenSecretField": "super-secret-field"},
                {"kubernetesSecretKey": "B", "bitwardenSecretField": "super-secret-field"},
            ],
        }

        await engine.reconcile(_resource(spec=spec))

        assert runner.commands().count("get") == 1

    @pytest.mark.asyncio
    async def test_literal_only_resource_skips_vault(self, engine, store, session, runner):
        spec = {"content": [{"kubernetesSecretKey": "MODE", "kubernetesSecretValue": "prod"}]}

        await engine.reconcile(_resource(spec=spec))

        assert runner.calls == []
        assert ("default", "my-secret") in store.secrets


# ===========================================================================
# Failed passes
# ===========================================================================


class TestReconcileFailure:

    @pytest.mark.asyncio
    async def test_missing_field_writes_nothing(self, engine, store, session_with_item):
        await session_with_item.unlock()
        spec = {
            "content": [
                {"kubernetesSecretKey": "A", "bitwardenId": ITEM_ID, "bitwardenSecretField": "nope"}
            ]
        }

        with pytest.raises(MaterializationError) as exc_info:
            await engine.reconcile(_resource(spec=spec))

        assert isinstance(exc_info.value.cause, FieldNotFound)
        assert exc_info.value.resource_key == ("default", "my-secret")
        assert store.calls == []
        assert store.status_patches == []

    @pytest.mark.asyncio
    async def test_vault_failure(self, engine, store, session_with_item, runner):
        await session_with_item.unlock()
        runner.on("get", CommandResult(exit_code=1))

        with pytest.raises(MaterializationError) as exc_info:
            await engine.reconcile(_resource())

        assert isinstance(exc_info.value.cause, GetItemFailed)
        assert store.secrets == {}

    @pytest.mark.asyncio
    async def test_status_failure_propagates(self, engine, store, session_with_item):
        await session_with_item.unlock()
        store.errors["patch_status"] = RuntimeError("conflict")

        with pytest.raises(RuntimeError):
            await engine.reconcile(_resource())

        assert ("default", "my-secret") in store.secrets


# ===========================================================================
# error_policy
# ===========================================================================


class TestErrorPolicy:

    def test_default_fixed_delay(self, engine):
        resource = _resource()
        errors_before = _counter("reconcile_errors_total")

        action = engine.error_policy(resource, RuntimeError("boom"))

        assert action == Action.requeue(5.0)
        assert engine.failure_count(resource.key) == 1
        assert _counter("reconcile_errors_total") == errors_before + 1

    def test_exponential_schedule(self, session, store):
        policy = RetryPolicy(initial_delay=1.0, max_delay=10.0, backoff_multiplier=2.0)
        engine = ReconcileEngine(session, store, retry_policy=policy, clock=lambda: NOW)
        resource = _resource()

        delays = [engine.error_policy(resource, RuntimeError()).requeue_after for _ in range(5)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_exhausted_budget_waits_for_change(self, session, store):
        engine = ReconcileEngine(
            session, store, retry_policy=RetryPolicy(max_attempts=2), clock=lambda: NOW
        )
        resource = _resource()

        first = engine.error_policy(resource, RuntimeError())
        second = engine.error_policy(resource, RuntimeError())

        assert first == Action.requeue(5.0)
        assert second == Action.await_change()
        assert engine.failure_count(resource.key) == 0

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, engine, session_with_item):
        await session_with_item.unlock()
        resource = _resource()
        engine.error_policy(resource, RuntimeError())

        await engine.reconcile(resource)

        assert engine.failure_count(resource.key) == 0

    def test_forget(self, engine):
        resource = _resource()
        engine.error_policy(resource, RuntimeError())

        engine.forget(resource.key)

        assert engine.failure_count(resource.key) == 0

    def test_custom_ttl(self, session, store):
        engine = ReconcileEngine(session, store, ttl=60, clock=lambda: NOW)
        resource = _resource(
            status={"checksum": "c", "last_updated": (NOW - timedelta(minutes=2)).isoformat()}
        )

        assert not engine.is_fresh(resource, NOW)
