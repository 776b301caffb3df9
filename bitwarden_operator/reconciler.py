"""
Reconciliation of one BitwardenSecret.

A pass is a small state machine:

    fresh (inside TTL)  -> requeue after a short delay, no side effects
    plan + fetch items  -> any failure aborts, nothing is written
    materialize         -> build the candidate Secret
    upsert              -> replace if present, create if absent
    status              -> record checksum and last_updated

Failures are handed to ``error_policy``, which decides when to retry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

from bitwarden_operator import monitoring
from bitwarden_operator.bitwarden_cli import BitwardenError, BitwardenItem
from bitwarden_operator.kube_store import SecretStore
from bitwarden_operator.materializer import MaterializedSecret, materialize
from bitwarden_operator.planner import plan_fetch
from bitwarden_operator.retry_policy import RetryPolicy
from bitwarden_operator.schemas import (
    BitwardenSecret,
    BitwardenSecretError,
    BitwardenSecretStatus,
    ResourceKey,
)

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_TTL = 3600.0
DEFAULT_FRESH_REQUEUE = 60.0


class VaultItemSource(Protocol):
    async def get_item(self, item_id: str) -> BitwardenItem:
        ...


@dataclass(frozen=True)
class Action:
    """What the controller should do after a pass. None means wait for a change."""

    requeue_after: Optional[float] = None

    @classmethod
    def requeue(cls, seconds: float) -> "Action":
        return cls(requeue_after=seconds)

    @classmethod
    def await_change(cls) -> "Action":
        return cls(requeue_after=None)


class ReconcileError(Exception):
    """Base class for errors that abort a reconciliation pass."""


class MaterializationError(ReconcileError):
    """The target secret could not be built; nothing was written."""

    def __init__(self, resource_key: ResourceKey, cause: Exception):
        self.resource_key = resource_key
        self.cause = cause
        namespace, name = resource_key
        super().__init__(f"BitwardenSecret {namespace}/{name}: {cause}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconcileEngine:
    """Runs reconciliation passes and decides requeue behavior."""

    def __init__(
        self,
        session: VaultItemSource,
        store: SecretStore,
        ttl: float = DEFAULT_REFRESH_TTL,
        fresh_requeue: float = DEFAULT_FRESH_REQUEUE,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session = session
        self.store = store
        self.ttl = ttl
        self.fresh_requeue = fresh_requeue
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._failures: Dict[ResourceKey, int] = {}

    def is_fresh(self, resource: BitwardenSecret, now: datetime) -> bool:
        """True while the last successful pass is younger than the TTL."""
        status = resource.status
        if status is None or status.last_updated is None:
            return False
        return now < status.last_updated + timedelta(seconds=self.ttl)

    async def build_secret(self, resource: BitwardenSecret, now: datetime) -> MaterializedSecret:
        """
        Fetch every needed item and materialize the target secret.

        Raises:
            MaterializationError: On any planning, vault or selection error.
        """
        try:
            to_fetch = plan_fetch(resource.spec)
            fetched: Dict[str, BitwardenItem] = {}
            for bitwarden_id in sorted(to_fetch):
                fetched[bitwarden_id] = await self.session.get_item(bitwarden_id)
            return materialize(resource, fetched, now=now)
        except (BitwardenError, BitwardenSecretError) as e:
            raise MaterializationError(resource.key, e) from e

    async def reconcile(self, resource: BitwardenSecret) -> Action:
        """
        Run one pass for ``resource``.

        Raises:
            MaterializationError: If the secret could not be built.
            kubernetes.client.exceptions.ApiException: Store errors, as raised.
        """
        namespace, name = resource.key
        logger.info("reconcile request: %s/%s", namespace, name)
        monitoring.reconcile_requests.inc()

        now = self._clock()
        if self.is_fresh(resource, now):
            logger.debug("%s/%s is fresh, skipping", namespace, name)
            return Action.requeue(self.fresh_requeue)

        with monitoring.get_tracer().start_as_current_span("reconcile") as span:
            span.set_attribute("bitwardensecret.namespace", namespace)
            span.set_attribute("bitwardensecret.name", name)

            secret = await self.build_secret(resource, now)
            manifest = secret.to_manifest()

            existing = await self.store.get_secret(secret.namespace, secret.name)
            if existing is not None:
                logger.info("Secret: %s - %s replacing...", secret.name, secret.namespace)
                await self.store.replace_secret(manifest)
                logger.info("Secret: %s - %s replaced!", secret.name, secret.namespace)
            else:
                logger.info("Secret: %s - %s creating...", secret.name, secret.namespace)
                await self.store.create_secret(manifest)
                logger.info("Secret: %s - %s created!", secret.name, secret.namespace)

            status = BitwardenSecretStatus(checksum=secret.checksum, last_updated=self._clock())
            logger.info("BitwardenSecret: %s updating status...", name)
            await self.store.patch_status(resource, status.to_dict())
            logger.info("BitwardenSecret: %s status updated!", name)

        self._failures.pop(resource.key, None)
        monitoring.reconcile_successes.inc()
        return Action.await_change()

    def error_policy(self, resource: BitwardenSecret, error: Exception) -> Action:
        """Count the failure and pick the requeue delay for ``resource``."""
        monitoring.reconcile_errors.inc()

        attempt = self._failures.get(resource.key, 0) + 1
        self._failures[resource.key] = attempt
        namespace, name = resource.key

        if self.retry_policy.exhausted(attempt):
            # the next change event starts a fresh retry budget
            self._failures.pop(resource.key, None)
            logger.error(
                "reconcile of %s/%s failed %d times, waiting for a change: %s",
                namespace, name, attempt, error,
            )
            return Action.await_change()

        delay = self.retry_policy.delay_for(attempt)
        logger.warning(
            "reconcile of %s/%s failed (attempt %d), retrying in %.1fs: %s",
            namespace, name, attempt, delay, error,
        )
        return Action.requeue(delay)

    def forget(self, key: ResourceKey) -> None:
        """Drop retry bookkeeping for a deleted resource."""
        self._failures.pop(key, None)

    def failure_count(self, key: ResourceKey) -> int:
        return self._failures.get(key, 0)
