"""
Watch-driven dispatch of reconciliation passes.

The controller turns "resource changed" and "owned secret changed"
notifications into reconciliation passes with these guarantees:

- at most one active pass per resource key
- an event arriving during a pass triggers exactly one more pass after it
- a requeue action schedules a delayed pass; a newer event supersedes it
- passes always run against a fresh read of the resource

Event sources are the store's watch streams, reopened with exponential
backoff and jitter when they fail.
"""

import asyncio
import logging
import random
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Set

from bitwarden_operator.kube_store import SecretStore, WatchEvent
from bitwarden_operator.reconciler import Action, ReconcileEngine
from bitwarden_operator.schemas import (
    CRD_GROUP,
    CRD_KIND,
    BitwardenSecret,
    InvalidResource,
    ResourceKey,
)

logger = logging.getLogger(__name__)

INITIAL_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 60.0


class WatchError(Exception):
    """The API server reported an error inside a watch stream."""


def owner_keys(secret: Mapping[str, Any]) -> List[ResourceKey]:
    """Keys of the BitwardenSecrets controlling ``secret``."""
    metadata = secret.get("metadata") or {}
    namespace = metadata.get("namespace")
    if not namespace:
        return []

    keys = []
    for ref in metadata.get("ownerReferences") or []:
        api_version = ref.get("apiVersion") or ""
        if (
            ref.get("kind") == CRD_KIND
            and api_version.split("/")[0] == CRD_GROUP
            and ref.get("controller")
            and ref.get("name")
        ):
            keys.append((namespace, ref["name"]))
    return keys


def _object_key(obj: Mapping[str, Any]) -> Optional[ResourceKey]:
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace")
    name = metadata.get("name")
    if not namespace or not name:
        return None
    return (namespace, name)


class Controller:
    """Serializes passes per resource and runs them on a worker pool."""

    def __init__(self, engine: ReconcileEngine, store: SecretStore, workers: int = 4):
        if workers < 1:
            raise ValueError("workers must be at least 1")

        self.engine = engine
        self.store = store
        self.workers = workers

        self._queue: "asyncio.Queue[ResourceKey]" = asyncio.Queue()
        self._queued: Set[ResourceKey] = set()
        self._active: Set[ResourceKey] = set()
        self._dirty: Set[ResourceKey] = set()
        self._force: Set[ResourceKey] = set()
        self._timers: Dict[ResourceKey, asyncio.TimerHandle] = {}
        self._tasks: List[asyncio.Task] = []
        self._running = False

    def enqueue(self, key: ResourceKey, force: bool = False) -> None:
        """
        Request a pass for ``key``.

        Args:
            key: (namespace, name) of the BitwardenSecret.
            force: Ignore the freshness window for the next pass.
        """
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if force:
            self._force.add(key)

        if key in self._active:
            self._dirty.add(key)
        elif key not in self._queued:
            self._queued.add(key)
            self._queue.put_nowait(key)

    def enqueue_owner(self, secret: Mapping[str, Any], force: bool = False) -> None:
        """Request a pass for every BitwardenSecret that controls ``secret``."""
        for key in owner_keys(secret):
            self.enqueue(key, force=force)

    def forget(self, key: ResourceKey) -> None:
        """Drop pending work for a deleted resource."""
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._force.discard(key)
        self.engine.forget(key)

    def _schedule(self, key: ResourceKey, delay: float) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire_timer, key)

    def _fire_timer(self, key: ResourceKey) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    def pending_requeue(self, key: ResourceKey) -> bool:
        return key in self._timers

    async def process(self, key: ResourceKey) -> Optional[Action]:
        """
        Run one pass for ``key`` and apply the resulting action.

        Returns:
            The action taken, or None if the resource is gone or invalid.
        """
        namespace, name = key
        force = key in self._force
        self._force.discard(key)

        try:
            raw = await self.store.get_resource(namespace, name)
        except Exception as e:
            delay = self.engine.retry_policy.initial_delay
            logger.warning("Failed to read BitwardenSecret %s/%s: %s", namespace, name, e)
            if force:
                self._force.add(key)
            self._schedule(key, delay)
            return Action.requeue(delay)

        if raw is None:
            logger.info("BitwardenSecret %s/%s no longer exists", namespace, name)
            self.forget(key)
            return None

        try:
            resource = BitwardenSecret.from_dict(raw)
        except InvalidResource as e:
            # cannot fix itself; wait for the next edit
            logger.error("BitwardenSecret %s/%s is invalid: %s", namespace, name, e)
            return None

        if force and resource.status is not None:
            resource = replace(resource, status=None)

        try:
            action = await self.engine.reconcile(resource)
            logger.info("reconciled %s:%s", namespace, name)
        except Exception as e:
            logger.warning("reconcile failed: %s", e)
            action = self.engine.error_policy(resource, e)

        if action.requeue_after is not None:
            self._schedule(key, action.requeue_after)
        return action

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            self._active.add(key)
            try:
                await self.process(key)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("worker %d: unexpected error for %s/%s: %s", index, key[0], key[1], e)
            finally:
                self._active.discard(key)
                self._queue.task_done()
                if key in self._dirty:
                    self._dirty.discard(key)
                    self.enqueue(key)

    def handle_resource_event(self, event_type: str, obj: Mapping[str, Any]) -> None:
        if event_type == "ERROR":
            raise WatchError(str(obj.get("message") or obj))
        key = _object_key(obj)
        if key is None:
            return
        if event_type == "DELETED":
            self.forget(key)
        else:
            self.enqueue(key)

    def handle_secret_event(self, event_type: str, obj: Mapping[str, Any]) -> None:
        if event_type == "ERROR":
            raise WatchError(str(obj.get("message") or obj))
        # a deleted target must be recreated even inside the freshness window
        self.enqueue_owner(obj, force=event_type == "DELETED")

    async def watch(
        self,
        stream_factory: Callable[[], AsyncIterator[WatchEvent]],
        handler: Callable[[str, Mapping[str, Any]], None],
        name: str,
    ) -> None:
        """Consume a watch stream forever, reconnecting with backoff + jitter."""
        delay = INITIAL_RECONNECT_DELAY
        while self._running:
            try:
                async for event_type, obj in stream_factory():
                    handler(event_type, obj)
                    delay = INITIAL_RECONNECT_DELAY
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("%s watch error: %s. Reconnecting in %.1fs", name, e, delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, MAX_RECONNECT_DELAY)
                delay += random.uniform(0, delay * 0.1)

    async def start(self) -> None:
        """Start workers and watch loops."""
        if self._running:
            return
        self._running = True
        logger.info("Starting Operator...")
        for index in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(index)))
        self._tasks.append(
            asyncio.create_task(
                self.watch(self.store.watch_resources, self.handle_resource_event, "BitwardenSecret")
            )
        )
        self._tasks.append(
            asyncio.create_task(
                self.watch(self.store.watch_secrets, self.handle_secret_event, "Secret")
            )
        )

    async def stop(self) -> None:
        """Cancel timers, watches and workers. In-flight passes are abandoned."""
        self._running = False
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Operator stopped")
