"""
Cluster API collaborator.

SecretStore is the narrow interface the reconciler and controller use to
read BitwardenSecret resources, upsert Secrets and write status. The
Kubernetes implementation wraps the synchronous ``kubernetes`` client and
runs every call in the default executor so the event loop never blocks.

Watches run in a daemon thread per stream and hand events to the event
loop through an asyncio queue.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException

from bitwarden_operator.schemas import (
    CRD_GROUP,
    CRD_PLURAL,
    CRD_VERSION,
    BitwardenSecret,
)

logger = logging.getLogger(__name__)

WatchEvent = Tuple[str, Dict[str, Any]]

# Server-side watch timeout; the stream is reopened after it expires
WATCH_TIMEOUT_SECONDS = 300


class SecretStore(ABC):
    """
    Abstract cluster store.

    Implementations must be safe for concurrent use from async code.
    """

    @abstractmethod
    async def get_resource(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Get a raw BitwardenSecret object, or None if it does not exist."""

    @abstractmethod
    async def list_resources(self) -> List[Dict[str, Any]]:
        """List raw BitwardenSecret objects across all namespaces."""

    @abstractmethod
    async def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Get a Secret as a dict, or None if it does not exist."""

    @abstractmethod
    async def create_secret(self, manifest: Dict[str, Any]) -> None:
        """Create a Secret from a full manifest."""

    @abstractmethod
    async def replace_secret(self, manifest: Dict[str, Any]) -> None:
        """Replace an existing Secret wholesale."""

    @abstractmethod
    async def patch_status(self, resource: BitwardenSecret, status: Dict[str, Any]) -> None:
        """Merge-patch the status subresource of a BitwardenSecret."""

    @abstractmethod
    def watch_resources(self) -> AsyncIterator[WatchEvent]:
        """Stream (event_type, raw object) for BitwardenSecret changes."""

    @abstractmethod
    def watch_secrets(self) -> AsyncIterator[WatchEvent]:
        """Stream (event_type, raw object) for Secret changes."""


def load_kube_config() -> None:
    """Load in-cluster credentials, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Using local kubeconfig")


class KubernetesSecretStore(SecretStore):
    """SecretStore backed by the official Kubernetes Python client."""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self._api_client = api_client or client.ApiClient()
        self._core = client.CoreV1Api(self._api_client)
        self._custom = client.CustomObjectsApi(self._api_client)

    async def _run(self, func: Callable, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args, **kwargs))

    async def get_resource(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._run(
                self._custom.get_namespaced_custom_object,
                CRD_GROUP,
                CRD_VERSION,
                namespace,
                CRD_PLURAL,
                name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def list_resources(self) -> List[Dict[str, Any]]:
        result = await self._run(
            self._custom.list_cluster_custom_object, CRD_GROUP, CRD_VERSION, CRD_PLURAL
        )
        return list(result.get("items", []))

    async def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            secret = await self._run(self._core.read_namespaced_secret, name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return self._api_client.sanitize_for_serialization(secret)

    async def create_secret(self, manifest: Dict[str, Any]) -> None:
        namespace = manifest["metadata"]["namespace"]
        await self._run(self._core.create_namespaced_secret, namespace, manifest)

    async def replace_secret(self, manifest: Dict[str, Any]) -> None:
        metadata = manifest["metadata"]
        await self._run(
            self._core.replace_namespaced_secret, metadata["name"], metadata["namespace"], manifest
        )

    async def patch_status(self, resource: BitwardenSecret, status: Dict[str, Any]) -> None:
        await self._run(
            self._custom.patch_namespaced_custom_object_status,
            CRD_GROUP,
            CRD_VERSION,
            resource.namespace,
            CRD_PLURAL,
            resource.name,
            {"status": status},
        )

    def watch_resources(self) -> AsyncIterator[WatchEvent]:
        return self._stream(
            self._custom.list_cluster_custom_object,
            CRD_GROUP,
            CRD_VERSION,
            CRD_PLURAL,
            name="bitwardensecret-watch",
        )

    def watch_secrets(self) -> AsyncIterator[WatchEvent]:
        return self._stream(self._core.list_secret_for_all_namespaces, name="secret-watch")

    async def _stream(self, list_func: Callable, *args, name: str) -> AsyncIterator[WatchEvent]:
        """
        Bridge a blocking watch stream into the event loop.

        Ends by raising the error that stopped the underlying stream, or
        normally when the server-side timeout expires.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        done = object()
        watcher = watch.Watch()

        def emit(item: Any) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # loop already closed during shutdown
                watcher.stop()

        def pump() -> None:
            try:
                for event in watcher.stream(
                    list_func, *args, timeout_seconds=WATCH_TIMEOUT_SECONDS
                ):
                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        obj = self._api_client.sanitize_for_serialization(obj)
                    emit((event.get("type"), obj))
                emit(done)
            except Exception as e:
                emit(e)

        thread = threading.Thread(target=pump, daemon=True, name=name)
        thread.start()
        try:
            while True:
                item = await queue.get()
                if item is done:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            watcher.stop()

    async def close(self) -> None:
        await self._run(self._api_client.close)
