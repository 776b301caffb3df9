"""Test doubles for the bw CLI and the cluster store."""
import asyncio
import copy
import json
from typing import Any, Dict, List, Optional

from bitwarden_operator.bitwarden_cli import CommandResult
from bitwarden_operator.kube_store import SecretStore


ITEM_ID = "00000000-0000-0000-0000-000000000000"
SESSION_TOKEN = "dGVzdC1zZXNzaW9uLXRva2Vu"

UNLOCK_OUTPUT = (
    "Your vault is now unlocked!\n\n"
    "To unlock your vault, set your session key to the `BW_SESSION` environment variable. ex:\n"
    f'$ export BW_SESSION="{SESSION_TOKEN}"\n'
    f'> $env:BW_SESSION="{SESSION_TOKEN}"\n'
)


def item_response(data: Optional[Dict[str, Any]], success: bool = True) -> CommandResult:
    """``bw --response get item`` output wrapping ``data``."""
    body = {"success": success, "data": data}
    return CommandResult(exit_code=0, stdout=json.dumps(body).encode("utf-8"))


class FakeRunner:
    """
    Scripted ``bw`` runner.

    Responses are queued per command (login, unlock, sync, get). The last
    queued response is reused once the queue is down to one entry.
    Exceptions in the queue are raised instead of returned.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.responses: Dict[str, list] = {}
        self.items: Dict[str, Dict[str, Any]] = {}
        self.gate: Optional[asyncio.Event] = None
        self.active = 0
        self.max_active = 0

    def on(self, command: str, *results) -> "FakeRunner":
        self.responses[command] = list(results)
        return self

    def add_item(self, data: Dict[str, Any]) -> "FakeRunner":
        self.items[data["id"]] = data
        return self

    def commands(self) -> List[str]:
        return [self._command(args) for args, _ in self.calls]

    @staticmethod
    def _command(args) -> str:
        return args[1] if args[0] == "--response" else args[0]

    def _default(self, command: str, args) -> CommandResult:
        if command == "unlock":
            return CommandResult(exit_code=0, stdout=UNLOCK_OUTPUT.encode("utf-8"))
        if command == "get":
            item_id = args[3]
            if item_id in self.items:
                return item_response(self.items[item_id])
            return CommandResult(
                exit_code=1,
                stdout=json.dumps({"success": False, "message": "Not found."}).encode("utf-8"),
            )
        return CommandResult(exit_code=0)

    async def run(self, args, env):
        args = list(args)
        self.calls.append((args, dict(env)))
        command = self._command(args)

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)

            queue = self.responses.get(command)
            if queue:
                result = queue.pop(0) if len(queue) > 1 else queue[0]
            else:
                result = self._default(command, args)
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.active -= 1


class InMemorySecretStore(SecretStore):
    """SecretStore keeping resources and secrets in dictionaries."""

    def __init__(self):
        self.resources: Dict[tuple, Dict[str, Any]] = {}
        self.secrets: Dict[tuple, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.status_patches: List[tuple] = []
        self.errors: Dict[str, Exception] = {}
        self.resource_events: "asyncio.Queue" = asyncio.Queue()
        self.secret_events: "asyncio.Queue" = asyncio.Queue()

    def add_resource(self, obj: Dict[str, Any]) -> tuple:
        key = (obj["metadata"]["namespace"], obj["metadata"]["name"])
        self.resources[key] = copy.deepcopy(obj)
        return key

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.errors:
            raise self.errors[name]

    async def get_resource(self, namespace, name):
        self._record("get_resource")
        obj = self.resources.get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    async def list_resources(self):
        self._record("list_resources")
        return [copy.deepcopy(obj) for obj in self.resources.values()]

    async def get_secret(self, namespace, name):
        self._record("get_secret")
        secret = self.secrets.get((namespace, name))
        return copy.deepcopy(secret) if secret is not None else None

    async def create_secret(self, manifest):
        self._record("create_secret")
        metadata = manifest["metadata"]
        self.secrets[(metadata["namespace"], metadata["name"])] = copy.deepcopy(manifest)

    async def replace_secret(self, manifest):
        self._record("replace_secret")
        metadata = manifest["metadata"]
        self.secrets[(metadata["namespace"], metadata["name"])] = copy.deepcopy(manifest)

    async def patch_status(self, resource, status):
        self._record("patch_status")
        self.status_patches.append((resource.key, dict(status)))
        obj = self.resources.get(resource.key)
        if obj is not None:
            obj["status"] = dict(status)

    async def _drain(self, queue):
        while True:
            yield await queue.get()

    def watch_resources(self):
        return self._drain(self.resource_events)

    def watch_secrets(self):
        return self._drain(self.secret_events)


def make_resource(
    name: str = "my-secret",
    namespace: str = "default",
    spec: Optional[Dict[str, Any]] = None,
    status: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Raw BitwardenSecret object as the API server returns it."""
    obj: Dict[str, Any] = {
        "apiVersion": "bitwarden-secret-operator.io/v1beta1",
        "kind": "BitwardenSecret",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{namespace}-{name}",
            "resourceVersion": "1",
            "generation": 1,
        },
        "spec": spec if spec is not None else {},
    }
    if status is not None:
        obj["status"] = status
    return obj


