"""
Bitwarden CLI session manager.

Wraps the ``bw`` command line tool behind a single authenticated session:

    login   -> API key login (idempotent, "already logged in" is success)
    unlock  -> vault password unlock, yields the BW_SESSION token
    sync    -> refresh the local vault copy using the session token
    get     -> fetch one item as JSON using the session token

The session token and its staleness flags live in memory only and are
shared by every reconciliation and the background resync task.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from bitwarden_operator.session_lock import SessionLock

logger = logging.getLogger(__name__)

BW_CLIENTID = "BW_CLIENTID"
BW_CLIENTSECRET = "BW_CLIENTSECRET"
BW_PASSWORD = "BW_PASSWORD"
BW_SESSION = "BW_SESSION"

ALREADY_LOGGED_IN_PREFIX = "You are already logged in as"
SESSION_MARKER = 'BW_SESSION="'


class BitwardenError(Exception):
    """Base class for Bitwarden session errors."""


class MissingEnvVariable(BitwardenError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"missing env variable {name}")


class LoginFailed(BitwardenError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"bw login failed: {reason}")


class UnlockFailed(BitwardenError):
    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__(f"`bw unlock` failed{': ' + reason if reason else ''}")


class SyncFailed(BitwardenError):
    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__(f"`bw sync` failed{': ' + reason if reason else ''}")


class SyncFailedTokenMissing(BitwardenError):
    def __init__(self):
        super().__init__("`bw sync` failed because session token was not initialized")


class ItemNotFound(BitwardenError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"bw get item failed: {item_id}, not found")


class GetItemFailed(BitwardenError):
    def __init__(self, item_id: str, cause: str):
        self.item_id = item_id
        self.cause = cause
        super().__init__(f"bw get item failed: {item_id}, error: {cause}")


@dataclass(frozen=True)
class BitwardenItemField:
    name: str
    value: str


@dataclass(frozen=True)
class BitwardenItem:
    """Snapshot of a vault item as returned by ``bw get item``."""

    id: str
    note: Optional[str] = None
    fields: Optional[List[BitwardenItemField]] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BitwardenItem":
        """
        Build an item from the CLI JSON payload.

        Notes are stored under ``notes`` by the CLI. Fields with a null value
        (hidden or boolean fields never set) are read as empty strings.

        Raises:
            ValueError: If the payload is not an object or has no string id.
        """
        if not isinstance(data, Mapping):
            raise ValueError(f"Expected object, got {type(data).__name__}")

        item_id = data.get("id")
        if not isinstance(item_id, str):
            raise ValueError("Bitwarden item is missing a string 'id'")

        note = data.get("notes")
        if note is not None and not isinstance(note, str):
            raise ValueError("Bitwarden item 'notes' must be a string")

        fields: Optional[List[BitwardenItemField]] = None
        raw_fields = data.get("fields")
        if raw_fields is not None:
            if not isinstance(raw_fields, list):
                raise ValueError("Bitwarden item 'fields' must be a list")
            fields = []
            for raw in raw_fields:
                if not isinstance(raw, Mapping) or not isinstance(raw.get("name"), str):
                    raise ValueError("Bitwarden item field must have a string 'name'")
                value = raw.get("value")
                fields.append(
                    BitwardenItemField(name=raw["name"], value="" if value is None else str(value))
                )

        return cls(id=item_id, note=note, fields=fields)

    def get_field(self, name: str) -> Optional[BitwardenItemField]:
        """Return the first field with exactly this name."""
        for item_field in self.fields or []:
            if item_field.name == name:
                return item_field
        return None


@dataclass
class SessionState:
    session_token: Optional[str] = None
    last_unlock: Optional[datetime] = None
    last_sync: Optional[datetime] = None
    needs_relogin: bool = False


@dataclass
class CommandResult:
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""


class VaultCommandRunner(Protocol):
    """Runs one ``bw`` invocation and returns its exit code and output."""

    async def run(self, args: Sequence[str], env: Mapping[str, str]) -> CommandResult:
        ...


class SubprocessRunner:
    """Runs the Bitwarden CLI as a child process without blocking the loop."""

    def __init__(self, binary: str = "bw"):
        self.binary = binary

    async def run(self, args: Sequence[str], env: Mapping[str, str]) -> CommandResult:
        """
        Spawn the CLI and wait for it to exit.

        The child inherits the operator's environment (PATH, HOME, the CLI's
        appdata dir) with ``env`` layered on top.

        Raises:
            OSError: If the binary cannot be spawned.
        """
        process_env = dict(os.environ)
        process_env.update(env)
        process = await asyncio.create_subprocess_exec(
            self.binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=process_env,
        )
        stdout, stderr = await process.communicate()
        return CommandResult(exit_code=process.returncode, stdout=stdout, stderr=stderr)


def parse_session_token(output: str) -> Optional[str]:
    """Extract the token from ``bw unlock`` output (``BW_SESSION="<token>"``)."""
    begin = output.find(SESSION_MARKER)
    if begin < 0:
        return None
    begin += len(SESSION_MARKER)
    end = output.find('"', begin)
    if end < 0:
        return None
    token = output[begin:end]
    return token or None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


class BitwardenCliClient:
    """
    Owns the single Bitwarden CLI session.

    Unlock and sync hold the session lock exclusively for the whole process
    call. Item fetches hold it in shared mode and additionally take one of
    ``max_concurrent_fetches`` fetch slots; with the default of 1 all
    fetches are serialized, which is what a single ``bw`` session token
    tolerates safely.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        client_password: str,
        runner: Optional[VaultCommandRunner] = None,
        max_concurrent_fetches: int = 1,
    ):
        if max_concurrent_fetches < 1:
            raise ValueError("max_concurrent_fetches must be at least 1")

        self._client_id = client_id
        self._client_secret = client_secret
        self._client_password = client_password
        self._runner: VaultCommandRunner = runner or SubprocessRunner()
        self._state = SessionState()
        self._lock = SessionLock()
        self._fetch_slots = asyncio.Semaphore(max_concurrent_fetches)

    @classmethod
    def from_env(
        cls,
        runner: Optional[VaultCommandRunner] = None,
        max_concurrent_fetches: int = 1,
    ) -> "BitwardenCliClient":
        """
        Build a client from BW_CLIENTID, BW_CLIENTSECRET and BW_PASSWORD.

        Raises:
            MissingEnvVariable: If any of the three variables is unset or empty.
        """
        values = {}
        for name in (BW_CLIENTID, BW_CLIENTSECRET, BW_PASSWORD):
            value = os.environ.get(name)
            if not value:
                raise MissingEnvVariable(name)
            values[name] = value

        return cls(
            client_id=values[BW_CLIENTID],
            client_secret=values[BW_CLIENTSECRET],
            client_password=values[BW_PASSWORD],
            runner=runner,
            max_concurrent_fetches=max_concurrent_fetches,
        )

    @property
    def state(self) -> SessionState:
        """Copy of the current session state."""
        return replace(self._state)

    @property
    def needs_relogin(self) -> bool:
        return self._state.needs_relogin

    async def login(self) -> None:
        """
        Log in with the API key.

        Raises:
            LoginFailed: On any failure other than "already logged in".
        """
        logger.info("`bw login`")
        try:
            result = await self._runner.run(
                ["login", "--apikey", "--nointeraction"],
                {BW_CLIENTID: self._client_id, BW_CLIENTSECRET: self._client_secret},
            )
        except OSError as e:
            logger.error("`bw login` could not be started: %s", e)
            raise LoginFailed(f"could not start bw: {e}") from e

        if result.exit_code == 0:
            logger.info("Successfully logged in")
            return

        if result.exit_code == 1:
            stderr = _decode(result.stderr)
            if stderr.startswith(ALREADY_LOGGED_IN_PREFIX):
                logger.info("Already logged in")
                return
            logger.error("Login Error: CLI returned exitCode 1 but not 'already logged in'")
            raise LoginFailed("CLI returned exitCode 1 but not 'already logged in'")

        logger.error("Login Error: CLI returned unhandled exitCode: %s", result.exit_code)
        raise LoginFailed(f"CLI returned unhandled exitCode: {result.exit_code}")

    async def unlock(self) -> None:
        """
        Unlock the vault and store a fresh session token.

        A successful unlock clears the relogin flag. On failure the previous
        state is left untouched.

        Raises:
            UnlockFailed: If the CLI fails or prints no session token.
        """
        async with self._lock.exclusive():
            logger.info("`bw unlock`")
            try:
                result = await self._runner.run(
                    ["unlock", "--passwordenv", BW_PASSWORD, "--nointeraction"],
                    {
                        BW_CLIENTID: self._client_id,
                        BW_CLIENTSECRET: self._client_secret,
                        BW_PASSWORD: self._client_password,
                    },
                )
            except OSError as e:
                logger.error("`bw unlock` failed, %s", e)
                raise UnlockFailed(str(e)) from e

            if result.exit_code != 0:
                logger.error("`bw unlock` failed, exit code %s", result.exit_code)
                raise UnlockFailed(f"exit code {result.exit_code}")

            token = parse_session_token(_decode(result.stdout))
            if token is None:
                logger.error("`bw unlock` failed, no session token in output")
                raise UnlockFailed("no session token in output")

            self._state.session_token = token
            self._state.last_unlock = _utcnow()
            self._state.needs_relogin = False
            logger.info("`bw unlock` succeed")

    async def sync(self) -> None:
        """
        Pull the latest vault contents into the CLI's local cache.

        Raises:
            SyncFailedTokenMissing: If the vault was never unlocked.
            SyncFailed: If the CLI fails; the relogin flag is set.
        """
        async with self._lock.exclusive():
            token = self._state.session_token
            if token is None:
                raise SyncFailedTokenMissing()

            logger.info("`bw sync`")
            try:
                result = await self._runner.run(["sync"], {BW_SESSION: token})
            except OSError as e:
                logger.error("`bw sync` failed, %s", e)
                self._state.needs_relogin = True
                raise SyncFailed(str(e)) from e

            if result.exit_code != 0:
                logger.error("`bw sync` failed, exit code %s", result.exit_code)
                self._state.needs_relogin = True
                raise SyncFailed(f"exit code {result.exit_code}")

            self._state.last_sync = _utcnow()
            logger.info("`bw sync` succeed")

    async def get_item(self, item_id: str) -> BitwardenItem:
        """
        Fetch a single vault item.

        Never re-authenticates on its own: after a failure the relogin flag
        is set and later calls keep using the stored token until
        :meth:`unlock` succeeds.

        Raises:
            SyncFailedTokenMissing: If the vault was never unlocked.
            ItemNotFound: If the CLI answers without a usable item.
            GetItemFailed: If the CLI fails without a JSON answer; the
                relogin flag is set.
        """
        async with self._fetch_slots, self._lock.shared():
            token = self._state.session_token
            if token is None:
                raise SyncFailedTokenMissing()

            try:
                result = await self._runner.run(
                    ["--response", "get", "item", item_id, "--nointeraction"],
                    {BW_SESSION: token},
                )
            except OSError as e:
                logger.error("`bw get item %s` failed, %s", item_id, e)
                self._state.needs_relogin = True
                raise GetItemFailed(item_id, str(e)) from e

            body = _decode(result.stdout)
            try:
                response = json.loads(body)
            except json.JSONDecodeError as e:
                if result.exit_code != 0:
                    logger.error(
                        "`bw get item %s` failed, exit code %s", item_id, result.exit_code
                    )
                    self._state.needs_relogin = True
                    raise GetItemFailed(item_id, f"exit code {result.exit_code}") from e
                logger.error("`bw get item %s` failed: %s, body: %s", item_id, e, body[:200])
                raise ItemNotFound(item_id) from e

            if not isinstance(response, dict) or not response.get("success"):
                logger.error("`bw get item %s` failed, couldn't find item", item_id)
                raise ItemNotFound(item_id)

            data = response.get("data")
            if data is None:
                logger.error("`bw get item %s` failed, couldn't find item", item_id)
                raise ItemNotFound(item_id)

            try:
                item = BitwardenItem.from_dict(data)
            except ValueError as e:
                logger.error("`bw get item %s` returned an unreadable item: %s", item_id, e)
                raise ItemNotFound(item_id) from e

            logger.info("`bw get item %s` succeed", item_id)
            return item

    def get_status(self) -> Dict[str, Any]:
        """Session summary for health reporting. Never includes the token."""
        state = self._state
        return {
            "unlocked": state.session_token is not None,
            "last_unlock": state.last_unlock.isoformat() if state.last_unlock else None,
            "last_sync": state.last_sync.isoformat() if state.last_sync else None,
            "needs_relogin": state.needs_relogin,
        }
