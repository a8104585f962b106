import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx

from ranksync.errors import BackendUnavailable, IdentityNotFound, MalformedCommand, RankNotFound, RankSyncError
from ranksync.helpers import RetryingClient
from ranksync.logging_config import get_logger
from ranksync.permissions import PermissionApplier, UserRecord
from ranksync.players import PlayerSession

logger = get_logger(__name__)

COMMAND_PREFIX = "ranksync"
APPLY_VERB = "apply"
RELAY_PATH = "/relay/command"

# Error codes in the node's 404 body.
RANK_NOT_FOUND = "rank_not_found"
IDENTITY_NOT_FOUND = "identity_not_found"


@dataclass(frozen=True)
class RelayCommand:
    username: str
    rank_name: str
    purchase_id: str

    def encode(self) -> bytes:
        for value in (self.username, self.rank_name, self.purchase_id):
            if not value or any(ch.isspace() for ch in value):
                raise MalformedCommand(f"relay field must be a single non-empty token: {value!r}")
        return f"{COMMAND_PREFIX} {APPLY_VERB} {self.username} {self.rank_name} {self.purchase_id}".encode("utf-8")


def parse_relay_command(message: bytes) -> RelayCommand:
    """
    Parse ``ranksync apply <username> <rank> <purchaseId>``. Every token is
    checked before it is read.
    """
    try:
        text = message.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedCommand("relay message is not UTF-8") from exc
    args = text.split()
    if len(args) < 2 or args[0] != COMMAND_PREFIX:
        raise MalformedCommand(f"not a ranksync command: {text!r}")
    if args[1] != APPLY_VERB:
        raise MalformedCommand(f"unknown verb {args[1]!r}")
    if len(args) != 5:
        raise MalformedCommand(f"expected 5 tokens, got {len(args)}: {text!r}")
    return RelayCommand(username=args[2], rank_name=args[3], purchase_id=args[4])


class CommandRelayClient(RetryingClient):
    """
    Coordinator side of the relay: sends apply commands to the node a player
    is connected to and raises the node's apply failure, if any.

    The node answers 200 once the rank is applied, 404 with an ``error`` code
    for a missing rank or identity, 400 for a command it cannot parse and 5xx
    when its permission backend is unavailable.
    """

    def __init__(self, servers: dict[str, str], token: Optional[str] = None, **kwargs):
        headers = {"Authorization": f"Bearer {token}"} if token else None
        super().__init__(headers=headers, **kwargs)
        self.servers = servers

    async def send(self, server: str, command: RelayCommand) -> None:
        base_url = self.servers.get(server)
        if not base_url:
            raise BackendUnavailable(f"unknown backend server {server!r}")
        url = base_url.rstrip("/") + RELAY_PATH
        resp = await self._request_with_retry(
            "POST",
            url,
            content=command.encode(),
            headers={"Content-Type": "application/octet-stream"},
        )
        if resp.status_code >= 400:
            raise _relay_error(server, command, resp)
        logger.info(
            "Relayed command server=%s username=%s rank=%s purchaseId=%s",
            server,
            command.username,
            command.rank_name,
            command.purchase_id,
        )

    async def dispatch(self, session: PlayerSession, rank_name: str, purchase_id: str) -> None:
        if not session.server:
            raise BackendUnavailable(f"{session.username} is not attached to a backend server")
        await self.send(session.server, RelayCommand(session.username, rank_name, purchase_id))


def _relay_error(server: str, command: RelayCommand, resp: httpx.Response) -> RankSyncError:
    try:
        code = resp.json().get("error")
    except (ValueError, AttributeError):
        code = None
    if resp.status_code == 404 and code == RANK_NOT_FOUND:
        return RankNotFound(command.rank_name)
    if resp.status_code == 404 and code == IDENTITY_NOT_FOUND:
        return IdentityNotFound(command.username)
    if resp.status_code == 400:
        return MalformedCommand(f"{server} rejected relay command for purchase {command.purchase_id}")
    return BackendUnavailable(f"relay to {server} returned {resp.status_code}")


class RelayReceiver:
    """
    Node side of the relay. ``handle`` starts the apply as its own task so a
    caller can bound how long it waits without cancelling the apply.
    """

    def __init__(self, applier: PermissionApplier):
        self.applier = applier
        self._tasks: set[asyncio.Task] = set()

    def handle(self, message: bytes) -> Optional[asyncio.Task]:
        try:
            command = parse_relay_command(message)
        except MalformedCommand as exc:
            logger.warning("Dropping relay message: %s", exc)
            return None
        task = asyncio.get_running_loop().create_task(self._apply(command))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _apply(self, command: RelayCommand) -> UserRecord:
        try:
            return await self.applier.apply_for_username(command.username, command.rank_name)
        except RankSyncError as exc:
            logger.error(
                "Error applying rank username=%s rank=%s purchaseId=%s error=%s",
                command.username,
                command.rank_name,
                command.purchase_id,
                exc,
            )
            raise

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
