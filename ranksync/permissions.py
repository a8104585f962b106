import asyncio
import copy
import threading
from dataclasses import dataclass, field
from typing import Optional, Protocol

from ranksync.config import RankDefinition
from ranksync.errors import BackendUnavailable, IdentityNotFound, RankNotFound, UserLoadError
from ranksync.host import MainThread, Messenger
from ranksync.logging_config import get_logger
from ranksync.players import PlayerDirectory, PlayerSession

logger = get_logger(__name__)

# Memberships in this category are owned by rank purchases; anything else
# (staff grants, event rewards) is left alone when a rank changes.
RANK_CATEGORY = "rank"


@dataclass
class Membership:
    group: str
    category: str = RANK_CATEGORY


@dataclass
class UserRecord:
    identity: str
    username: Optional[str] = None
    memberships: list[Membership] = field(default_factory=list)

    def groups(self) -> set[str]:
        return {membership.group for membership in self.memberships}


@dataclass(frozen=True)
class Group:
    name: str
    prefix: str = ""
    permissions: tuple[str, ...] = ()
    parents: tuple[str, ...] = ()


class PermissionBackend(Protocol):
    async def lookup_unique_id(self, username: str) -> Optional[str]: ...

    async def group_exists(self, name: str) -> bool: ...

    async def load_user(self, identity: str) -> Optional[UserRecord]: ...

    async def add_membership(self, user: UserRecord, group: str, category: str = RANK_CATEGORY) -> None: ...

    async def remove_membership(self, user: UserRecord, group: str) -> bool: ...

    async def persist_user(self, user: UserRecord) -> None: ...

    async def inherited_groups(self, user: UserRecord) -> set[str]: ...


class MemoryPermissionBackend:
    """
    Process-local permission store with group inheritance.

    Loaded users are copies; changes only become visible after persist_user.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._groups: dict[str, Group] = {}
        self._users: dict[str, UserRecord] = {}
        self._identities: dict[str, str] = {}

    @classmethod
    def from_rank_definitions(cls, ranks: dict[str, RankDefinition]) -> "MemoryPermissionBackend":
        backend = cls()
        for rank in ranks.values():
            backend.add_group(rank.name, prefix=rank.prefix, permissions=rank.permissions)
        return backend

    def add_group(self, name: str, prefix: str = "", permissions: list[str] | tuple = (), parents: list[str] | tuple = ()) -> Group:
        group = Group(name=name, prefix=prefix, permissions=tuple(permissions), parents=tuple(parents))
        with self._lock:
            self._groups[name] = group
        return group

    def register_user(self, username: str, identity: str) -> None:
        with self._lock:
            self._identities[username.lower()] = identity
            self._users.setdefault(identity, UserRecord(identity=identity, username=username))

    async def lookup_unique_id(self, username: str) -> Optional[str]:
        with self._lock:
            return self._identities.get(username.lower())

    async def group_exists(self, name: str) -> bool:
        with self._lock:
            return name in self._groups

    async def load_user(self, identity: str) -> Optional[UserRecord]:
        with self._lock:
            stored = self._users.get(identity)
            return copy.deepcopy(stored) if stored else UserRecord(identity=identity)

    async def add_membership(self, user: UserRecord, group: str, category: str = RANK_CATEGORY) -> None:
        if group not in user.groups():
            user.memberships.append(Membership(group=group, category=category))

    async def remove_membership(self, user: UserRecord, group: str) -> bool:
        before = len(user.memberships)
        user.memberships = [m for m in user.memberships if m.group != group]
        return len(user.memberships) != before

    async def persist_user(self, user: UserRecord) -> None:
        with self._lock:
            self._users[user.identity] = copy.deepcopy(user)

    async def inherited_groups(self, user: UserRecord) -> set[str]:
        with self._lock:
            seen: set[str] = set()
            stack = list(user.groups())
            while stack:
                name = stack.pop()
                if name in seen:
                    continue
                seen.add(name)
                group = self._groups.get(name)
                if group:
                    stack.extend(group.parents)
            return seen


class PermissionApplier:
    """
    Applies, removes and checks ranks against the permission backend, and
    notifies the player on the host's main thread when a change lands.
    """

    def __init__(
        self,
        backend: PermissionBackend,
        players: PlayerDirectory,
        messenger: Messenger,
        main_thread: MainThread,
        *,
        timeout: float = 10.0,
    ):
        self.backend = backend
        self.players = players
        self.messenger = messenger
        self.main_thread = main_thread
        self.timeout = timeout

    async def _bounded(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise BackendUnavailable(f"permission backend timed out after {self.timeout}s") from exc

    async def resolve_identity(self, username: str) -> str:
        session = self.players.find(username)
        if session:
            return session.identity
        identity = await self._bounded(self.backend.lookup_unique_id(username))
        if not identity:
            raise IdentityNotFound(username)
        return identity

    async def _require_group(self, rank_name: str) -> None:
        if not await self._bounded(self.backend.group_exists(rank_name)):
            raise RankNotFound(rank_name)

    async def _load_user(self, identity: str) -> UserRecord:
        try:
            user = await self._bounded(self.backend.load_user(identity))
        except BackendUnavailable as exc:
            raise UserLoadError(identity) from exc
        if user is None:
            raise UserLoadError(identity)
        return user

    async def apply_rank(self, identity: str, rank_name: str) -> UserRecord:
        await self._require_group(rank_name)
        user = await self._load_user(identity)
        for membership in list(user.memberships):
            if membership.category == RANK_CATEGORY:
                await self._bounded(self.backend.remove_membership(user, membership.group))
        await self._bounded(self.backend.add_membership(user, rank_name, RANK_CATEGORY))
        await self._bounded(self.backend.persist_user(user))
        logger.info("Applied rank rank=%s identity=%s", rank_name, identity)
        await self._notify(identity, f"Your rank has been updated to {rank_name}!")
        return user

    async def remove_rank(self, identity: str, rank_name: str) -> bool:
        """
        Remove a rank membership. Returns False when the user did not hold it.
        """
        await self._require_group(rank_name)
        user = await self._load_user(identity)
        removed = await self._bounded(self.backend.remove_membership(user, rank_name))
        if not removed:
            return False
        await self._bounded(self.backend.persist_user(user))
        logger.info("Removed rank rank=%s identity=%s", rank_name, identity)
        await self._notify(identity, f"Your rank {rank_name} has been removed!")
        return True

    async def has_rank(self, identity: str, rank_name: str) -> bool:
        user = await self._bounded(self.backend.load_user(identity))
        if user is None:
            return False
        return rank_name in await self._bounded(self.backend.inherited_groups(user))

    async def apply_for_username(self, username: str, rank_name: str) -> UserRecord:
        identity = await self.resolve_identity(username)
        return await self.apply_rank(identity, rank_name)

    async def dispatch(self, session: PlayerSession, rank_name: str, purchase_id: str) -> None:
        await self.apply_rank(session.identity, rank_name)

    async def _notify(self, identity: str, text: str) -> None:
        await self.main_thread.run(self._deliver, identity, text)

    def _deliver(self, identity: str, text: str) -> None:
        if self.players.is_online(identity):
            self.messenger.send_message(identity, text)
