from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, BackgroundTasks, Depends

from ranksync.players import PlayerDirectory, PlayerSession
from ranksync.schemas import PlayerConnect, PlayerDisconnect


def build_player_router(
    players: PlayerDirectory,
    auth: Callable,
    on_connect: Optional[Callable[[PlayerSession], Awaitable[object]]] = None,
) -> APIRouter:
    """
    Endpoints the host calls when players join or leave.
    """
    router = APIRouter(prefix="/players", dependencies=[Depends(auth)])

    @router.post("/connect")
    async def player_connect(event: PlayerConnect, background_tasks: BackgroundTasks):
        session = players.connect(event.username, event.identity, event.server)
        if on_connect is not None:
            background_tasks.add_task(on_connect, session)
        return {"status": "connected", "username": session.username, "server": session.server}

    @router.post("/disconnect")
    async def player_disconnect(event: PlayerDisconnect):
        session = players.disconnect(event.username)
        return {"status": "disconnected" if session else "unknown", "username": event.username}

    @router.get("")
    async def list_players():
        return [
            {"username": s.username, "identity": s.identity, "server": s.server}
            for s in players.sessions()
        ]

    return router
