import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from ranksync.config import Settings, settings
from ranksync.errors import IdentityNotFound, RankNotFound, RankSyncError
from ranksync.host import LogMessenger, MainThread, Messenger
from ranksync.logging_config import get_logger
from ranksync.permissions import MemoryPermissionBackend, PermissionApplier, PermissionBackend
from ranksync.player_routes import build_player_router
from ranksync.players import PlayerDirectory
from ranksync.relay import IDENTITY_NOT_FOUND, RANK_NOT_FOUND, RelayReceiver
from ranksync.security import bearer_token_guard

logger = get_logger(__name__)


def relay_response(status_code: int, status: str, message: str, error: Optional[str] = None) -> JSONResponse:
    content = {"status": status, "message": message}
    if error:
        content["error"] = error
    return JSONResponse(status_code=status_code, content=content)


def create_node_app(
    config: Optional[Settings] = None,
    *,
    backend: Optional[PermissionBackend] = None,
    players: Optional[PlayerDirectory] = None,
    messenger: Optional[Messenger] = None,
    main_thread: Optional[MainThread] = None,
) -> FastAPI:
    """
    Build a backend node: relay receiver plus rank queries over the local
    permission backend. Purchase bookkeeping stays with the coordinator; the
    node only reports each apply's outcome in its relay response.
    """
    config = config or settings
    backend = backend or MemoryPermissionBackend.from_rank_definitions(config.ranks)
    players = players or PlayerDirectory()
    main_thread = main_thread or MainThread()
    applier = PermissionApplier(
        backend,
        players,
        messenger or LogMessenger(),
        main_thread,
        timeout=config.request_timeout_seconds,
    )
    receiver = RelayReceiver(applier)
    require_relay_token = bearer_token_guard(config.relay_token)
    require_bearer_token = bearer_token_guard(config.bearer_token)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("RankSync node ready ranks=%s", ",".join(config.ranks))
        yield
        await receiver.wait_idle()
        main_thread.shutdown()

    app = FastAPI(title="RankSync Node", lifespan=lifespan)
    app.state.applier = applier
    app.state.receiver = receiver
    app.state.players = players

    @app.post("/relay/command")
    async def relay_command(request: Request, _auth=Depends(require_relay_token)):
        message = await request.body()
        task = receiver.handle(message)
        if task is None:
            return relay_response(400, "ignored", "Malformed relay command")
        try:
            # Shielded: a slow apply keeps running after the caller gives up.
            await asyncio.wait_for(asyncio.shield(task), timeout=config.request_timeout_seconds)
        except asyncio.TimeoutError:
            return relay_response(504, "timeout", "Rank apply did not finish in time")
        except RankNotFound as exc:
            return relay_response(404, "error", str(exc), RANK_NOT_FOUND)
        except IdentityNotFound as exc:
            return relay_response(404, "error", str(exc), IDENTITY_NOT_FOUND)
        except RankSyncError as exc:
            return relay_response(503, "error", str(exc))
        return relay_response(200, "applied", "Rank applied")

    app.include_router(build_player_router(players, require_bearer_token))

    async def identity_for(username: str) -> str:
        try:
            return await applier.resolve_identity(username)
        except IdentityNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/players/{username}/ranks/{rank_name}")
    async def has_rank(username: str, rank_name: str, _auth=Depends(require_bearer_token)):
        identity = await identity_for(username)
        try:
            held = await applier.has_rank(identity, rank_name)
        except RankSyncError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"username": username, "rank": rank_name, "hasRank": held}

    @app.delete("/players/{username}/ranks/{rank_name}")
    async def remove_rank(username: str, rank_name: str, _auth=Depends(require_bearer_token)):
        identity = await identity_for(username)
        try:
            removed = await applier.remove_rank(identity, rank_name)
        except RankNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except RankSyncError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"username": username, "rank": rank_name, "removed": removed}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_node_app()
