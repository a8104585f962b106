import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ranksync.clients.postgrest_client import PostgrestLedgerClient
from ranksync.config import PurchaseStatus, RankUpdateStatus, Settings, placeholder_fields, settings
from ranksync.errors import InvalidSignature, MalformedWebhookPayload, RankSyncError
from ranksync.helpers import serialize_rank_update
from ranksync.ledger import LedgerClient, build_ledger
from ranksync.logging_config import get_logger
from ranksync.player_routes import build_player_router
from ranksync.players import PlayerDirectory, PlayerSession
from ranksync.poller import Poller
from ranksync.realtime import RealtimeSubscriber
from ranksync.reconciler import RankDispatcher, RankReconciler, ReconcileOutcome
from ranksync.relay import CommandRelayClient
from ranksync.schemas import PurchaseWebhookPayload
from ranksync.security import bearer_token_guard, validate_signature

logger = get_logger(__name__)

SUCCESS_MESSAGE = "Purchase processed successfully"


def webhook_response(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": status_code, "message": message}, headers=headers)


def parse_purchase_payload(raw_body: bytes) -> PurchaseWebhookPayload:
    try:
        return PurchaseWebhookPayload.model_validate_json(raw_body)
    except ValidationError as exc:
        raise MalformedWebhookPayload(f"invalid purchase payload: {exc.error_count()} error(s)") from exc


def create_app(
    config: Optional[Settings] = None,
    *,
    ledger: Optional[LedgerClient] = None,
    players: Optional[PlayerDirectory] = None,
    dispatcher: Optional[RankDispatcher] = None,
    start_poller: bool = True,
) -> FastAPI:
    """
    Build the coordinator: purchase webhook, realtime receiver, player
    directory, reconciler and poller. Collaborators can be injected.
    """
    config = config or settings
    ledger = ledger or build_ledger(config)
    players = players or PlayerDirectory()
    relay: Optional[CommandRelayClient] = None
    if dispatcher is None:
        relay = CommandRelayClient(
            config.backend_servers,
            config.relay_token,
            timeout=config.request_timeout_seconds,
            max_retries=config.max_retries,
            retry_backoff_seconds=config.retry_backoff_seconds,
        )
        dispatcher = relay
    reconciler = RankReconciler(ledger, players, dispatcher, pending_alert_after=config.pending_alert_after_seconds)
    realtime = RealtimeSubscriber(reconciler)
    poller = Poller(
        reconciler.drain_pending,
        initial_delay=config.poll_initial_delay_seconds,
        interval=config.poll_interval_seconds,
    )
    require_bearer_token = bearer_token_guard(config.bearer_token)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for name in placeholder_fields(config):
            logger.warning("Setting %s still has its placeholder value; replace it before going live", name)
        if start_poller:
            poller.start()
        yield
        await poller.stop()
        if relay is not None:
            await relay.aclose()
        if isinstance(ledger, PostgrestLedgerClient):
            await ledger.aclose()

    app = FastAPI(title="RankSync Coordinator", lifespan=lifespan)
    app.state.ledger = ledger
    app.state.players = players
    app.state.reconciler = reconciler
    app.state.poller = poller

    async def record_failure(purchase_id: str, reason: str) -> None:
        try:
            await ledger.write_purchase_status(purchase_id, PurchaseStatus.ERROR, reason)
        except RankSyncError as exc:
            logger.error("Could not record purchase failure purchaseId=%s error=%s", purchase_id, exc)

    @app.post("/webhook/purchase")
    async def purchase_webhook(request: Request, x_webhook_signature: str | None = Header(None)):
        raw_body = await request.body()
        try:
            validate_signature(raw_body, x_webhook_signature, config.webhook_secret)
        except InvalidSignature as exc:
            logger.warning("Rejected purchase webhook: %s", exc)
            return webhook_response(401, "Invalid signature")
        try:
            payload = parse_purchase_payload(raw_body)
        except MalformedWebhookPayload as exc:
            logger.warning("Rejected purchase webhook: %s", exc)
            return webhook_response(500, "Internal Server Error")

        logger.info(
            "Received purchase webhook username=%s rank=%s purchaseId=%s",
            payload.username,
            payload.rank,
            payload.purchaseId,
        )
        try:
            result = await asyncio.wait_for(
                reconciler.process_rank_update(
                    payload.username, payload.rank, payload.purchaseId, report_processing=True
                ),
                timeout=config.request_timeout_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error processing webhook purchaseId=%s", payload.purchaseId)
            await record_failure(payload.purchaseId, str(exc) or exc.__class__.__name__)
            return webhook_response(500, "Internal Server Error")
        if result.outcome == ReconcileOutcome.FAILED:
            return webhook_response(500, f"Rank could not be applied: {result.message}")
        return webhook_response(200, SUCCESS_MESSAGE)

    @app.api_route("/webhook/purchase", methods=["GET", "PUT", "PATCH", "DELETE", "OPTIONS"], include_in_schema=False)
    async def purchase_webhook_wrong_method():
        return webhook_response(405, "Method Not Allowed", headers={"Allow": "POST"})

    @app.post("/realtime/rank-updates")
    async def realtime_rank_updates(request: Request, x_webhook_signature: str | None = Header(None)):
        raw_body = await request.body()
        try:
            validate_signature(raw_body, x_webhook_signature, config.webhook_secret)
        except InvalidSignature as exc:
            logger.warning("Rejected realtime push: %s", exc)
            return webhook_response(401, "Invalid signature")
        try:
            result = await asyncio.wait_for(realtime.handle_event(raw_body), timeout=config.request_timeout_seconds)
        except MalformedWebhookPayload as exc:
            logger.warning("Rejected realtime push: %s", exc)
            return webhook_response(400, "Malformed payload")
        except Exception:  # noqa: BLE001
            logger.exception("Error handling realtime push")
            return webhook_response(500, "Internal Server Error")
        return webhook_response(200, result.outcome.value if result else "ignored")

    async def drain_on_connect(session: PlayerSession) -> None:
        await poller.run_once()

    app.include_router(build_player_router(players, require_bearer_token, on_connect=drain_on_connect))

    @app.get("/ledger/rank-updates")
    async def list_rank_updates(
        status: RankUpdateStatus | None = None,
        limit: int = Query(100, ge=1, le=500),
        _auth=Depends(require_bearer_token),
    ):
        records = await ledger.list_records(status, limit)
        return [serialize_rank_update(record) for record in records]

    @app.post("/admin/drain")
    async def force_drain(_auth=Depends(require_bearer_token)):
        report = await poller.run_once()
        if report is None:
            return {"status": "skipped"}
        return {
            "status": "drained",
            "applied": report.applied,
            "pending": report.pending,
            "failed": report.failed,
            "stale": report.stale,
        }

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
