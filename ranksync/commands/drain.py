import asyncio

from ranksync.config import settings
from ranksync.ledger import build_ledger
from ranksync.logging_config import get_logger
from ranksync.players import PlayerDirectory
from ranksync.reconciler import RankReconciler
from ranksync.relay import CommandRelayClient

logger = get_logger(__name__)


async def drain(players: PlayerDirectory | None = None) -> int:
    """
    Run one drain cycle outside the service. Without a live player directory
    every record stays pending, which makes this a queue health check.
    """
    ledger = build_ledger(settings)
    relay = CommandRelayClient(
        settings.backend_servers,
        settings.relay_token,
        timeout=settings.request_timeout_seconds,
        max_retries=settings.max_retries,
        retry_backoff_seconds=settings.retry_backoff_seconds,
    )
    reconciler = RankReconciler(
        ledger,
        players or PlayerDirectory(),
        relay,
        pending_alert_after=settings.pending_alert_after_seconds,
    )
    try:
        report = await reconciler.drain_pending()
    finally:
        await relay.aclose()
    logger.info("Pending after drain: %s", report.pending)
    return 1 if report.pending else 0


if __name__ == "__main__":
    exit_code = asyncio.run(drain())
    raise SystemExit(exit_code)
