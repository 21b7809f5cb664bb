import asyncio
import logging
from order_payments.config import load_settings
from order_payments.database import make_engine, make_session_factory
from order_payments.ledger import IdempotencyLedger

logger = logging.getLogger(__name__)


async def prune_ledger():
    """Drop idempotency markers older than LEDGER_RETENTION_DAYS."""
    settings = load_settings()
    logging.basicConfig(level=settings.log_level)
    engine = make_engine(settings.database_url)
    try:
        removed = await IdempotencyLedger().prune(make_session_factory(engine), settings.ledger_retention_days)
    finally:
        await engine.dispose()
    logger.info("Ledger pruning done, %d markers removed.", removed)
    return removed

if __name__ == "__main__":
    asyncio.run(prune_ledger())
