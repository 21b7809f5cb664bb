import hashlib
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.models import ProcessedEvent
from order_payments.schemas import PaymentSnapshot

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90


def event_key(snapshot: PaymentSnapshot) -> str:
    """Idempotency key for the processor state a notification led us to.

    Refunds do not change the processor status, so the refunded amount and
    capture flag are part of the key as well.
    """
    raw = "|".join([
        snapshot.id,
        snapshot.status,
        str(snapshot.amount),
        "captured" if snapshot.captured else "held",
        str(snapshot.refunded_amount),
    ])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class IdempotencyLedger:
    async def record(
        self,
        session: AsyncSession,
        key: str,
        order_id: str,
        snapshot: PaymentSnapshot,
    ) -> bool:
        """Insert the marker for `key`; False if it was already there.

        The insert must be the first write of the session's transaction: on a
        duplicate the transaction is rolled back.
        """
        session.add(ProcessedEvent(
            event_key=key,
            order_id=order_id,
            external_payment_id=snapshot.id,
            processor_status=snapshot.status,
        ))
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            logger.info("Event %s for order %s already processed", key[:12], order_id)
            return False
        return True

    async def prune(
        self,
        session_factory: async_sessionmaker,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        async with session_factory() as session:
            result = await session.execute(
                delete(ProcessedEvent).where(ProcessedEvent.recorded_at < cutoff)
            )
            await session.commit()
        logger.info("Pruned %d processed events older than %s", result.rowcount, cutoff.isoformat())
        return result.rowcount
