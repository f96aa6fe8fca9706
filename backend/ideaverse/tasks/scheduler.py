"""Background scheduler task for expiring lapsed subscriptions"""
import asyncio
import logging

from ideaverse.core.config import settings
from ideaverse.core.metrics import scheduler_runs_counter
from ideaverse.db.session import SessionLocal
from ideaverse.services.entitlement_service import expire_lapsed_subscriptions

logger = logging.getLogger(__name__)


def run_expiry_sweep() -> int:
    """One pass of the expiry sweep on its own session"""
    db = SessionLocal()
    try:
        expired = expire_lapsed_subscriptions(db)
        scheduler_runs_counter.labels(status="success").inc()
        if expired:
            logger.info(f"Expiry sweep expired {expired} subscription(s)")
        return expired
    except Exception:
        db.rollback()
        scheduler_runs_counter.labels(status="error").inc()
        raise
    finally:
        db.close()


async def expiry_scheduler_task():
    """Expire spark/creator plans whose period ended without a renewal

    Renewals normally move the end date forward first; this only catches
    subscriptions Stripe stopped renewing without a deletion event reaching us.
    """
    logger.info("Starting subscription expiry scheduler task...")

    while True:
        try:
            await asyncio.sleep(settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
            await asyncio.to_thread(run_expiry_sweep)
        except asyncio.CancelledError:
            logger.info("Subscription expiry scheduler task cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in subscription expiry scheduler task: {e}", exc_info=True)
