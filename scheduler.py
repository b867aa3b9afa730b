"""
Tajer Background Scheduler

Runs periodic tasks:
- Retry provider payouts for confirmed repairs that are still unpaid
  (every PAYOUT_SWEEP_MINUTES)

Only starts when ENABLE_SCHEDULER=true to prevent running on multiple instances.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)


def _sweep_payouts(app):
    """Release payouts that were waiting on provider onboarding or a failed transfer."""
    with app.app_context():
        from models import db
        try:
            released = app.extensions["repairs"].sweep_payouts()
        except Exception:
            db.session.rollback()
            logger.exception("Payout sweep failed")
            return
        if released:
            logger.info("Scheduler: released %d pending payouts", released)


def init_scheduler(app):
    """Initialize and start the background scheduler.

    Only runs if ENABLE_SCHEDULER is true in the app config.
    """
    if not app.config.get("ENABLE_SCHEDULER"):
        logger.info("Scheduler disabled (set ENABLE_SCHEDULER=true to enable)")
        return None

    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        _sweep_payouts,
        "interval",
        minutes=app.config.get("PAYOUT_SWEEP_MINUTES", 15),
        args=[app],
        id="sweep_payouts",
        name="Retry pending provider payouts",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Background scheduler started (payout sweep every %s min)",
                app.config.get("PAYOUT_SWEEP_MINUTES", 15))
    return scheduler
