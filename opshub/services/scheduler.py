from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from opshub.extensions import db
from opshub.services.presence import prune_stale_presence

PRESENCE_PRUNE_JOB_ID = "presence-prune"

logger = logging.getLogger(__name__)


def run_presence_prune(app) -> int:
    """Deactivate stale presence rows inside the app context of ``app``."""

    with app.app_context():
        try:
            return prune_stale_presence()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Scheduled presence prune failed")
            return 0
        finally:
            db.session.remove()


def initialize_presence_scheduler(app) -> BackgroundScheduler | None:
    if app.extensions.get("presence_scheduler") is not None:
        return app.extensions["presence_scheduler"]

    interval = int(app.config.get("PRESENCE_PRUNE_INTERVAL_SECONDS", 0) or 0)
    if interval <= 0:
        logger.info("Presence pruning schedule disabled")
        return None

    scheduler = BackgroundScheduler(timezone="UTC")
    app.extensions["presence_scheduler"] = scheduler
    scheduler.add_job(
        run_presence_prune,
        trigger=IntervalTrigger(seconds=interval),
        id=PRESENCE_PRUNE_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        args=[app],
    )
    scheduler.start()
    logger.info("Presence pruning scheduled every %d seconds", interval)
    return scheduler
