"""
Scheduled Jobs Module
Periodic reconciliation of escrow payments that never got a gateway callback
"""

import logging
from datetime import timedelta

from errors import MarketplaceError, PaymentGatewayError

logger = logging.getLogger(__name__)


def reconcile_pending_escrows(app):
    """
    Poll the gateway for PENDING escrows older than the grace period

    Each escrow is confirmed independently; a failure is logged and the
    escrow is left for the next run.

    Args:
        app: Flask application instance

    Returns:
        dict: counts of confirmed, still pending, failed and errored escrows
    """
    with app.app_context():
        ledger = app.extensions['marketplace'].escrow
        grace = timedelta(minutes=app.config.get('ESCROW_RECONCILE_GRACE_MINUTES', 5))
        summary = {'confirmed': 0, 'pending': 0, 'failed': 0, 'errors': 0}

        pending = ledger.list_pending(older_than=grace)
        logger.info(f"Reconciling {len(pending)} pending escrow payment(s)")

        for escrow in pending:
            tx_ref = escrow.tx_ref
            try:
                result = ledger.confirm(tx_ref)
            except PaymentGatewayError as e:
                summary['errors'] += 1
                logger.warning(f"Reconcile {tx_ref}: gateway error (retryable={e.retryable}): {e.message}")
                continue
            except MarketplaceError as e:
                # Terminal gateway failure is persisted as FAILED before this is raised
                summary['failed'] += 1
                logger.info(f"Reconcile {tx_ref}: {e.message}")
                continue
            except Exception as e:
                summary['errors'] += 1
                logger.error(f"Error reconciling escrow {tx_ref}: {str(e)}", exc_info=True)
                continue

            if result.status.value == 'PENDING':
                summary['pending'] += 1
            else:
                summary['confirmed'] += 1

        logger.info(f"Escrow reconciliation completed: {summary}")
        return summary


def init_scheduler(app):
    """
    Initialize APScheduler with all scheduled jobs

    Args:
        app: Flask application instance

    Returns:
        scheduler: Configured APScheduler instance
    """
    from apscheduler.schedulers.background import BackgroundScheduler
    from apscheduler.triggers.interval import IntervalTrigger
    import atexit

    scheduler = BackgroundScheduler(daemon=True)
    minutes = app.config.get('ESCROW_RECONCILE_MINUTES', 10)

    scheduler.add_job(
        func=lambda: reconcile_pending_escrows(app),
        trigger=IntervalTrigger(minutes=minutes),
        id='reconcile_pending_escrows',
        name='Confirm pending escrow payments with the gateway',
        replace_existing=True,
        max_instances=1
    )

    scheduler.start()
    logger.info(f"Scheduler started: escrow reconciliation every {minutes} minute(s)")

    # Shut down the scheduler when exiting the app
    atexit.register(lambda: scheduler.shutdown())

    return scheduler
