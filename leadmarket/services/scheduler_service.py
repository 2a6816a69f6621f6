"""Periodic sweeps — request expiry and auto-approval.

Both sweeps are single bulk UPDATEs: no per-row business logic and no
notifications. They never raise; a failed run is logged and rolled back
and the next cycle tries again.

SweepScheduler runs them in a background thread, each at its own
interval. It is started by `flask run-scheduler`, never implicitly by
the web app, so it is one process regardless of how many web workers run.
"""

import logging
import threading
import time
from datetime import timedelta

from flask import current_app

from leadmarket.extensions import db
from leadmarket.models.service_request import ServiceRequest
from leadmarket.utils import utcnow

logger = logging.getLogger(__name__)


def expire_old_requests(now=None):
    """PENDING/MATCHED requests created more than REQUEST_EXPIRY_HOURS ago -> EXPIRED.

    Returns the number of expired requests (0 on failure).
    """
    now = now or utcnow()
    cutoff = now - timedelta(hours=current_app.config["REQUEST_EXPIRY_HOURS"])
    try:
        count = (
            ServiceRequest.query
            .filter(ServiceRequest.status.in_(ServiceRequest.OPEN_STATUSES))
            .filter(ServiceRequest.created_at < cutoff)
            .update(
                {
                    "status": ServiceRequest.EXPIRED,
                    "payment_hold_by": None,
                    "payment_hold_until": None,
                    "version": ServiceRequest.version + 1,
                },
                synchronize_session=False,
            )
        )
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Request expiry sweep failed: {e}", exc_info=True)
        return 0

    if count:
        logger.info(f"Expired {count} service request(s)")
    return count


def auto_approve_completed_services(now=None):
    """Unreviewed COMPLETED requests untouched for AUTO_APPROVE_HOURS -> APPROVED.

    Returns the number of approved requests (0 on failure).
    """
    now = now or utcnow()
    cutoff = now - timedelta(hours=current_app.config["AUTO_APPROVE_HOURS"])
    try:
        count = (
            ServiceRequest.query
            .filter(ServiceRequest.status == ServiceRequest.COMPLETED)
            .filter(ServiceRequest.is_reviewed.is_(False))
            .filter(ServiceRequest.updated_at < cutoff)
            .update(
                {
                    "status": ServiceRequest.APPROVED,
                    "auto_approval_at": now,
                    "version": ServiceRequest.version + 1,
                },
                synchronize_session=False,
            )
        )
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Auto-approval sweep failed: {e}", exc_info=True)
        return 0

    if count:
        logger.info(f"Auto-approved {count} completed service request(s)")
    return count


class SweepScheduler:
    """Run each sweep on its own interval in one daemon thread.

    stop() sets the cancellation event; the worker wakes up immediately
    instead of finishing its sleep.
    """

    def __init__(self, app, tick_seconds=1.0):
        self.app = app
        self.tick_seconds = tick_seconds
        self.jobs = [
            ("expire-requests", expire_old_requests,
             app.config["EXPIRY_SWEEP_SECONDS"]),
            ("auto-approve", auto_approve_completed_services,
             app.config["AUTO_APPROVE_SWEEP_SECONDS"]),
        ]
        self._next_run = {name: 0.0 for name, _, _ in self.jobs}
        self._stop = threading.Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def run_pending(self, clock=time.monotonic):
        """Run every job whose interval has elapsed. Returns the names run."""
        ran = []
        now = clock()
        for name, job, interval in self.jobs:
            if now < self._next_run[name]:
                continue
            with self.app.app_context():
                try:
                    job()
                except Exception as e:
                    logger.error(f"Scheduled job {name} crashed: {e}", exc_info=True)
                finally:
                    db.session.remove()
            self._next_run[name] = now + interval
            ran.append(name)
        return ran

    def _loop(self):
        logger.info("Sweep scheduler started")
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(self.tick_seconds)
        logger.info("Sweep scheduler stopped")

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="sweep-scheduler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout=5):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def wait(self):
        """Block until stop() is called (or KeyboardInterrupt)."""
        while self.running:
            self._thread.join(self.tick_seconds)
