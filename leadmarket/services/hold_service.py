"""Payment-hold coordinator.

A hold is a lease on a ServiceRequest: `payment_hold_by` names the one
provider currently allowed to finish paying for the lead, until
`payment_hold_until`. There is no timer — stale holds are expired lazily
by whichever operation next touches hold state (accept, decline, payment
confirmation), with the scheduler's hourly sweep as a coarse backstop.

Every write here is a single conditional UPDATE (see utils.conditional_update).
Functions flush but do NOT commit — the caller commits.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import and_, case, or_, update

from leadmarket.errors import ConflictError
from leadmarket.models.service_request import RequestCandidate, ServiceRequest
from leadmarket.services.audit_service import log_request_audit
from leadmarket.utils import as_utc, conditional_update, utcnow

logger = logging.getLogger(__name__)


def hold_window():
    return timedelta(minutes=current_app.config["PAYMENT_HOLD_MINUTES"])


def is_hold_active(service_request, now=None):
    """True iff an unexpired hold exists and nobody is assigned yet.

    A hold on an assigned request is void regardless of its deadline.
    """
    now = now or utcnow()
    return (
        service_request.status in ServiceRequest.OPEN_STATUSES
        and service_request.payment_hold_by is not None
        and service_request.payment_hold_until is not None
        and as_utc(service_request.payment_hold_until) > now
        and service_request.assigned_provider_id is None
    )


def hold_is_free_for(provider_id, now):
    """SQL precondition: no hold, our own hold, or an expired one."""
    return or_(
        ServiceRequest.payment_hold_by.is_(None),
        ServiceRequest.payment_hold_by == provider_id,
        ServiceRequest.payment_hold_until <= now,
    )


def _reopened_status():
    """PENDING for an open, unassigned request; otherwise leave status alone."""
    return case(
        (
            and_(
                ServiceRequest.assigned_provider_id.is_(None),
                ServiceRequest.status.in_(ServiceRequest.OPEN_STATUSES),
            ),
            ServiceRequest.PENDING,
        ),
        else_=ServiceRequest.status,
    )


def expire_hold_if_stale(service_request, now=None):
    """Revert a hold whose deadline passed without an assignment.

    Clears both hold fields, resets status to PENDING and puts the held
    candidate back to PENDING. Safe to call repeatedly: a second call finds
    nothing to expire. Returns True if this call expired the hold.
    """
    now = now or utcnow()
    held_by = service_request.payment_hold_by
    hold_until = service_request.payment_hold_until
    if held_by is None or hold_until is None:
        return False
    if service_request.assigned_provider_id is not None:
        return False
    if as_utc(hold_until) > now:
        return False

    request_pk = service_request.id
    expired = conditional_update(
        update(ServiceRequest)
        .where(
            ServiceRequest.id == request_pk,
            ServiceRequest.payment_hold_by == held_by,
            ServiceRequest.payment_hold_until <= now,
            ServiceRequest.assigned_provider_id.is_(None),
        )
        .values(
            payment_hold_by=None,
            payment_hold_until=None,
            status=_reopened_status(),
            version=ServiceRequest.version + 1,
        )
    )
    if not expired:
        return False

    conditional_update(
        update(RequestCandidate)
        .where(
            RequestCandidate.service_request_id == request_pk,
            RequestCandidate.provider_id == held_by,
            RequestCandidate.status == RequestCandidate.AWAITING_PAYMENT,
        )
        .values(status=RequestCandidate.PENDING, payment_window_start=None)
    )
    log_request_audit(request_pk, "hold.expired", metadata={"provider_id": held_by})
    logger.info(f"Expired stale payment hold by {held_by} on request {request_pk}")
    return True


def open_hold(service_request, provider_id, now=None):
    """Reserve the lead for `provider_id` for one hold window.

    The write succeeds only if the request is unchanged since it was read
    (version), still open, unassigned, and not held by someone else.
    Raises ConflictError otherwise. Returns the hold deadline.

    The current holder re-accepting keeps its original deadline; a lease
    is never extended, so nobody can keep a lead locked by retrying.
    """
    now = now or utcnow()
    request_pk = service_request.id
    expected_version = service_request.version
    renewing = (
        is_hold_active(service_request, now)
        and service_request.payment_hold_by == provider_id
    )
    if renewing:
        until = as_utc(service_request.payment_hold_until)
    else:
        until = now + hold_window()

    opened = conditional_update(
        update(ServiceRequest)
        .where(
            ServiceRequest.id == request_pk,
            ServiceRequest.version == expected_version,
            ServiceRequest.assigned_provider_id.is_(None),
            ServiceRequest.status.in_(ServiceRequest.OPEN_STATUSES),
            hold_is_free_for(provider_id, now),
        )
        .values(
            payment_hold_by=provider_id,
            payment_hold_until=until,
            version=ServiceRequest.version + 1,
        )
    )
    if not opened:
        raise ConflictError(
            "This request is in payment process by another provider.",
            code="HOLD_CONFLICT",
        )

    # A previous holder whose lease lapsed goes back in the queue.
    conditional_update(
        update(RequestCandidate)
        .where(
            RequestCandidate.service_request_id == request_pk,
            RequestCandidate.provider_id != provider_id,
            RequestCandidate.status == RequestCandidate.AWAITING_PAYMENT,
        )
        .values(status=RequestCandidate.PENDING, payment_window_start=None)
    )
    candidate_values = {"status": RequestCandidate.AWAITING_PAYMENT}
    if not renewing:
        candidate_values["payment_window_start"] = now
    conditional_update(
        update(RequestCandidate)
        .where(
            RequestCandidate.service_request_id == request_pk,
            RequestCandidate.provider_id == provider_id,
        )
        .values(**candidate_values)
    )
    if renewing:
        return until
    log_request_audit(request_pk, "hold.opened", metadata={
        "provider_id": provider_id,
        "hold_until": until.isoformat(),
    })
    return until


def release_hold(service_request, provider_id):
    """Drop `provider_id`'s hold, if it still holds one.

    Status reverts to PENDING only while nobody is assigned. Returns True
    if a hold was released.
    """
    request_pk = service_request.id
    released = conditional_update(
        update(ServiceRequest)
        .where(
            ServiceRequest.id == request_pk,
            ServiceRequest.payment_hold_by == provider_id,
        )
        .values(
            payment_hold_by=None,
            payment_hold_until=None,
            status=_reopened_status(),
            version=ServiceRequest.version + 1,
        )
    )
    if released:
        conditional_update(
            update(RequestCandidate)
            .where(
                RequestCandidate.service_request_id == request_pk,
                RequestCandidate.provider_id == provider_id,
                RequestCandidate.status == RequestCandidate.AWAITING_PAYMENT,
            )
            .values(status=RequestCandidate.PENDING, payment_window_start=None)
        )
        log_request_audit(request_pk, "hold.released", metadata={"provider_id": provider_id})
    return released
