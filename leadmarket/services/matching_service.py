"""Geo-matching — who gets offered which request.

A provider is eligible for a request when:
  - the provider is active and verified,
  - the request's category is one the provider services,
  - the provider has at least one available working-hours entry,
  - the great-circle distance is within min(MATCH_RADIUS_CAP_KM, covered_radius).

Matching runs in both directions:
  - provider -> requests, when a provider is verified, re-registers, or has
    profile updates approved;
  - request -> providers, when a request is created (MATCH_ON_REQUEST_CREATE).

Each match appends a PENDING candidate. Matching never changes the
request's aggregate status.
"""

import logging
import math

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from leadmarket.extensions import db
from leadmarket.errors import NotFoundError
from leadmarket.models.category import Category
from leadmarket.models.provider import Provider
from leadmarket.models.service_request import RequestCandidate, ServiceRequest
from leadmarket.services.notification_service import notify

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371


def haversine_km(lat1, lon1, lat2, lon2):
    """Great-circle distance in km between two points given in degrees."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def has_available_hours(provider):
    return any(
        entry.get("isAvailable", True)
        for entry in (provider.working_hours or [])
    )


def match_radius(provider):
    """The tighter of the global cap and the provider's own radius."""
    cap = float(current_app.config["MATCH_RADIUS_CAP_KM"])
    return min(cap, float(provider.covered_radius or 0))


def is_within_range(provider, service_request):
    distance = haversine_km(
        provider.latitude,
        provider.longitude,
        service_request.latitude,
        service_request.longitude,
    )
    return distance <= match_radius(provider)


def is_eligible(provider, service_request):
    return (
        provider.is_active
        and provider.is_verified
        and service_request.category_id in provider.category_ids
        and has_available_hours(provider)
        and is_within_range(provider, service_request)
    )


def _append_candidate(service_request, provider_id, position):
    db.session.add(RequestCandidate(
        service_request_id=service_request.id,
        provider_id=provider_id,
        position=position,
        status=RequestCandidate.PENDING,
    ))


def _commit_matches(label):
    """Commit appended candidates.

    The (request, provider) unique constraint rejects a pair a concurrent
    matcher inserted first; the batch is dropped and the next run retries.
    """
    try:
        db.session.commit()
        return True
    except IntegrityError:
        db.session.rollback()
        logger.warning(f"Concurrent match detected for {label}; batch skipped")
        return False


def match_provider_to_requests(provider):
    """Offer every eligible open request to `provider`.

    Commits, then sends one count-based notification. Returns the list of
    matched ServiceRequests.
    """
    if not (provider.is_active and provider.is_verified and has_available_hours(provider)):
        return []

    already = db.session.query(RequestCandidate.service_request_id).filter(
        RequestCandidate.provider_id == provider.id
    )
    open_requests = (
        ServiceRequest.query
        .filter(ServiceRequest.status == ServiceRequest.PENDING)
        .filter(ServiceRequest.category_id.in_(list(provider.category_ids)))
        .filter(ServiceRequest.id.not_in(already))
        .order_by(ServiceRequest.created_at.asc())
        .all()
    )

    matched = []
    for service_request in open_requests:
        if not is_within_range(provider, service_request):
            continue
        _append_candidate(service_request, provider.id, len(service_request.candidates))
        matched.append(service_request)

    if not _commit_matches(f"provider {provider.id}"):
        return []

    if matched:
        logger.info(f"Matched provider {provider.id} to {len(matched)} request(s)")
        notify(
            "New service requests",
            f"{len(matched)} service request(s) match your services and area.",
            provider.user_id,
            {"type": "NEW_REQUESTS_MATCHED", "count": len(matched)},
        )
    return matched


def match_request_to_providers(service_request):
    """Offer a new request to every eligible existing provider.

    Commits, then notifies each matched provider. Returns the providers.
    """
    category_id = service_request.category_id
    providers = (
        Provider.query
        .filter(Provider.is_active.is_(True), Provider.is_verified.is_(True))
        .filter(or_(
            Provider.category_id == category_id,
            Provider.categories.any(Category.id == category_id),
        ))
        .all()
    )

    matched = []
    position = len(service_request.candidates)
    for provider in providers:
        if service_request.candidate_for(provider.id) is not None:
            continue
        if not (has_available_hours(provider) and is_within_range(provider, service_request)):
            continue
        _append_candidate(service_request, provider.id, position)
        position += 1
        matched.append(provider)

    if not _commit_matches(f"request {service_request.request_id}"):
        return []

    for provider in matched:
        notify(
            "New service request",
            f"Service request {service_request.request_id} matches your services and area.",
            provider.user_id,
            {"type": "NEW_REQUEST_MATCHED", "requestId": service_request.request_id},
        )
    if matched:
        logger.info(
            f"Request {service_request.request_id} offered to {len(matched)} provider(s)"
        )
    return matched


def get_potential_requests(provider_user_id):
    """Open requests the provider may act on.

    Requests where the provider is a live (non-declined) candidate, plus
    eligible ones they were not matched to yet (candidateStatus None).
    """
    provider = Provider.query.filter_by(user_id=provider_user_id).first()
    if provider is None or not provider.is_active:
        raise NotFoundError("Provider not found or inactive.")

    rows = (
        db.session.query(ServiceRequest, RequestCandidate)
        .join(RequestCandidate, RequestCandidate.service_request_id == ServiceRequest.id)
        .filter(RequestCandidate.provider_id == provider.id)
        .filter(RequestCandidate.status != RequestCandidate.DECLINED)
        .filter(ServiceRequest.status.in_(ServiceRequest.OPEN_STATUSES))
        .order_by(ServiceRequest.created_at.desc())
        .all()
    )
    pairs = [(service_request, candidate.status) for service_request, candidate in rows]

    if provider.is_verified and has_available_hours(provider):
        known = db.session.query(RequestCandidate.service_request_id).filter(
            RequestCandidate.provider_id == provider.id
        )
        unmatched = (
            ServiceRequest.query
            .filter(ServiceRequest.status.in_(ServiceRequest.OPEN_STATUSES))
            .filter(ServiceRequest.category_id.in_(list(provider.category_ids)))
            .filter(ServiceRequest.id.not_in(known))
            .order_by(ServiceRequest.created_at.desc())
            .all()
        )
        pairs.extend(
            (service_request, None)
            for service_request in unmatched
            if is_within_range(provider, service_request)
        )

    results = []
    for service_request, candidate_status in pairs:
        item = service_request.to_dict()
        item["candidateStatus"] = candidate_status
        item["distanceKm"] = round(haversine_km(
            provider.latitude, provider.longitude,
            service_request.latitude, service_request.longitude,
        ), 2)
        results.append(item)
    return results
