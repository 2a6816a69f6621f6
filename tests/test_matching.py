"""Tests for geo-matching.

Covers:
- Haversine distance
- Distance gate: min(50 km cap, provider radius), boundary inclusive
- Availability, verification and category filters
- Provider -> requests matching (count notification, no duplicates)
- Request -> providers matching on creation
- Potential-requests view
"""

import math
from unittest.mock import patch

import pytest
from conftest import make_provider, make_request

from leadmarket.errors import NotFoundError
from leadmarket.extensions import db
from leadmarket.models.category import Category
from leadmarket.models.notification import Notification
from leadmarket.models.provider import Provider
from leadmarket.models.service_request import RequestCandidate, ServiceRequest
from leadmarket.models.user import User
from leadmarket.services import matching_service
from leadmarket.services.matching_service import (
    get_potential_requests,
    haversine_km,
    is_within_range,
    match_provider_to_requests,
    match_request_to_providers,
)

KM_PER_DEGREE_LAT = 2 * math.pi * 6371 / 360


def _new_provider_user(email):
    user = User(email=email, role=User.ROLE_PROVIDER)
    db.session.add(user)
    db.session.flush()
    return user


class TestHaversine:

    def test_zero_distance(self):
        assert haversine_km(40.0, -73.0, 40.0, -73.0) == 0

    def test_one_degree_of_latitude(self):
        assert haversine_km(0, 0, 1, 0) == pytest.approx(KM_PER_DEGREE_LAT, rel=1e-9)

    def test_known_city_pair(self):
        """New York -> London is roughly 5570 km."""
        distance = haversine_km(40.7128, -74.0060, 51.5074, -0.1278)
        assert 5550 < distance < 5590


class TestDistanceGate:

    def _provider_and_request(self, seed_data, radius, offset_km):
        plumbing = db.session.get(Category, seed_data["plumbing_id"])
        customer = db.session.get(User, seed_data["customer_id"])
        user = _new_provider_user("gate@test.com")
        provider = make_provider(user, plumbing, "Gate Co", latitude=0.0,
                                 longitude=0.0, covered_radius=radius)
        service_request = make_request(customer, plumbing, "TZ0900",
                                       latitude=offset_km / KM_PER_DEGREE_LAT,
                                       longitude=0.0)
        return provider, service_request

    def test_excluded_beyond_provider_radius(self, seed_data):
        provider, service_request = self._provider_and_request(seed_data, 10, 10.5)
        assert not is_within_range(provider, service_request)

    def test_included_just_inside_provider_radius(self, seed_data):
        provider, service_request = self._provider_and_request(seed_data, 10, 9.9)
        assert is_within_range(provider, service_request)

    def test_bound_itself_is_included(self, seed_data):
        provider, service_request = self._provider_and_request(seed_data, 10, 10)
        with patch.object(matching_service, "haversine_km", return_value=10.0):
            assert is_within_range(provider, service_request)

    def test_global_cap_applies_to_large_radius(self, seed_data):
        """A 100 km radius is still capped at 50 km."""
        provider, service_request = self._provider_and_request(seed_data, 100, 60)
        assert not is_within_range(provider, service_request)

    def test_just_inside_global_cap(self, seed_data):
        provider, service_request = self._provider_and_request(seed_data, 100, 49)
        assert is_within_range(provider, service_request)


class TestMatchProviderToRequests:

    def test_matches_nearby_pending_request(self, seed_data):
        provider = db.session.get(Provider, seed_data["p3_id"])
        matched = match_provider_to_requests(provider)

        assert [sr.request_id for sr in matched] == [seed_data["request_id"]]
        candidate = RequestCandidate.query.filter_by(
            service_request_id=seed_data["request_pk"], provider_id=seed_data["p3_id"]
        ).first()
        assert candidate.status == RequestCandidate.PENDING
        assert candidate.position == 2

    def test_aggregate_status_unchanged(self, seed_data):
        provider = db.session.get(Provider, seed_data["p3_id"])
        match_provider_to_requests(provider)
        service_request = db.session.get(ServiceRequest, seed_data["request_pk"])
        assert service_request.status == ServiceRequest.PENDING

    def test_sends_single_count_notification(self, seed_data):
        provider = db.session.get(Provider, seed_data["p3_id"])
        match_provider_to_requests(provider)

        notes = Notification.query.filter_by(recipient_user_id=seed_data["p3_user_id"]).all()
        assert len(notes) == 1
        assert notes[0].meta["type"] == "NEW_REQUESTS_MATCHED"
        assert notes[0].meta["count"] == 1

    def test_existing_candidate_not_duplicated(self, seed_data):
        provider = db.session.get(Provider, seed_data["p1_id"])
        assert match_provider_to_requests(provider) == []
        assert RequestCandidate.query.filter_by(
            service_request_id=seed_data["request_pk"]
        ).count() == 2

    def test_unverified_provider_not_matched(self, seed_data):
        provider = db.session.get(Provider, seed_data["p3_id"])
        provider.is_verified = False
        db.session.commit()
        assert match_provider_to_requests(provider) == []

    def test_provider_without_available_hours_not_matched(self, seed_data):
        provider = db.session.get(Provider, seed_data["p3_id"])
        provider.working_hours = [
            {"day": "Monday", "startTime": "08:00", "endTime": "18:00", "isAvailable": False}
        ]
        db.session.commit()
        assert match_provider_to_requests(provider) == []

    def test_other_category_not_matched(self, seed_data):
        cleaning = db.session.get(Category, seed_data["cleaning_id"])
        provider = make_provider(_new_provider_user("cleaner@test.com"), cleaning, "Sparkle")
        db.session.commit()
        assert match_provider_to_requests(provider) == []

    def test_only_pending_requests_matched(self, seed_data):
        service_request = db.session.get(ServiceRequest, seed_data["request_pk"])
        service_request.status = ServiceRequest.EXPIRED
        db.session.commit()
        provider = db.session.get(Provider, seed_data["p3_id"])
        assert match_provider_to_requests(provider) == []


class TestMatchRequestToProviders:

    def test_offers_new_request_to_eligible_providers(self, seed_data):
        plumbing = db.session.get(Category, seed_data["plumbing_id"])
        customer = db.session.get(User, seed_data["customer_id"])
        service_request = make_request(customer, plumbing, "TZ0002")
        db.session.commit()

        matched = match_request_to_providers(service_request)

        assert {p.id for p in matched} == {
            seed_data["p1_id"], seed_data["p2_id"], seed_data["p3_id"]
        }
        positions = sorted(
            c.position for c in RequestCandidate.query.filter_by(
                service_request_id=service_request.id
            )
        )
        assert positions == [0, 1, 2]
        assert db.session.get(ServiceRequest, service_request.id).status == ServiceRequest.PENDING

    def test_far_provider_not_offered(self, seed_data):
        plumbing = db.session.get(Category, seed_data["plumbing_id"])
        customer = db.session.get(User, seed_data["customer_id"])
        # Philadelphia, ~130 km away
        service_request = make_request(customer, plumbing, "TZ0003",
                                       latitude=39.9526, longitude=-75.1652)
        db.session.commit()
        assert match_request_to_providers(service_request) == []

    def test_each_matched_provider_notified(self, seed_data):
        plumbing = db.session.get(Category, seed_data["plumbing_id"])
        customer = db.session.get(User, seed_data["customer_id"])
        service_request = make_request(customer, plumbing, "TZ0004")
        db.session.commit()

        match_request_to_providers(service_request)

        for key in ("p1_user_id", "p2_user_id", "p3_user_id"):
            note = Notification.query.filter_by(recipient_user_id=seed_data[key]).first()
            assert note.meta == {"type": "NEW_REQUEST_MATCHED", "requestId": "TZ0004"}


class TestPotentialRequests:

    def test_candidate_sees_request(self, seed_data):
        items = get_potential_requests(seed_data["p1_user_id"])
        assert len(items) == 1
        assert items[0]["requestId"] == seed_data["request_id"]
        assert items[0]["candidateStatus"] == RequestCandidate.PENDING
        assert 3 < items[0]["distanceKm"] < 4

    def test_declined_candidate_does_not_see_request(self, seed_data):
        candidate = RequestCandidate.query.filter_by(
            service_request_id=seed_data["request_pk"], provider_id=seed_data["p1_id"]
        ).first()
        candidate.status = RequestCandidate.DECLINED
        db.session.commit()
        assert get_potential_requests(seed_data["p1_user_id"]) == []

    def test_eligible_non_candidate_sees_request(self, seed_data):
        items = get_potential_requests(seed_data["p3_user_id"])
        assert [i["requestId"] for i in items] == [seed_data["request_id"]]
        assert items[0]["candidateStatus"] is None

    def test_inactive_provider_rejected(self, seed_data):
        provider = db.session.get(Provider, seed_data["p1_id"])
        provider.is_active = False
        db.session.commit()
        with pytest.raises(NotFoundError):
            get_potential_requests(seed_data["p1_user_id"])

    def test_endpoint_requires_provider_role(self, client, seed_data, login_as):
        login_as(seed_data["customer_id"])
        resp = client.get("/api/providers/potential-requests")
        assert resp.status_code == 403

    def test_endpoint_lists_requests(self, client, seed_data, login_as):
        login_as(seed_data["p2_user_id"])
        resp = client.get("/api/providers/potential-requests")
        assert resp.status_code == 200
        assert resp.get_json()["data"][0]["requestId"] == seed_data["request_id"]
