"""Shared test fixtures for the lead marketplace test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: categories, a customer, an admin, three verified providers
  around Manhattan and one open request offered to two of them
- login_as: log a user into the test client via Flask-Login's session key
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from leadmarket import create_app
from leadmarket.extensions import db as _db
from leadmarket.models.category import Category, Subcategory
from leadmarket.models.provider import Provider
from leadmarket.models.service_request import RequestCandidate, ServiceRequest
from leadmarket.models.user import User

WEEKDAY_HOURS = [
    {"day": "Monday", "startTime": "08:00", "endTime": "18:00", "isAvailable": True},
    {"day": "Tuesday", "startTime": "08:00", "endTime": "18:00", "isAvailable": True},
    {"day": "Sunday", "startTime": "00:00", "endTime": "00:00", "isAvailable": False},
]

# Times Square; the seeded request sits ~3.5 km away in the East Village
PROVIDER_LAT, PROVIDER_LNG = 40.7580, -73.9855
REQUEST_LAT, REQUEST_LNG = 40.7265, -73.9815


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def login_as(client):
    """Return a function that logs `user_id` into the test client."""

    def _login(user_id):
        with client.session_transaction() as sess:
            sess["_user_id"] = user_id
            sess["_fresh"] = True

    return _login


def _active_subcategory_name(category):
    return next(s.name for s in category.subcategories if s.is_active)


def make_provider(user, category, company_name, latitude=PROVIDER_LAT,
                  longitude=PROVIDER_LNG, covered_radius=30, verified=True,
                  working_hours=None):
    provider = Provider(
        user_id=user.id,
        company_name=company_name,
        category_id=category.id,
        subcategory_name=_active_subcategory_name(category),
        latitude=latitude,
        longitude=longitude,
        covered_radius=covered_radius,
        working_hours=WEEKDAY_HOURS if working_hours is None else working_hours,
        service_location="Manhattan, NY",
        contact_person={"name": company_name, "email": user.email, "phone": "555-0100"},
        is_active=True,
        is_verified=verified,
    )
    provider.categories = [category]
    _db.session.add(provider)
    _db.session.flush()
    return provider


def make_request(customer, category, request_id, latitude=REQUEST_LAT,
                 longitude=REQUEST_LNG, status=ServiceRequest.PENDING, max_providers=3,
                 **kwargs):
    service_request = ServiceRequest(
        request_id=request_id,
        customer_id=customer.id,
        category_id=category.id,
        subcategory_name=_active_subcategory_name(category),
        priority="Normal",
        start_date=date.today() + timedelta(days=1),
        end_date=date.today() + timedelta(days=2),
        start_time="09:00",
        end_time="12:00",
        address="123 E 7th St, New York, NY",
        latitude=latitude,
        longitude=longitude,
        description="Kitchen sink is leaking.",
        status=status,
        max_providers=max_providers,
        **kwargs,
    )
    _db.session.add(service_request)
    _db.session.flush()
    return service_request


@pytest.fixture
def seed_data(app, db_session):
    """Seed users, categories, providers and one open request.

    Returns a dict of plain IDs so tests can use them across contexts.
    """
    # --- Categories ---
    plumbing = Category(name="Plumbing", price=Decimal("129.00"))
    leak_repair = Subcategory(name="Leak repair")
    retired = Subcategory(name="Retired service", is_active=False)
    plumbing.subcategories.extend([leak_repair, retired])
    cleaning = Category(name="Cleaning", price=None)  # falls back to the default price
    deep_clean = Subcategory(name="Deep clean")
    cleaning.subcategories.append(deep_clean)
    free = Category(name="Community help", price=Decimal("0.00"))
    free.subcategories.append(Subcategory(name="Neighbour assist"))
    _db.session.add_all([plumbing, cleaning, free])
    _db.session.flush()

    # --- Users ---
    customer = User(email="customer@test.com", full_name="Casey Customer",
                    phone="555-0199", role=User.ROLE_USER)
    admin = User(email="admin@test.com", full_name="Admin User", role=User.ROLE_ADMIN)
    provider_users = [
        User(email=f"provider{i}@test.com", full_name=f"Provider {i}",
             role=User.ROLE_PROVIDER)
        for i in (1, 2, 3)
    ]
    _db.session.add_all([customer, admin] + provider_users)
    _db.session.flush()

    # --- Providers (all verified plumbers near Times Square) ---
    p1 = make_provider(provider_users[0], plumbing, "Pipe Pros")
    p2 = make_provider(provider_users[1], plumbing, "Drain Masters")
    p3 = make_provider(provider_users[2], plumbing, "Leak Busters")

    # --- Open request, offered to p1 and p2 ---
    service_request = make_request(customer, plumbing, "TZ0001")
    _db.session.add_all([
        RequestCandidate(service_request_id=service_request.id, provider_id=p1.id, position=0),
        RequestCandidate(service_request_id=service_request.id, provider_id=p2.id, position=1),
    ])
    _db.session.commit()

    return {
        "plumbing_id": plumbing.id,
        "leak_repair_id": leak_repair.id,
        "retired_sub_id": retired.id,
        "cleaning_id": cleaning.id,
        "deep_clean_id": deep_clean.id,
        "free_id": free.id,
        "customer_id": customer.id,
        "admin_id": admin.id,
        "p1_user_id": provider_users[0].id,
        "p2_user_id": provider_users[1].id,
        "p3_user_id": provider_users[2].id,
        "p1_id": p1.id,
        "p2_id": p2.id,
        "p3_id": p3.id,
        "request_pk": service_request.id,
        "request_id": service_request.request_id,
    }
