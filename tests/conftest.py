"""
Shared fixtures: in-memory SQLite database, seeded users/leads/meeting types,
geocoders backed by httpx.MockTransport and an authenticated TestClient.
"""

import os

# Must be set before crm_scheduling.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from crm_scheduling.auth import create_access_token
from crm_scheduling.database import Base, get_db
from crm_scheduling.main import app
from crm_scheduling.models import (
    ApprovalStatus,
    Booking,
    BookingStatus,
    Campaign,
    Lead,
    MeetingType,
    User,
    UserRole,
)
from crm_scheduling.routes.geocoding import rate_limit_geocode
from crm_scheduling.services.geocoding import NominatimGeocoder, get_geocoder

RIVOLI_RESPONSE = [
    {
        "lat": "48.8606",
        "lon": "2.3376",
        "display_name": "10, Rue de Rivoli, Paris, Île-de-France, 75004, France",
        "address": {
            "house_number": "10",
            "road": "Rue de Rivoli",
            "city": "Paris",
            "postcode": "75004",
            "country_code": "fr",
        },
    }
]


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_geocoder(handler) -> NominatimGeocoder:
    """Nominatim geocoder whose HTTP calls are answered by ``handler``"""
    return NominatimGeocoder(
        base_url="https://nominatim.test",
        user_agent="crm-scheduling-tests",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def working_geocoder():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=RIVOLI_RESPONSE)

    return make_geocoder(handler)


@pytest.fixture
def unreachable_geocoder():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return make_geocoder(handler)


@pytest.fixture
def slow_geocoder():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    return make_geocoder(handler)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _add_user(db, email: str, role: str) -> User:
    user = User(email=email, full_name=email.split("@")[0], role=role, is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def bd_user(db):
    return _add_user(db, "bd@example.com", UserRole.BD)


@pytest.fixture
def other_bd_user(db):
    return _add_user(db, "bd2@example.com", UserRole.BD)


@pytest.fixture
def manager(db):
    return _add_user(db, "manager@example.com", UserRole.MANAGER)


@pytest.fixture
def admin(db):
    return _add_user(db, "admin@example.com", UserRole.ADMIN)


@pytest.fixture
def developer(db):
    return _add_user(db, "dev@example.com", UserRole.DEVELOPER)


@pytest.fixture
def campaign(db):
    campaign = Campaign(name="Rénovation Île-de-France")
    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    return campaign


@pytest.fixture
def lead(db, campaign):
    lead = Lead(
        campaign_id=campaign.id,
        standard_data={"name": "Boulangerie Martin", "phone": "+33612345679"},
    )
    db.add(lead)
    db.commit()
    db.refresh(lead)
    return lead


@pytest.fixture
def physical_type(db, campaign):
    meeting_type = MeetingType(
        campaign_id=campaign.id, name="Visite technique", duration=60, is_physical=True
    )
    db.add(meeting_type)
    db.commit()
    db.refresh(meeting_type)
    return meeting_type


@pytest.fixture
def online_type(db, campaign):
    meeting_type = MeetingType(
        campaign_id=campaign.id, name="Visio", duration=30, is_physical=False
    )
    db.add(meeting_type)
    db.commit()
    db.refresh(meeting_type)
    return meeting_type


@pytest.fixture
def api_geocoder(working_geocoder):
    """Geocoder injected into the HTTP app; tests may swap it"""
    return {"geocoder": working_geocoder}


@pytest.fixture
def client(session_factory, api_geocoder):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_geocoder] = lambda: api_geocoder["geocoder"]
    app.dependency_overrides[rate_limit_geocode] = lambda: None
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


def seed_booking(db, user: User, start: datetime, end: datetime, **fields):
    """Insert a booking row directly, bypassing the lifecycle rules"""
    booking = Booking(
        user_id=user.id,
        title=fields.pop("title", "Existing meeting"),
        start_time=start,
        end_time=end,
        status=fields.pop("status", BookingStatus.SCHEDULED),
        approval_status=fields.pop("approval_status", ApprovalStatus.APPROVED),
        **fields,
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking
