from datetime import datetime, timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import issue_token
from database import Database
from main import Services, create_app
from schemas import User


class FakeClock:
    def __init__(self, start=datetime(2025, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(clock):
    db = Database(name="ahaar_test", client=mongomock.MongoClient(), clock=clock)
    db.connect()
    yield db
    db.close()


@pytest.fixture
def services(database):
    return Services(database)


@pytest.fixture
def make_user(database):
    def _make(name="Donor", user_type="individual", **extra):
        user = User(
            email=f"{name.lower().replace(' ', '.')}.{ObjectId()}@ahaar.org",
            password_hash="not-a-real-hash",
            name=name,
            user_type=user_type,
        ).model_dump()
        user.update(extra)
        user_id = database.create_document("user", user)
        return database.find_by_id("user", user_id)

    return _make


@pytest.fixture
def donation_attrs(clock):
    def _attrs(**overrides):
        attrs = {
            "title": "Vegetable biryani",
            "description": "Twenty portions left over from lunch service",
            "category": "food",
            "quantity": "20 portions",
            "location": "Dhanmondi, Dhaka",
            "expiry_date": clock.now + timedelta(hours=6),
        }
        attrs.update(overrides)
        return attrs

    return _attrs


@pytest.fixture
def make_donation(services, donation_attrs):
    def _make(donor, **overrides):
        return services.donations.create(donor, donation_attrs(**overrides))

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        token = issue_token(str(user["_id"])).access_token
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def client(database):
    app = create_app(database=database, sweep_interval=0)
    with TestClient(app) as test_client:
        yield test_client
