"""Shared fixtures: a mongomock database, a mocked Mapbox client and a test app."""

from datetime import datetime
from unittest.mock import MagicMock

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import AGENTS, ADMINS, USERS, RequestStore, create_document
from main import create_access_token, create_app
from mapbox import MapboxClient
from schemas import CollectionRequest, GeoPoint

AGENT_HOME = GeoPoint(lat=23.0225, lng=72.5714)    # Ahmedabad
NEARBY = GeoPoint(lat=23.0300, lng=72.5800)
FARTHER = GeoPoint(lat=23.2156, lng=72.6369)       # Gandhinagar, ~25 km
FAR_AWAY = GeoPoint(lat=19.0760, lng=72.8777)      # Mumbai, ~440 km


@pytest.fixture
def db():
    return mongomock.MongoClient().ewaste_test


@pytest.fixture
def store(db):
    return RequestStore(db)


@pytest.fixture
def mapbox():
    return MagicMock(spec=MapboxClient)


@pytest.fixture
def client(db, mapbox):
    return TestClient(create_app(db=db, mapbox_client=mapbox))


def make_request(store: RequestStore, user_id: str = "user_1", location=NEARBY, **overrides) -> str:
    fields = dict(
        user_id=user_id,
        full_name="Asha Patel",
        phone_number="9999900000",
        street_address="12 MG Road",
        city="Ahmedabad",
        zip_code="380001",
        preferred_datetime=datetime(2026, 11, 2, 10, 30),
        ewaste_type="Household Electronics",
        ewaste_subtype="Laptop",
        quantity=2,
        location=location,
    )
    fields.update(overrides)
    return store.insert(CollectionRequest(**fields))


def add_account(db, collection: str, role: str, **fields) -> dict:
    doc = {"name": fields.pop("name", role), "email": fields.pop("email", f"{role}@example.com"),
           "password_hash": "x"}
    doc.update(fields)
    account_id = create_document(db, collection, doc)
    token = create_access_token({"sub": account_id, "role": role})
    return {"id": account_id, "headers": {"Authorization": f"Bearer {token}"}}


@pytest.fixture
def user(db):
    return add_account(db, USERS, "user", email="asha@example.com")


@pytest.fixture
def other_user(db):
    return add_account(db, USERS, "user", email="ravi@example.com")


@pytest.fixture
def admin(db):
    return add_account(db, ADMINS, "admin")


@pytest.fixture
def agent(db):
    return add_account(db, AGENTS, "collectionAgent", email="x@agents.example.com",
                       location=AGENT_HOME.model_dump(), status="active")


@pytest.fixture
def agent_b(db):
    return add_account(db, AGENTS, "collectionAgent", email="y@agents.example.com",
                       location=AGENT_HOME.model_dump(), status="active")
