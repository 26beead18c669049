"""
Pytest configuration and shared fixtures.
"""

import sqlite3
from datetime import datetime, timedelta
from typing import List

import pytest
from fastapi.testclient import TestClient

from config import Settings
from contact_store import ContactStore
from db_models import ContactRecord, LinkPrecedence
from identity_service import IdentityService
from logger import configure_logging

BASE_TIME = datetime(2023, 4, 1, 12, 0, 0)


def at(seconds: int) -> datetime:
    """A fixed creation time, `seconds` after BASE_TIME."""
    return BASE_TIME + timedelta(seconds=seconds)


def seed(store: ContactStore, email=None, phone=None, linked_id=None,
         precedence=LinkPrecedence.PRIMARY, created_at=None, contact_id=None) -> ContactRecord:
    with store.transaction() as session:
        return session.create_contact(
            email=email,
            phone=phone,
            linked_id=linked_id,
            precedence=precedence,
            created_at=created_at,
            contact_id=contact_id,
        )


def all_contacts(store: ContactStore) -> List[ContactRecord]:
    conn = sqlite3.connect(store.db_path)
    conn.row_factory = sqlite3.Row
    rows = conn.execute("SELECT * FROM Contact ORDER BY id").fetchall()
    conn.close()
    return [ContactRecord(**dict(row)) for row in rows]


def contact_by_id(store: ContactStore, contact_id: int) -> ContactRecord:
    with store.transaction() as session:
        return session.get_contact(contact_id)


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "contacts.db")


@pytest.fixture
def store(db_path) -> ContactStore:
    """An initialized store backed by a temporary database file."""
    store = ContactStore(db_path, busy_timeout=5.0)
    store.init_db()
    return store


@pytest.fixture
def service(store) -> IdentityService:
    return IdentityService(store, max_retries=2, base_delay=0, max_delay=0)


@pytest.fixture
def settings(db_path) -> Settings:
    return Settings(
        database_path=db_path,
        identify_max_retries=1,
        retry_base_delay=0,
        retry_max_delay=0,
    )


@pytest.fixture
def app(settings):
    from main import create_app
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def debug_logging():
    configure_logging("DEBUG")
    yield
    configure_logging()
