import os
import tempfile
from unittest import mock

import mongomock
import pytest

os.environ["DATABASE_URL"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "storefront_test"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ENVIRONMENT"] = "test"
os.environ["MAIL_PREVIEW_DIR"] = tempfile.mkdtemp(prefix="storefront-mail-")
for var in ("SMTP_HOST", "SMTP_PORT", "SMTP_USER", "SMTP_PASS"):
    os.environ.pop(var, None)

# database.py connects at import time
mock.patch("pymongo.MongoClient", mongomock.MongoClient).start()

from fastapi.testclient import TestClient  # noqa: E402

import otp  # noqa: E402
from database import create_document, db, ensure_indexes  # noqa: E402
from main import app  # noqa: E402
from schemas import Product, User  # noqa: E402
from security import create_token, hash_password  # noqa: E402

OTP_CODE = "123456"

ADDRESS = {
    "line1": "12 MG Road",
    "line2": "",
    "city": "Bengaluru",
    "state": "KA",
    "postalCode": "560001",
    "country": "India",
}


@pytest.fixture(autouse=True)
def clean_db():
    for name in db.list_collection_names():
        db.drop_collection(name)
    ensure_indexes()
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def fixed_code(monkeypatch):
    monkeypatch.setattr(otp, "generate_code", lambda: OTP_CODE)
    return OTP_CODE


def make_user(name="Asha", email="asha@example.com", password="secret123", is_admin=False):
    user_id = create_document(
        "user",
        User(name=name, email=email, password_hash=hash_password(password), is_admin=is_admin),
    )
    return user_id


def auth_header(user_id, is_admin=False):
    return {"Authorization": f"Bearer {create_token(user_id, is_admin)}"}


def make_product(name="Desk Lamp", price=300, stock=5, category="Home", **extra):
    return create_document(
        "product",
        Product(name=name, price=price, category=category, count_in_stock=stock, **extra),
    )


@pytest.fixture
def user():
    user_id = make_user()
    return {"id": user_id, "headers": auth_header(user_id)}


@pytest.fixture
def other_user():
    user_id = make_user(name="Ravi", email="ravi@example.com")
    return {"id": user_id, "headers": auth_header(user_id)}


@pytest.fixture
def admin():
    user_id = make_user(name="Admin", email="admin@example.com", is_admin=True)
    return {"id": user_id, "headers": auth_header(user_id, is_admin=True)}
