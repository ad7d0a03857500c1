from datetime import datetime, timezone

from bson import ObjectId
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from auth import create_token
from conftest import auth
from database import Mongo, create_document, parse_object_id, serialize_doc
from errors import ValidationFailed
from main import create_app
from settings import Settings


def test_serialize_doc_converts_nested_values():
    oid, ref = ObjectId(), ObjectId()
    when = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    out = serialize_doc({
        "_id": oid,
        "seller_id": ref,
        "created_at": datetime(2024, 5, 1, 12, 0),
        "items": [{"_id": ref, "at": when}],
        "customer": {"name": "C"},
    })
    assert out == {
        "id": str(oid),
        "seller_id": str(ref),
        "created_at": "2024-05-01T12:00:00+00:00",
        "items": [{"id": str(ref), "at": "2024-05-01T12:00:00+00:00"}],
        "customer": {"name": "C"},
    }


def test_parse_object_id():
    oid = ObjectId()
    assert parse_object_id(str(oid)) == oid
    assert parse_object_id(oid) is oid
    for bad in (None, "", "nope", 42):
        with pytest.raises(ValidationFailed):
            parse_object_id(bad)


def test_create_document_stamps_times(db):
    doc_id = create_document(db, "product", {"name": "P"})
    stored = db["product"].find_one({"_id": ObjectId(doc_id)})
    assert stored["name"] == "P"
    assert "created_at" in stored and "updated_at" in stored


def test_indexes_enforce_one_cart_per_user(db):
    user_id = ObjectId()
    db["cart"].insert_one({"user_id": user_id, "items": []})
    with pytest.raises(DuplicateKeyError):
        db["cart"].insert_one({"user_id": user_id, "items": []})


def test_health_reports_connected(client):
    res = client.get("/test")
    assert res.status_code == 200
    assert res.json()["database"] == "connected"


def _unreachable(url):
    raise ServerSelectionTimeoutError("no servers")


class UnreachableClient:
    created = []

    def __init__(self, url):
        self.closed = False
        UnreachableClient.created.append(self)

    def __getitem__(self, name):
        return self

    def create_index(self, *args, **kwargs):
        raise ServerSelectionTimeoutError("no servers")

    def close(self):
        self.closed = True


def test_failed_connect_closes_its_client():
    UnreachableClient.created = []
    mongo = Mongo("mongodb://down", "shop", client_factory=UnreachableClient)
    for _ in range(3):
        with pytest.raises(ServerSelectionTimeoutError):
            mongo.db
    mongo.close()

    assert len(UnreachableClient.created) == 3
    assert all(c.closed for c in UnreachableClient.created)


def test_database_outage_is_reported_not_masked():
    settings = Settings(jwt_secret="test-secret", log_level="WARNING")
    client = TestClient(create_app(settings, Mongo("mongodb://down", "shop", client_factory=_unreachable)))

    res = client.get("/test")
    assert res.status_code == 503
    assert res.json() == {"success": False, "message": "Database unavailable"}

    token = create_token(str(ObjectId()), "customer", settings)
    res = client.get("/cart", headers=auth(token))
    assert res.status_code == 503


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_EXPIRE_DAYS", "7")
    monkeypatch.setenv("CORS_ORIGINS", "http://a.io, http://b.io")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_JSON", "true")
    settings = Settings()
    assert settings.jwt_expire_days == 7
    assert settings.cors_origin_list == ["http://a.io", "http://b.io"]
    assert settings.log_level == "DEBUG"
    assert settings.log_json is True


def test_settings_reject_non_positive_expiry():
    with pytest.raises(ValueError):
        Settings(jwt_expire_days=0)


def test_settings_read_dotenv_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DATABASE_NAME", raising=False)
    monkeypatch.delenv("CART_ADD_RETRIES", raising=False)
    (tmp_path / ".env").write_text("DATABASE_NAME=from_file\nCART_ADD_RETRIES=2\n")
    settings = Settings()
    assert settings.database_name == "from_file"
    assert settings.cart_add_retries == 2
    assert settings.cors_origin_list == ["*"]
