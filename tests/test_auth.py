from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
import jwt

from auth import hash_password, verify_password
from conftest import auth
from main import create_app
from settings import Settings


def test_password_hash_is_salted_and_verifies():
    first = hash_password("hunter2")
    second = hash_password("hunter2")
    assert first != second
    assert verify_password("hunter2", first)
    assert not verify_password("hunter3", first)
    assert not verify_password("hunter2", "not-a-hash")
    assert not verify_password("hunter2", None)


def test_signup_and_login(client, db):
    res = client.post("/signup", json={
        "name": "Ada", "email": "ada@shop.io", "password": "pw", "role": "customer",
    })
    assert res.status_code == 201
    assert res.json()["user"]["role"] == "customer"
    stored = db["user"].find_one({"email": "ada@shop.io"})
    assert stored["password_hash"] != "pw"

    res = client.post("/login", json={"email": "ada@shop.io", "password": "pw"})
    assert res.status_code == 200
    body = res.json()
    assert body["role"] == "customer"
    assert body["id"] == str(stored["_id"])
    payload = jwt.decode(body["token"], "test-secret", algorithms=["HS256"])
    assert payload["id"] == body["id"]
    assert payload["role"] == "customer"


def test_duplicate_email_is_conflict(client, buyer):
    res = client.post("/signup", json={
        "name": "Other", "email": "bea@shop.io", "password": "pw", "role": "customer",
    })
    assert res.status_code == 409
    assert res.json()["message"] == "Email already registered"


def test_signup_rejects_unknown_role(client):
    res = client.post("/signup", json={
        "name": "Eve", "email": "eve@shop.io", "password": "pw", "role": "admin",
    })
    assert res.status_code == 400
    assert res.json()["success"] is False


def test_login_wrong_password(client, buyer):
    res = client.post("/login", json={"email": "bea@shop.io", "password": "nope"})
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid credentials"


def test_missing_token_is_unauthorized(client):
    res = client.get("/cart")
    assert res.status_code == 401
    assert res.json()["message"] == "Access denied. No token provided."


def test_garbage_token_is_unauthorized(client):
    res = client.get("/cart", headers=auth("not.a.token"))
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid token"


def test_expired_token_is_unauthorized(client, buyer):
    _, user_id = buyer
    token = jwt.encode(
        {"id": user_id, "role": "customer", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        "test-secret",
        algorithm="HS256",
    )
    res = client.get("/cart", headers=auth(token))
    assert res.status_code == 401
    assert res.json()["message"] == "Token expired"


def test_token_signed_with_other_secret_is_rejected(client, buyer):
    _, user_id = buyer
    token = jwt.encode({"id": user_id, "role": "customer"}, "wrong-secret", algorithm="HS256")
    assert client.get("/cart", headers=auth(token)).status_code == 401


def test_role_mismatch_is_forbidden(client, buyer):
    token, _ = buyer
    res = client.get("/orders", headers=auth(token))
    assert res.status_code == 403


def test_profile_is_private(client, buyer, seller):
    token, user_id = buyer
    _, seller_id = seller

    res = client.get(f"/profile/{user_id}", headers=auth(token))
    assert res.status_code == 200
    assert res.json()["email"] == "bea@shop.io"
    assert "password_hash" not in res.json()

    assert client.get(f"/profile/{seller_id}", headers=auth(token)).status_code == 404

    res = client.put(f"/profile/{user_id}", headers=auth(token), json={"address": "2 Side St"})
    assert res.status_code == 200
    assert client.get(f"/profile/{user_id}", headers=auth(token)).json()["address"] == "2 Side St"


def test_unknown_route_returns_json(client):
    res = client.get("/nowhere")
    assert res.status_code == 404
    assert res.json() == {"success": False, "message": "Route not found: /nowhere"}


def test_each_app_signs_with_its_own_secret(mongo):
    first = TestClient(create_app(Settings(jwt_secret="first", log_level="WARNING"), mongo))
    second = TestClient(create_app(Settings(jwt_secret="second", log_level="WARNING"), mongo))
    first.post("/signup", json={"name": "Ada", "email": "ada@shop.io", "password": "pw", "role": "customer"})

    token = first.post("/login", json={"email": "ada@shop.io", "password": "pw"}).json()["token"]
    assert jwt.decode(token, "first", algorithms=["HS256"])["role"] == "customer"
    assert first.get("/cart", headers=auth(token)).status_code == 200
    assert second.get("/cart", headers=auth(token)).status_code == 401

    token = second.post("/login", json={"email": "ada@shop.io", "password": "pw"}).json()["token"]
    assert jwt.decode(token, "second", algorithms=["HS256"])["role"] == "customer"
