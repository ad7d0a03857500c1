import mongomock
import pytest
from fastapi.testclient import TestClient

from database import Mongo
from main import create_app
from settings import Settings


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret", database_name="shop_test", log_level="WARNING")


@pytest.fixture
def mongo(settings):
    handle = Mongo("mongodb://localhost", settings.database_name, client_factory=mongomock.MongoClient)
    yield handle
    handle.close()


@pytest.fixture
def db(mongo):
    return mongo.db


@pytest.fixture
def client(settings, mongo):
    return TestClient(create_app(settings, mongo))


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def signup(client):
    def _signup(name, email, role="customer", password="secret", phone="555-0100", address="1 Main St"):
        res = client.post("/signup", json={
            "name": name,
            "email": email,
            "password": password,
            "phone": phone,
            "address": address,
            "role": role,
        })
        assert res.status_code == 201, res.text
        body = res.json()
        return body["token"], body["user"]["id"]

    return _signup


@pytest.fixture
def buyer(signup):
    return signup("Bea Buyer", "bea@shop.io")


@pytest.fixture
def seller(signup):
    return signup("Sam Seller", "sam@shop.io", role="shopkeeper")


@pytest.fixture
def add_product(client):
    def _add(token, name="Widget", price=10.0, stock=100, category="tools", image_url="https://img.shop.io/w.png"):
        res = client.post("/add-product", headers=auth(token), json={
            "name": name,
            "description": f"{name} description",
            "price": price,
            "image_url": image_url,
            "category": category,
            "stock": stock,
        })
        assert res.status_code == 201, res.text
        return res.json()["id"]

    return _add
