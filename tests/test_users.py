from bson import ObjectId

from create_admin import ensure_admin
from tests.conftest import auth_headers, make_product, make_user


class TestProfile:

    def test_get_profile(self, client, user_headers):
        resp = client.get("/api/users/profile", headers=user_headers)
        assert resp.status_code == 200
        assert resp.json()["email"] == "buyer@example.com"
        assert "password_hash" not in resp.json()

    def test_update_profile(self, client, user_headers):
        resp = client.put("/api/users/profile", headers=user_headers, json={
            "phone": "07700900111",
            "address": {"street": "2 Mill Lane", "city": "York", "zip_code": "YO1 7HH"},
        })
        assert resp.status_code == 200
        assert resp.json()["phone"] == "07700900111"
        assert resp.json()["address"]["city"] == "York"
        assert resp.json()["name"] == "Buyer"

    def test_update_nothing(self, client, user_headers):
        assert client.put("/api/users/profile", headers=user_headers, json={}).status_code == 400

    def test_profile_cannot_change_role(self, client, db, user_headers):
        client.put("/api/users/profile", headers=user_headers, json={"name": "Buyer Two", "role": "admin"})
        assert db["user"].find_one({"email": "buyer@example.com"})["role"] == "user"


class TestAdminUsers:

    def test_list(self, client, db, admin_headers):
        make_user(db, email="a@example.com")
        resp = client.get("/api/users", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["count"] == 2
        assert all("password_hash" not in u for u in resp.json()["items"])

    def test_list_requires_admin(self, client, user_headers):
        assert client.get("/api/users", headers=user_headers).status_code == 403

    def test_get(self, client, db, admin_headers):
        user_id = make_user(db, email="a@example.com")
        resp = client.get(f"/api/users/{user_id}", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["id"] == user_id
        assert client.get(f"/api/users/{'0' * 24}", headers=admin_headers).status_code == 404

    def test_change_role(self, client, db, admin_headers):
        user_id = make_user(db, email="a@example.com")
        resp = client.put(f"/api/users/{user_id}/role", json={"role": "admin"}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["role"] == "admin"
        assert client.get("/api/users", headers=auth_headers(user_id)).status_code == 200

    def test_invalid_role(self, client, db, admin_headers):
        user_id = make_user(db, email="a@example.com")
        resp = client.put(f"/api/users/{user_id}/role", json={"role": "owner"}, headers=admin_headers)
        assert resp.status_code == 400

    def test_delete_cleans_up(self, client, db, admin_headers):
        user_id = make_user(db, email="a@example.com")
        headers = auth_headers(user_id)
        pid = make_product(db)
        client.post("/api/cart", json={"product_id": pid}, headers=headers)
        client.post("/api/wishlist", json={"product_id": pid}, headers=headers)

        resp = client.delete(f"/api/users/{user_id}", headers=admin_headers)
        assert resp.status_code == 200
        assert db["user"].find_one({"_id": ObjectId(user_id)}) is None
        assert db["cart"].count_documents({"user_id": user_id}) == 0
        assert db["wishlist"].count_documents({"user_id": user_id}) == 0
        assert client.get("/api/auth/me", headers=headers).status_code == 401

    def test_cannot_delete_self(self, client, db, admin_headers):
        admin_id = str(db["user"].find_one({"email": "admin@example.com"})["_id"])
        assert client.delete(f"/api/users/{admin_id}", headers=admin_headers).status_code == 400


class TestEnsureAdmin:

    def test_creates_admin(self, db):
        user_id = ensure_admin(db, "Boss@Example.com", "secret123")
        user = db["user"].find_one({"_id": ObjectId(user_id)})
        assert user["email"] == "boss@example.com"
        assert user["role"] == "admin"
        assert user["is_verified"] is True

    def test_promotes_existing_user(self, db):
        user_id = make_user(db, email="boss@example.com")
        assert ensure_admin(db, "boss@example.com", "ignored") == user_id
        assert db["user"].find_one({"_id": ObjectId(user_id)})["role"] == "admin"
        assert db["user"].count_documents({}) == 1

    def test_is_idempotent(self, db):
        first = ensure_admin(db, "boss@example.com", "secret123")
        assert ensure_admin(db, "boss@example.com", "secret123") == first
        assert db["user"].count_documents({}) == 1
