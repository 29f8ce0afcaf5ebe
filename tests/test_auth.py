from conftest import auth_headers, make_user


def test_register_login_and_me(client):
    r = client.post("/api/auth/register", json={"name": "Sam", "email": "Sam@Example.com", "password": "secret-pass"})
    assert r.status_code == 201
    assert r.json()["email"] == "sam@example.com"
    assert "password_hash" not in r.json()

    r = client.post("/api/auth/login", json={"email": "sam@example.com", "password": "secret-pass"})
    assert r.status_code == 200
    token = r.json()["token"]

    me = client.get("/api/user", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["name"] == "Sam"


def test_register_duplicate_email(client):
    payload = {"name": "Sam", "email": "sam@example.com", "password": "secret-pass"}
    assert client.post("/api/auth/register", json=payload).status_code == 201
    r = client.post("/api/auth/register", json=payload)
    assert r.status_code == 400
    assert r.json() == {"error": "Email already registered"}


def test_register_validation_error_shape(client):
    r = client.post("/api/auth/register", json={"name": "Sam", "email": "not-an-email", "password": "short"})
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "Invalid data"
    assert {d["field"] for d in body["details"]} == {"email", "password"}


def test_login_wrong_password(client):
    make_user(email="a@example.com", password="right-password")
    r = client.post("/api/auth/login", json={"email": "a@example.com", "password": "wrong-password"})
    assert r.status_code == 401


def test_unauthenticated_and_forbidden(client, user_headers):
    assert client.get("/api/user").status_code == 401
    assert client.get("/api/admin/users", headers=user_headers).status_code == 403


def test_change_password(client):
    user_id = make_user(email="p@example.com", password="old-password")
    headers = auth_headers(user_id)
    bad = client.put("/api/user/password", json={"current_password": "nope", "new_password": "new-password"}, headers=headers)
    assert bad.status_code == 400
    ok = client.put("/api/user/password", json={"current_password": "old-password", "new_password": "new-password"}, headers=headers)
    assert ok.status_code == 200
    r = client.post("/api/auth/login", json={"email": "p@example.com", "password": "new-password"})
    assert r.status_code == 200


def test_admin_lists_and_bans_users(client, admin_headers, user_id):
    r = client.get("/api/admin/users", params={"search": "jane"}, headers=admin_headers)
    assert r.status_code == 200
    assert [u["id"] for u in r.json()["users"]] == [user_id]
    assert r.json()["meta"]["total_count"] == 1

    user_headers = auth_headers(user_id)
    r = client.post(f"/api/admin/users/{user_id}/ban", json={"banned": True}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["banned"] is True
    # sessions are dropped on ban
    assert client.get("/api/user", headers=user_headers).status_code == 401


def test_admin_cannot_ban_self(client, mongo):
    admin_id = make_user("ADMIN")
    r = client.post(f"/api/admin/users/{admin_id}/ban", json={"banned": True}, headers=auth_headers(admin_id))
    assert r.status_code == 400


def test_update_role(client, admin_headers, user_id):
    r = client.patch(f"/api/admin/users/{user_id}", json={"role": "RETAILER"}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["role"] == "RETAILER"
