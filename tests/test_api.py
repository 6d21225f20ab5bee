import logging

from bookvault import AuditLog, Book, Device, OrderItem, Role, User, create_app, db


def login(client, email, password="password"):
    return client.post("/auth/login", json={"email": email, "password": password})


def test_login_sets_session_cookie_and_me_reads_it(client, make_user):
    user = make_user(email="lector@example.com", role=Role.ADMIN)

    response = login(client, "lector@example.com")

    assert response.status_code == 200
    assert response.get_json()["role"] == "ADMIN"
    assert "session_token=" in response.headers["Set-Cookie"]
    me = client.get("/auth/me")
    assert me.status_code == 200
    assert me.get_json()["id"] == user.id


def test_login_rejects_wrong_password(client, make_user):
    make_user(email="lector@example.com")

    response = login(client, "lector@example.com", "nope")

    assert response.status_code == 401


def test_login_requires_both_fields(client):
    response = client.post("/auth/login", json={"email": "x@example.com"})

    assert response.status_code == 400


def test_deactivated_account_cannot_log_in(client, make_user):
    user = make_user(email="gone@example.com")
    user.is_active = False
    db.session.commit()

    assert login(client, "gone@example.com").status_code == 403


def test_logout_clears_cookie(client, make_user):
    make_user(email="lector@example.com")
    login(client, "lector@example.com")

    response = client.post("/auth/logout")

    assert response.status_code == 200
    assert client.get("/auth/me").status_code == 401


def test_user_lists_own_devices_oldest_first(client, guard, make_user, auth_headers):
    user = make_user()
    other = make_user()
    for name in ("phone", "laptop"):
        guard.ledger.resolve_or_register(user.id, name)
    guard.ledger.resolve_or_register(other.id, "tv")

    response = client.get("/devices", headers=auth_headers(user))

    body = response.get_json()
    assert [d["deviceId"] for d in body["devices"]] == ["phone", "laptop"]
    assert body["maxDevices"] == 3


def test_user_removes_only_own_device(client, guard, make_user, auth_headers):
    user = make_user()
    other = make_user()
    guard.ledger.resolve_or_register(user.id, "phone")
    guard.ledger.resolve_or_register(other.id, "tv")

    assert client.delete("/devices/phone", headers=auth_headers(user)).status_code == 200
    assert client.delete("/devices/tv", headers=auth_headers(user)).status_code == 404
    assert [d.device_id for d in Device.query.all()] == ["tv"]


def test_admin_routes_reject_readers(client, make_user, auth_headers):
    reader = make_user()

    response = client.get(f"/admin/users/{reader.id}/devices", headers=auth_headers(reader))

    assert response.status_code == 403
    assert response.get_json()["code"] == "FORBIDDEN"


def test_admin_lists_and_removes_devices_with_audit(client, guard, make_user, auth_headers):
    admin = make_user(role=Role.ADMIN)
    reader = make_user()
    guard.ledger.resolve_or_register(reader.id, "stolen-laptop")

    listing = client.get(f"/admin/users/{reader.id}/devices", headers=auth_headers(admin))
    removal = client.delete("/admin/devices/stolen-laptop", headers=auth_headers(admin))

    assert [d["deviceId"] for d in listing.get_json()] == ["stolen-laptop"]
    assert removal.status_code == 200
    assert Device.query.count() == 0
    assert AuditLog.query.filter_by(admin_user_id=admin.id, action="device_remove:stolen-laptop").count() == 1


def test_admin_device_listing_for_unknown_user(client, make_user, auth_headers):
    admin = make_user(role=Role.SUPER_ADMIN)

    assert client.get("/admin/users/999/devices", headers=auth_headers(admin)).status_code == 404


def test_grant_then_revoke_controls_access(client, make_user, make_book, auth_headers):
    admin = make_user(role=Role.ADMIN)
    reader = make_user()
    book = make_book()
    reader_headers = auth_headers(reader, "reader-pc")

    granted = client.post(f"/admin/users/{reader.id}/books", json={"book_id": book.id}, headers=auth_headers(admin))
    again = client.post(f"/admin/users/{reader.id}/books", json={"book_id": book.id}, headers=auth_headers(admin))

    assert granted.status_code == 201
    assert again.status_code == 200
    assert OrderItem.query.filter_by(book_id=book.id).count() == 1
    assert client.get(f"/access/{book.id}", headers=reader_headers).status_code == 200

    revoked = client.delete(f"/admin/users/{reader.id}/books/{book.id}", headers=auth_headers(admin))

    assert revoked.status_code == 200
    denied = client.get(f"/access/{book.id}", headers=reader_headers)
    assert denied.get_json()["code"] == "NOT_ENTITLED"
    assert AuditLog.query.filter(AuditLog.action.like("book_%")).count() == 2


def test_grant_validates_input(client, make_user, auth_headers):
    admin = make_user(role=Role.ADMIN)
    reader = make_user()

    missing = client.post(f"/admin/users/{reader.id}/books", json={}, headers=auth_headers(admin))
    unknown = client.post(f"/admin/users/{reader.id}/books", json={"book_id": 77}, headers=auth_headers(admin))

    assert missing.status_code == 400
    assert unknown.status_code == 404


def test_revoke_without_purchase_is_not_found(client, make_user, make_book, auth_headers):
    admin = make_user(role=Role.ADMIN)
    reader = make_user()
    book = make_book()

    response = client.delete(f"/admin/users/{reader.id}/books/{book.id}", headers=auth_headers(admin))

    assert response.status_code == 404


def test_create_user_command(runner):
    result = runner.invoke(args=["create-user", "Boss@Example.com", "--password", "s3cret", "--role", "SUPER_ADMIN"])

    assert result.exit_code == 0, result.output
    user = User.query.filter_by(email="boss@example.com").one()
    assert user.role == "SUPER_ADMIN"


def test_create_user_command_refuses_duplicates(runner, make_user):
    make_user(email="taken@example.com")

    result = runner.invoke(args=["create-user", "taken@example.com", "--password", "pw"])

    assert result.exit_code != 0
    assert "already registered" in result.output


def test_add_book_command(runner):
    result = runner.invoke(args=["add-book", "Rayuela", "--author", "Cortázar", "--file", "books/rayuela.pdf"])

    assert result.exit_code == 0, result.output
    assert Book.query.filter_by(title="Rayuela").one().book_file == "books/rayuela.pdf"


def test_deactivated_account_loses_device_routes(client, make_user, auth_headers):
    user = make_user()
    headers = auth_headers(user)
    user.is_active = False
    db.session.commit()

    response = client.get("/devices", headers=headers)

    assert response.status_code == 403
    assert response.get_json()["message"] == "Account deactivated."


def test_grant_rejects_boolean_and_out_of_range_ids(client, make_user, auth_headers):
    admin = make_user(role=Role.ADMIN)
    reader = make_user()
    url = f"/admin/users/{reader.id}/books"

    flag = client.post(url, json={"book_id": True}, headers=auth_headers(admin))
    huge = client.post(url, json={"book_id": "99999999999999999999999"}, headers=auth_headers(admin))
    text = client.post(url, json={"book_id": "7"}, headers=auth_headers(admin))

    assert flag.status_code == 400
    assert huge.status_code == 404
    assert text.status_code == 404


def test_logging_is_configured_by_the_factory(monkeypatch, tmp_path):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    create_app(
        {
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "SECRET_KEY": "test-secret",
            "PRIVATE_STORAGE_ROOT": str(tmp_path / "storage"),
            "LOG_LEVEL": "debug",
        }
    )

    assert [c["level"] for c in calls] == ["DEBUG"]
