from marksync.extensions import db
from marksync.models import ApiToken, Bookmark, User


def _create_user(username: str, password: str, is_admin=False):
    user = User(username=username, is_admin=is_admin, is_active=True)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


def _web_login(client, username: str, password: str):
    response = client.post(
        "/login",
        data={"username": username, "password": password},
        follow_redirects=False,
    )
    assert response.status_code == 302


def test_first_run_redirects_to_bootstrap(client):
    response = client.get("/", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/bootstrap")


def test_bootstrap_admin(client):
    response = client.get("/bootstrap")
    assert response.status_code == 200

    response = client.post(
        "/bootstrap",
        data={"username": "admin", "password": "secret", "confirm_password": "secret"},
        follow_redirects=False,
    )
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/login")


def test_dashboard_add_edit_delete(client, app):
    with app.app_context():
        _create_user("u1", "secret")
    _web_login(client, "u1", "secret")

    response = client.get("/")
    assert response.status_code == 200
    assert b"No bookmarks yet. Add one above!" in response.data

    response = client.post(
        "/bookmarks/new",
        data={
            "url": "https://example.com",
            "title": "Example",
            "description": "Great read #tutorial",
        },
        follow_redirects=True,
    )
    assert b"Bookmark added successfully!" in response.data
    assert b"Example" in response.data
    assert b"#tutorial" in response.data

    with app.app_context():
        bookmark_id = Bookmark.query.one().id

    response = client.post(
        f"/bookmarks/{bookmark_id}/edit",
        data={"url": "https://example.com", "title": ""},
    )
    assert b"Title and URL cannot be empty." in response.data

    response = client.post(
        f"/bookmarks/{bookmark_id}/edit",
        data={"url": "https://example.org", "title": "Renamed"},
        follow_redirects=True,
    )
    assert b"Bookmark updated successfully!" in response.data
    assert b"Renamed" in response.data

    response = client.get("/?q=nothing-matches")
    assert b"No bookmarks match your search criteria." in response.data

    response = client.post(f"/bookmarks/{bookmark_id}/delete", follow_redirects=True)
    assert b"Bookmark deleted successfully!" in response.data
    with app.app_context():
        assert Bookmark.query.count() == 0


def test_live_snapshot_filters_by_tag(client, app):
    with app.app_context():
        _create_user("u1", "secret")
    _web_login(client, "u1", "secret")
    for title, description in [("Go", "#golang"), ("Py", "#python #tutorial")]:
        client.post(
            "/bookmarks/new",
            data={
                "url": "https://x.example",
                "title": title,
                "description": description,
            },
        )

    body = client.get("/bookmarks/live?tag=%23python").get_json()
    assert body["tag"] == "#python"
    assert [item["title"] for item in body["items"]] == ["Py"]
    assert body["items"][0]["hashtags"] == ["#python", "#tutorial"]


def test_live_window_marker_and_theme_toggle(client, app):
    with app.app_context():
        _create_user("u1", "secret")
    _web_login(client, "u1", "secret")

    assert b"Live Window" in client.get("/?live=true").data
    assert b"Live Window" not in client.get("/").data

    assert b'data-theme="light"' in client.get("/").data
    client.post("/preferences/theme")
    assert b'data-theme="dark"' in client.get("/").data


def test_issue_and_revoke_api_token(client, app):
    with app.app_context():
        _create_user("u1", "secret")
    _web_login(client, "u1", "secret")

    response = client.post("/tokens", data={"name": "cli"})
    assert response.status_code == 200
    with app.app_context():
        row = ApiToken.query.one()
        assert row.name == "cli"
        token_id = row.id

    client.post(f"/tokens/{token_id}/revoke")
    with app.app_context():
        assert db.session.get(ApiToken, token_id).revoked_at is not None
