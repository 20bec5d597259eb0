from fastapi.testclient import TestClient
from main import app

from conftest import login

client = TestClient(app)


def test_login_and_session_persists():
    # Ensure login page loads
    r = client.get("/admin/login")
    assert r.status_code == 200

    r = login(client)
    assert r.status_code in (302, 303)
    assert r.headers.get("location") == "/admin/dashboard"

    # After login, the dashboard should be accessible and greet the admin
    r = client.get("/admin/dashboard")
    assert r.status_code == 200
    assert "Shelter Admin" in r.text

    # Logout clears session
    r = client.get("/admin/logout", follow_redirects=False)
    assert r.status_code in (302, 303)

    # After logout, the dashboard should require login (redirect)
    r = client.get("/admin/dashboard", follow_redirects=False)
    assert r.status_code in (302, 303)
    assert "/admin/login" in r.headers.get("location", "")


def test_login_email_is_case_insensitive():
    fresh = TestClient(app)
    r = login(fresh, email="  Admin@PawsHaven.org ")
    assert r.headers.get("location") == "/admin/dashboard"


def test_wrong_password_is_rejected():
    fresh = TestClient(app)
    r = login(fresh, password="not-the-password")
    assert r.status_code in (302, 303)
    assert r.headers.get("location", "").startswith("/admin/login")

    r = fresh.get(r.headers["location"])
    assert "Invalid email or password." in r.text


def test_unknown_email_is_rejected():
    fresh = TestClient(app)
    r = login(fresh, email="someone@example.com")
    assert r.headers.get("location", "").startswith("/admin/login")


def test_login_is_rate_limited():
    fresh = TestClient(app)
    for _ in range(5):
        login(fresh, password="wrong")

    # even the right password is refused inside the window
    r = login(fresh)
    assert r.headers.get("location", "").startswith("/admin/login")
    r = fresh.get(r.headers["location"])
    assert "Too many login attempts" in r.text
