import os
import sys
from pathlib import Path

# ensure project root is importable for tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# keep test runs off the on-disk state file
os.environ["STATE_FILE"] = ""
os.environ.setdefault("DATA_BACKEND", "memory")

import pytest


ADMIN_EMAIL = "admin@pawshaven.org"
ADMIN_PASSWORD = "admin"


@pytest.fixture(autouse=True)
def isolate_state():
    """Reseed the in-memory backend and drop section state so tests do not depend on order."""
    import main

    main.backend.reset(main.seed_data())
    main.reset_sections()
    main.logs.clear()
    main.LOGIN_ATTEMPTS.clear()

    yield

    main.reset_sections()
    main.logs.clear()
    main.LOGIN_ATTEMPTS.clear()


def login(client, email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
    return client.post("/admin/login", data={"email": email, "password": password}, follow_redirects=False)


@pytest.fixture
def admin_client():
    from fastapi.testclient import TestClient
    import main

    client = TestClient(main.app)
    r = login(client)
    assert r.status_code in (302, 303)
    assert r.headers.get("location") == "/admin/dashboard"
    return client
