from datetime import timedelta

import pytest
from childcare_booking.config import get_settings
from childcare_booking.deps import get_caller, require_admin
from childcare_booking.domain.identity import CallerIdentity, Role
from childcare_booking.utils.auth import create_access_token
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient


def _make_app() -> TestClient:
    app = FastAPI()

    @app.get("/whoami")
    async def whoami(caller: CallerIdentity = Depends(get_caller)) -> dict[str, object]:
        return {"user_id": caller.user_id, "role": caller.role.value}

    @app.get("/admin-only")
    async def admin_only(caller: CallerIdentity = Depends(require_admin)) -> dict[str, object]:
        return {"user_id": caller.user_id}

    return TestClient(app)


def _token(secret: str, *, role: Role = Role.TUTOR, expired: bool = False) -> str:
    delta = timedelta(seconds=-1) if expired else timedelta(minutes=30)
    return create_access_token(user_id=123, secret=secret, role=role, expires_delta=delta)


@pytest.fixture(autouse=True)
def _auth_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTH_SECRET", "testsecret")
    get_settings.cache_clear()


def test_valid_token_resolves_identity() -> None:
    client = _make_app()
    res = client.get("/whoami", headers={"Authorization": f"Bearer {_token('testsecret')}"})
    assert res.status_code == 200
    assert res.json() == {"user_id": 123, "role": "tutor"}


def test_missing_header_resolves_guest() -> None:
    client = _make_app()
    res = client.get("/whoami")
    assert res.status_code == 200
    assert res.json() == {"user_id": None, "role": "guest"}


def test_token_signed_with_other_secret_is_rejected() -> None:
    client = _make_app()
    res = client.get("/whoami", headers={"Authorization": f"Bearer {_token('othersecret')}"})
    assert res.status_code == 401
    assert res.headers.get("www-authenticate", "").lower().startswith("bearer")


def test_expired_token_is_rejected() -> None:
    client = _make_app()
    res = client.get("/whoami", headers={"Authorization": f"Bearer {_token('testsecret', expired=True)}"})
    assert res.status_code == 401


def test_admin_route_checks_role() -> None:
    client = _make_app()
    tutor = client.get("/admin-only", headers={"Authorization": f"Bearer {_token('testsecret')}"})
    admin = client.get("/admin-only", headers={"Authorization": f"Bearer {_token('testsecret', role=Role.ADMIN)}"})
    anonymous = client.get("/admin-only")
    assert (tutor.status_code, admin.status_code, anonymous.status_code) == (403, 200, 401)
