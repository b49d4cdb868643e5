"""
tests/test_api_mfa.py -- Integration tests for the /api/v1/mfa routes and MFA login.

Covers:
  - enable -> verify-setup -> status round trip
  - Login for an MFA account returns a challenge, not tokens
  - verify-mfa with a TOTP code or a single-use backup code
  - Repeated wrong codes lock the account (423 with Retry-After)
  - disable / regenerate-backup-codes require the password
  - Every MFA route requires authentication
  - Code and password gates share the login rate limit
"""

from __future__ import annotations

from datetime import datetime, timezone

import pyotp
import pytest

from api.limiter import limiter

PASSWORD = "Tr0ub4dor&Zebra!"


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _now_code(secret):
    return pyotp.TOTP(secret).now()


def _wrong_code(secret):
    totp = pyotp.TOTP(secret)
    now = datetime.now(timezone.utc)
    nearby = {totp.at(now, s) for s in range(-2, 3)}
    return next(c for c in ("000000", "111111", "222222", "333333", "444444", "555555") if c not in nearby)


def _register(client, email):
    resp = client.post("/api/v1/auth/register", json={"email": email, "name": "Mfa User", "password": PASSWORD})
    assert resp.status_code == 201, resp.text
    return resp.json()["tokens"]["access_token"]


def _enroll(client, email):
    """Register and fully enable MFA. Returns (access_token, secret, backup_codes)."""
    token = _register(client, email)
    setup = client.post("/api/v1/mfa/enable", headers=_bearer(token)).json()
    codes = client.post(
        "/api/v1/mfa/verify-setup", json={"code": _now_code(setup["secret"])}, headers=_bearer(token)
    ).json()["backup_codes"]
    return token, setup["secret"], codes


def _challenge(client, email):
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["requires_mfa"] is True
    assert data["tokens"] is None
    return data["mfa_token"]


def test_enable_and_confirm(api_client):
    client, _ = api_client
    token = _register(client, "enroll@example.com")

    resp = client.post("/api/v1/mfa/enable", headers=_bearer(token))
    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    setup = resp.json()
    assert setup["provisioning_uri"] == (
        f"otpauth://totp/TaskFlow:enroll@example.com?secret={setup['secret']}&issuer=TaskFlow"
    )
    assert setup["manual_entry_key"].replace(" ", "") == setup["secret"]

    status = client.get("/api/v1/mfa/status", headers=_bearer(token)).json()
    assert status == {"state": "pending_setup", "enabled": False, "backup_codes_remaining": 0}

    resp = client.post("/api/v1/mfa/verify-setup", json={"code": _now_code(setup["secret"])}, headers=_bearer(token))
    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    codes = resp.json()["backup_codes"]
    assert len(codes) == 8
    assert all(len(c) == 8 and c.isdigit() for c in codes)

    status = client.get("/api/v1/mfa/status", headers=_bearer(token)).json()
    assert status == {"state": "enabled", "enabled": True, "backup_codes_remaining": 8}
    assert client.get("/api/v1/auth/me", headers=_bearer(token)).json()["mfa_enabled"] is True


def test_verify_setup_wrong_code(api_client):
    client, _ = api_client
    token = _register(client, "typo@example.com")
    secret = client.post("/api/v1/mfa/enable", headers=_bearer(token)).json()["secret"]

    resp = client.post("/api/v1/mfa/verify-setup", json={"code": _wrong_code(secret)}, headers=_bearer(token))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "mfa_invalid_code"


def test_verify_setup_without_enable(api_client):
    client, _ = api_client
    token = _register(client, "noenable@example.com")
    resp = client.post("/api/v1/mfa/verify-setup", json={"code": "123456"}, headers=_bearer(token))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "mfa_no_pending_setup"


def test_enable_twice_after_confirm(api_client):
    client, _ = api_client
    token, _, _ = _enroll(client, "twice@example.com")
    resp = client.post("/api/v1/mfa/enable", headers=_bearer(token))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "mfa_already_enabled"


def test_login_with_totp(api_client):
    client, _ = api_client
    _, secret, _ = _enroll(client, "totp@example.com")
    challenge = _challenge(client, "totp@example.com")

    resp = client.post("/api/v1/auth/verify-mfa", json={"mfa_token": challenge, "code": _now_code(secret)})
    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    data = resp.json()
    assert data["requires_mfa"] is False
    me = client.get("/api/v1/auth/me", headers=_bearer(data["tokens"]["access_token"]))
    assert me.json()["email"] == "totp@example.com"


def test_challenge_is_not_an_access_token(api_client):
    client, _ = api_client
    _enroll(client, "challenge@example.com")
    challenge = _challenge(client, "challenge@example.com")
    assert client.get("/api/v1/auth/me", headers=_bearer(challenge)).status_code == 401


def test_invalid_challenge_is_401(api_client):
    client, _ = api_client
    resp = client.post("/api/v1/auth/verify-mfa", json={"mfa_token": "bogus", "code": "123456"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "mfa_challenge_invalid"


def test_login_with_backup_code_once(api_client):
    client, _ = api_client
    token, _, codes = _enroll(client, "backup@example.com")

    challenge = _challenge(client, "backup@example.com")
    first = client.post("/api/v1/auth/verify-mfa", json={"mfa_token": challenge, "backup_code": codes[0]})
    assert first.status_code == 200

    challenge = _challenge(client, "backup@example.com")
    again = client.post("/api/v1/auth/verify-mfa", json={"mfa_token": challenge, "backup_code": codes[0]})
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "mfa_invalid_code"

    status = client.get("/api/v1/mfa/status", headers=_bearer(token)).json()
    assert status["backup_codes_remaining"] == 7


def test_repeated_wrong_codes_lock_account(api_client):
    client, _ = api_client
    _, secret, _ = _enroll(client, "locked@example.com")
    challenge = _challenge(client, "locked@example.com")
    wrong = _wrong_code(secret)

    for _ in range(5):
        resp = client.post("/api/v1/auth/verify-mfa", json={"mfa_token": challenge, "code": wrong})
        assert resp.status_code == 400

    resp = client.post("/api/v1/auth/verify-mfa", json={"mfa_token": challenge, "code": _now_code(secret)})
    assert resp.status_code == 423
    assert resp.json()["error"]["code"] == "account_locked"
    assert int(resp.headers["retry-after"]) > 0

    login = client.post("/api/v1/auth/login", json={"email": "locked@example.com", "password": PASSWORD})
    assert login.status_code == 423


def test_regenerate_backup_codes(api_client):
    client, _ = api_client
    token, _, old_codes = _enroll(client, "regen@example.com")

    wrong = client.post(
        "/api/v1/mfa/regenerate-backup-codes", json={"password": "Not#MyPassw0rd"}, headers=_bearer(token)
    )
    assert wrong.status_code == 400
    assert wrong.json()["error"]["code"] == "wrong_password"

    resp = client.post("/api/v1/mfa/regenerate-backup-codes", json={"password": PASSWORD}, headers=_bearer(token))
    assert resp.status_code == 200
    new_codes = resp.json()["backup_codes"]
    assert len(new_codes) == 8

    challenge = _challenge(client, "regen@example.com")
    stale = client.post("/api/v1/auth/verify-mfa", json={"mfa_token": challenge, "backup_code": old_codes[0]})
    assert stale.status_code == 400
    fresh = client.post("/api/v1/auth/verify-mfa", json={"mfa_token": challenge, "backup_code": new_codes[0]})
    assert fresh.status_code == 200


def test_disable(api_client):
    client, _ = api_client
    token, _, _ = _enroll(client, "disable@example.com")

    wrong = client.post("/api/v1/mfa/disable", json={"password": "Not#MyPassw0rd"}, headers=_bearer(token))
    assert wrong.status_code == 400
    assert wrong.json()["error"]["code"] == "wrong_password"

    resp = client.post("/api/v1/mfa/disable", json={"password": PASSWORD}, headers=_bearer(token))
    assert resp.status_code == 200

    status = client.get("/api/v1/mfa/status", headers=_bearer(token)).json()
    assert status == {"state": "disabled", "enabled": False, "backup_codes_remaining": 0}

    login = client.post("/api/v1/auth/login", json={"email": "disable@example.com", "password": PASSWORD}).json()
    assert login["requires_mfa"] is False
    assert login["tokens"] is not None


def test_disable_when_not_enabled(api_client):
    client, _ = api_client
    token = _register(client, "neverenabled@example.com")
    resp = client.post("/api/v1/mfa/disable", json={"password": PASSWORD}, headers=_bearer(token))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "mfa_not_enabled"


@pytest.mark.parametrize(
    "method, path",
    [
        ("post", "/api/v1/mfa/enable"),
        ("post", "/api/v1/mfa/verify-setup"),
        ("post", "/api/v1/mfa/disable"),
        ("post", "/api/v1/mfa/regenerate-backup-codes"),
        ("get", "/api/v1/mfa/status"),
    ],
)
def test_mfa_routes_require_auth(api_client, method, path):
    client, _ = api_client
    body = {"code": "123456", "password": PASSWORD} if method == "post" else None
    resp = client.request(method.upper(), path, json=body)
    assert resp.status_code == 401


@pytest.mark.parametrize("endpoint", ["verify_setup", "disable", "regenerate_backup_codes"])
def test_password_and_code_gates_are_rate_limited(endpoint):
    # SlowAPIMiddleware enforces limits keyed by the endpoint's dotted name.
    assert f"api.routes.v1.mfa.{endpoint}" in limiter._route_limits


def test_enable_and_status_are_not_rate_limited():
    assert "api.routes.v1.mfa.enable" not in limiter._route_limits
    assert "api.routes.v1.mfa.status" not in limiter._route_limits
