# tests/test_auth.py - Authentication, token lifecycle and TOTP step-up
import pyotp
import pytest
from fastapi import HTTPException
from httpx import AsyncClient

from auth import AuthService, LoginThrottle, MAX_LOGIN_ATTEMPTS
from models import AuthAssurance
from tests.conftest import get_auth_headers, PASSWORD


@pytest.mark.asyncio
async def test_register(client: AsyncClient):
    resp = await client.post(
        "/api/v1/auth/register",
        json={"email": "new@grc.test", "password": "SecurePass123!", "display_name": "New User"},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["access_token"]
    assert data["refresh_token"]
    assert data["user"]["email"] == "new@grc.test"
    assert data["user"]["aal"] == "aal1"
    assert data["user"]["mfa_enabled"] is False


@pytest.mark.asyncio
async def test_register_duplicate_is_conflict(client: AsyncClient, outsider):
    resp = await client.post(
        "/api/v1/auth/register",
        json={"email": outsider.email, "password": "SecurePass123!"},
    )
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_register_weak_password(client: AsyncClient):
    resp = await client.post(
        "/api/v1/auth/register",
        json={"email": "weak@grc.test", "password": "short"},
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "GRC-SYS-004"


@pytest.mark.asyncio
async def test_login(client: AsyncClient, outsider):
    resp = await client.post("/api/v1/auth/login", json={"email": outsider.email, "password": PASSWORD})
    assert resp.status_code == 200
    data = resp.json()
    assert data["user"]["aal"] == "aal1"
    assert AuthService.verify_token(data["access_token"])["aal"] == "aal1"


@pytest.mark.asyncio
async def test_login_wrong_password(client: AsyncClient, outsider):
    resp = await client.post("/api/v1/auth/login", json={"email": outsider.email, "password": "WrongPassword1!"})
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid credentials"


@pytest.mark.asyncio
async def test_login_lockout_after_repeated_failures(client: AsyncClient, outsider):
    for _ in range(5):
        await client.post("/api/v1/auth/login", json={"email": outsider.email, "password": "WrongPassword1!"})
    resp = await client.post("/api/v1/auth/login", json={"email": outsider.email, "password": PASSWORD})
    assert resp.status_code == 429


@pytest.mark.asyncio
async def test_me(client: AsyncClient, outsider):
    resp = await client.get("/api/v1/auth/me", headers=get_auth_headers(outsider))
    assert resp.status_code == 200
    data = resp.json()
    assert data["email"] == outsider.email
    assert data["aal"] == "aal1"


@pytest.mark.asyncio
async def test_me_unauthenticated(client: AsyncClient):
    resp = await client.get("/api/v1/auth/me")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_refresh_keeps_assurance_level(client: AsyncClient, outsider):
    token_data = AuthService.token_claims(outsider)
    token_data["aal"] = "aal2"
    refresh = AuthService.create_refresh_token(token_data)
    resp = await client.post("/api/v1/auth/refresh", json={"refresh_token": refresh})
    assert resp.status_code == 200
    assert AuthService.verify_token(resp.json()["access_token"])["aal"] == "aal2"


@pytest.mark.asyncio
async def test_refresh_rejects_access_token(client: AsyncClient, outsider):
    access = AuthService.create_access_token(AuthService.token_claims(outsider))
    resp = await client.post("/api/v1/auth/refresh", json={"refresh_token": access})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_logout_revokes_token(client: AsyncClient, outsider):
    headers = get_auth_headers(outsider)
    resp = await client.post("/api/v1/auth/logout", headers=headers)
    assert resp.status_code == 200

    resp = await client.get("/api/v1/auth/me", headers=headers)
    assert resp.status_code == 401
    assert "revoked" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_change_password(client: AsyncClient, outsider):
    headers = get_auth_headers(outsider)
    resp = await client.post(
        "/api/v1/auth/change-password",
        json={"current_password": PASSWORD, "new_password": "AnotherPass456!"},
        headers=headers,
    )
    assert resp.status_code == 200

    resp = await client.post("/api/v1/auth/login", json={"email": outsider.email, "password": "AnotherPass456!"})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_change_password_wrong_current(client: AsyncClient, outsider):
    resp = await client.post(
        "/api/v1/auth/change-password",
        json={"current_password": "NotMyPassword1!", "new_password": "AnotherPass456!"},
        headers=get_auth_headers(outsider),
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_mfa_enroll_and_verify_issues_aal2(client: AsyncClient, outsider):
    headers = get_auth_headers(outsider)
    resp = await client.post("/api/v1/auth/mfa/enroll", headers=headers)
    assert resp.status_code == 200
    enrolled = resp.json()
    assert enrolled["provisioning_uri"].startswith("otpauth://totp/")

    code = pyotp.TOTP(enrolled["secret"]).now()
    resp = await client.post("/api/v1/auth/mfa/verify", json={"code": code}, headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["user"]["aal"] == "aal2"
    assert data["user"]["mfa_enabled"] is True
    assert AuthService.verify_token(data["access_token"])["aal"] == "aal2"

    me = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"})
    assert me.json()["aal"] == "aal2"


@pytest.mark.asyncio
async def test_mfa_verify_wrong_code(client: AsyncClient, outsider):
    headers = get_auth_headers(outsider)
    secret = (await client.post("/api/v1/auth/mfa/enroll", headers=headers)).json()["secret"]
    wrong = str((int(pyotp.TOTP(secret).now()) + 500000) % 1000000).zfill(6)
    resp = await client.post("/api/v1/auth/mfa/verify", json={"code": wrong}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "GRC-AUTH-005"


@pytest.mark.asyncio
async def test_mfa_reenroll_needs_aal2(client: AsyncClient, outsider):
    aal1 = get_auth_headers(outsider)
    secret = (await client.post("/api/v1/auth/mfa/enroll", headers=aal1)).json()["secret"]
    resp = await client.post("/api/v1/auth/mfa/verify", json={"code": pyotp.TOTP(secret).now()}, headers=aal1)
    assert resp.json()["user"]["mfa_enabled"] is True

    # A password-only session cannot swap the active secret
    resp = await client.post("/api/v1/auth/mfa/enroll", headers=get_auth_headers(outsider))
    assert resp.status_code == 412
    assert resp.json()["code"] == "GRC-AUTH-006"
    resp = await client.post("/api/v1/auth/mfa/verify", json={"code": pyotp.TOTP(secret).now()}, headers=aal1)
    assert resp.status_code == 200

    resp = await client.post("/api/v1/auth/mfa/enroll", headers=get_auth_headers(outsider, aal=AuthAssurance.AAL2))
    assert resp.status_code == 200
    assert resp.json()["secret"] != secret


@pytest.mark.asyncio
async def test_mfa_verify_locks_after_repeated_failures(client: AsyncClient, outsider):
    headers = get_auth_headers(outsider)
    secret = (await client.post("/api/v1/auth/mfa/enroll", headers=headers)).json()["secret"]
    wrong = str((int(pyotp.TOTP(secret).now()) + 500000) % 1000000).zfill(6)
    for _ in range(MAX_LOGIN_ATTEMPTS):
        resp = await client.post("/api/v1/auth/mfa/verify", json={"code": wrong}, headers=headers)
        assert resp.status_code == 400

    # Even the right code is refused once locked
    resp = await client.post("/api/v1/auth/mfa/verify", json={"code": pyotp.TOTP(secret).now()}, headers=headers)
    assert resp.status_code == 429

@pytest.mark.asyncio
async def test_mfa_verify_without_enrollment(client: AsyncClient, outsider):
    resp = await client.post("/api/v1/auth/mfa/verify", json={"code": "123456"}, headers=get_auth_headers(outsider))
    assert resp.status_code == 400


def test_verify_totp():
    secret = AuthService.generate_mfa_secret()
    assert AuthService.verify_totp(secret, pyotp.TOTP(secret).now())
    assert not AuthService.verify_totp(secret, "")
    assert not AuthService.verify_totp("", "123456")


def test_password_hashing():
    hashed = AuthService.hash_password(PASSWORD)
    assert AuthService.verify_password(PASSWORD, hashed)
    assert not AuthService.verify_password("wrong", hashed)


def test_login_throttle_is_per_email():
    throttle = LoginThrottle(max_attempts=2)
    throttle.fail("a@grc.test")
    throttle.check("a@grc.test")
    throttle.fail("a@grc.test")
    with pytest.raises(HTTPException) as exc:
        throttle.check("a@grc.test")
    assert exc.value.status_code == 429

    throttle.check("b@grc.test")
    throttle.clear("a@grc.test")
    throttle.check("a@grc.test")
