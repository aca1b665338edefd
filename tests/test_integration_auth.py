"""Integration tests for the authentication flow.

Walks the full lifecycle over HTTP:
- Registration and login
- The 2FA gate on protected endpoints
- Authenticator enrollment and code verification
- Access renewal after expiry
"""

import pytest

from blubbai.service.token_codec import ACCESS_TTL_SECONDS, REFRESH_TTL_SECONDS

REGISTRATION = {
    "username": "alice",
    "email": "a@x.io",
    "password": "pw",
    "phone": {"country": "DE", "number": "1608735841"},
}


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def registered(client):
    response = client.post("/api/v1/auth/noa/register", json=REGISTRATION)
    assert response.status_code == 201
    return response.json()["token"]


@pytest.fixture
def login_pair(client, registered):
    response = client.post(
        "/api/v1/auth/noa/login", json={"username": "alice", "password": "pw"}
    )
    assert response.status_code == 200
    return response.json()


class TestRegistration:
    def test_register_returns_unverified_access_token(self, client, runtime):
        response = client.post("/api/v1/auth/noa/register", json=REGISTRATION)
        assert response.status_code == 201
        claims = runtime.codec.decode(response.json()["token"])
        assert claims["sub"] == "alice"
        assert claims["2fa_completed"] is False
        assert claims["secretMethod"] is None
        assert claims["tokenType"] == "access"

    def test_duplicate_username(self, client, registered):
        response = client.post(
            "/api/v1/auth/noa/register", json={**REGISTRATION, "email": "b@x.io"}
        )
        assert response.status_code == 409
        assert response.json()["error_code"] == 1003

    def test_bad_email(self, client, validator):
        validator.email_ok = False
        response = client.post("/api/v1/auth/noa/register", json=REGISTRATION)
        assert response.status_code == 400
        assert response.json() == {"error_code": 1002, "message": "Invalid E-mail address."}

    def test_bad_phone(self, client, validator):
        validator.phone_ok = False
        response = client.post("/api/v1/auth/noa/register", json=REGISTRATION)
        assert response.status_code == 400
        assert response.json()["error_code"] == 1004

    def test_missing_fields_are_400(self, client):
        response = client.post("/api/v1/auth/noa/register", json={"username": "alice"})
        assert response.status_code == 400
        assert response.json()["error_code"] == 400


class TestLogin:
    def test_login_returns_token_pair(self, client, runtime, login_pair):
        access = runtime.codec.decode(login_pair["access_token"])
        refresh = runtime.codec.decode(login_pair["refresh_token"])
        assert access["2fa_completed"] is False
        assert refresh["tokenType"] == "refresh"
        assert refresh["exp"] - access["iat"] == REFRESH_TTL_SECONDS
        assert "refresh_expires_at" in login_pair

    def test_wrong_password(self, client, registered):
        response = client.post(
            "/api/v1/auth/noa/login", json={"username": "alice", "password": "nope"}
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == 4002

    def test_unknown_user(self, client):
        response = client.post(
            "/api/v1/auth/noa/login", json={"username": "ghost", "password": "pw"}
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == 1001


class TestValidateToken:
    def test_valid_and_invalid(self, client, registered):
        assert client.post("/api/v1/auth/noa/validateToken", json={"token": registered}).json() is True
        assert client.post("/api/v1/auth/noa/validateToken", json={"token": "x.y.z"}).json() is False

    def test_expired_token_is_invalid(self, client, clock, registered):
        clock.advance(ACCESS_TTL_SECONDS)
        assert client.post("/api/v1/auth/noa/validateToken", json={"token": registered}).json() is False


class TestFullFlow:
    """The register, login, enroll, verify and renew lifecycle end to end."""

    def test_lifecycle(self, client, runtime, clock, login_pair):
        access = login_pair["access_token"]

        # protected endpoint before 2FA
        response = client.get("/api/v1/user", headers=_bearer(access))
        assert response.status_code == 403
        assert response.json()["error_code"] == 4005

        # authenticator enrollment
        response = client.get(
            "/api/v1/auth/no2fa/2fa",
            params={"method": "AUTHENTICATOR"},
            headers=_bearer(access),
        )
        assert response.status_code == 200
        uri = response.json()
        assert uri.startswith("otpauth://totp/alice@BlubbAI?secret=")
        assert "&issuer=BlubbAI" in uri

        # code verification
        secret = runtime.store.find_by_username("alice").totp_secret
        response = client.post(
            "/api/v1/auth/no2fa/2fa",
            params={"code": runtime.totp.current(secret)},
            headers=_bearer(access),
        )
        assert response.status_code == 200
        pair = response.json()
        claims = runtime.codec.decode(pair["access_token"])
        assert claims["2fa_completed"] is True
        assert claims["secretMethod"] == "AUTHENTICATOR"

        # protected endpoint after 2FA
        response = client.get("/api/v1/user", headers=_bearer(pair["access_token"]))
        assert response.status_code == 200
        assert response.json()["username"] == "alice"

        # renew after the access token expired
        clock.advance(ACCESS_TTL_SECONDS + 60)
        expired = client.get("/api/v1/user", headers=_bearer(pair["access_token"]))
        assert expired.status_code == 401
        assert expired.json()["error_code"] == 4004

        response = client.post(
            "/api/v1/auth/noa/renewToken",
            json={"token": pair["refresh_token"]},
            headers=_bearer(pair["access_token"]),
        )
        assert response.status_code == 200
        renewed = response.json()["token"]
        assert runtime.codec.is_valid(renewed)
        assert runtime.codec.decode(renewed)["2fa_completed"] is True
        assert client.get("/api/v1/user", headers=_bearer(renewed)).status_code == 200

    def test_second_authenticator_request_is_empty(self, client, login_pair):
        headers = _bearer(login_pair["access_token"])
        client.get("/api/v1/auth/no2fa/2fa", params={"method": "AUTHENTICATOR"}, headers=headers)
        response = client.get(
            "/api/v1/auth/no2fa/2fa", params={"method": "AUTHENTICATOR"}, headers=headers
        )
        assert response.status_code == 200
        assert response.content == b""

    def test_email_method_dispatches_code(self, client, mail, login_pair):
        response = client.get(
            "/api/v1/auth/no2fa/2fa",
            params={"method": "EMAIL"},
            headers=_bearer(login_pair["access_token"]),
        )
        assert response.status_code == 200
        assert response.content == b""
        assert len(mail.codes) == 1

    @pytest.mark.parametrize("method", [None, "NONE", "CARRIER_PIGEON"])
    def test_missing_or_unknown_method(self, client, login_pair, method):
        params = {"method": method} if method else {}
        response = client.get(
            "/api/v1/auth/no2fa/2fa", params=params, headers=_bearer(login_pair["access_token"])
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == 4001

    def test_verify_without_method(self, client, login_pair):
        response = client.post(
            "/api/v1/auth/no2fa/2fa",
            params={"code": "123456"},
            headers=_bearer(login_pair["access_token"]),
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == 4001

    def test_verify_wrong_code(self, client, runtime, login_pair):
        headers = _bearer(login_pair["access_token"])
        client.get("/api/v1/auth/no2fa/2fa", params={"method": "AUTHENTICATOR"}, headers=headers)
        secret = runtime.store.find_by_username("alice").totp_secret
        wrong = "000000" if runtime.totp.current(secret) != "000000" else "111111"
        response = client.post("/api/v1/auth/no2fa/2fa", params={"code": wrong}, headers=headers)
        assert response.status_code == 401
        assert response.json()["error_code"] == 4003

    def test_two_factor_for_deleted_account(self, client, runtime, login_pair):
        runtime.store.delete(runtime.store.find_by_username("alice"))
        response = client.get(
            "/api/v1/auth/no2fa/2fa",
            params={"method": "AUTHENTICATOR"},
            headers=_bearer(login_pair["access_token"]),
        )
        assert response.status_code == 404
        assert response.json()["error_code"] == 1001

    def test_two_factor_endpoint_needs_token(self, client):
        response = client.get("/api/v1/auth/no2fa/2fa", params={"method": "AUTHENTICATOR"})
        assert response.status_code == 401
        assert response.json()["error_code"] == 401


class TestRenew:
    def test_renew_without_header(self, client, login_pair):
        response = client.post(
            "/api/v1/auth/noa/renewToken", json={"token": login_pair["refresh_token"]}
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == 4004

    def test_renew_with_foreign_refresh(self, client, login_pair, validator):
        client.post(
            "/api/v1/auth/noa/register",
            json={**REGISTRATION, "username": "bob", "email": "b@x.io", "phone": None},
        )
        bob = client.post("/api/v1/auth/noa/login", json={"username": "bob", "password": "pw"}).json()
        response = client.post(
            "/api/v1/auth/noa/renewToken",
            json={"token": bob["refresh_token"]},
            headers=_bearer(login_pair["access_token"]),
        )
        assert response.status_code == 401

    def test_renew_with_expired_refresh(self, client, clock, login_pair):
        clock.advance(REFRESH_TTL_SECONDS + 1)
        response = client.post(
            "/api/v1/auth/noa/renewToken",
            json={"token": login_pair["refresh_token"]},
            headers=_bearer(login_pair["access_token"]),
        )
        assert response.status_code == 401


class TestMailVerification:
    def test_link_from_registration_verifies(self, client, runtime, mail, registered):
        _, _, link = mail.verifications[0]
        path_and_query = link.replace("http://testserver", "")
        response = client.patch(path_and_query)
        assert response.status_code == 200
        assert runtime.store.find_by_username("alice").mail_verified is True

    def test_raw_uid_verifies(self, client, runtime, registered):
        uid = runtime.store.find_by_username("alice").uid
        response = client.patch("/api/v1/auth/noa/2fa/verifyMail", params={"uuid": uid})
        assert response.status_code == 200

    def test_bad_and_unknown_values(self, client):
        bad = client.patch("/api/v1/auth/noa/2fa/verifyMail", params={"uuid": "nope"})
        assert bad.status_code == 400
        missing = client.patch(
            "/api/v1/auth/noa/2fa/verifyMail",
            params={"uuid": "00000000-0000-0000-0000-000000000001"},
        )
        assert missing.status_code == 404
        assert missing.json()["error_code"] == 1001
