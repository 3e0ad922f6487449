from uuid import UUID, uuid4

import jwt

from chatauth_api.core.config import get_settings
from chatauth_api.models.group import GroupMembership
from chatauth_api.services.credentials import create_user, hash_password

PWD = "Str0ng!Passw0rd"
NEW_PWD = "N3w!Passw0rd"


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _register(client, rng, *, email="alice@example.com", code=482913, device_name="alice-phone") -> dict:
    rng.codes = [code]
    resp = client.post(
        "/api/auth/register",
        json={
            "name": "Alice",
            "email": email,
            "password": PWD,
            "password_confirmation": PWD,
            "device_name": device_name,
        },
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _signup(client, rng, *, email="alice@example.com", device_name="alice-phone") -> dict:
    registered = _register(client, rng, email=email, device_name=device_name)
    resp = client.post(
        "/api/auth/email/verify",
        json={"verification_id": registered["verification_id"], "otp": "482913"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _login(client, *, email="alice@example.com", password=PWD, device_name="alice-phone"):
    return client.post(
        "/api/auth/login",
        json={"email": email, "password": password, "device_name": device_name},
    )


def _seed_user(session_factory, clock, *, email: str, verified: bool):
    session = session_factory()
    try:
        user = create_user(
            session,
            email=email,
            display_name=email.split("@")[0],
            password_hash=hash_password(PWD),
            now=clock.now(),
            email_verified=verified,
        )
        session.commit()
        return user.id
    finally:
        session.close()


def test_health_live_and_request_id(api_client):
    resp = api_client.get("/api/health/live")

    assert resp.status_code == 200
    body = resp.json()
    assert body["data"]["status"] == "ok"
    assert resp.headers["X-Request-Id"] == body["request_id"]
    assert resp.headers["Cache-Control"] == "no-store"


def test_unknown_route_uses_error_envelope(api_client):
    resp = api_client.get("/api/nope")

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"


def test_register_then_verify_signs_user_in(api_client, rng):
    registered = _register(api_client, rng, email="Alice@Example.com")
    assert registered["email"] == "alice@example.com"

    resp = api_client.post(
        "/api/auth/email/verify",
        json={"verification_id": registered["verification_id"], "otp": "482913"},
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["token_type"] == "bearer"
    assert data["token"] == data["access_token"]
    assert data["expires_in"] == 900
    assert data["user"]["email"] == "alice@example.com"
    assert data["user"]["email_verified"] is True

    me = api_client.get("/api/auth/me", headers=_auth_header(data["access_token"]))
    assert me.status_code == 200
    assert me.json()["data"]["device_name"] == "alice-phone"

    replay = api_client.post(
        "/api/auth/email/verify",
        json={"verification_id": registered["verification_id"], "otp": "482913"},
    )
    assert replay.status_code == 422
    assert replay.json()["error"]["code"] == "INVALID_OR_EXPIRED_OTP"


def test_verify_with_wrong_code_keeps_registration_open(api_client, rng):
    registered = _register(api_client, rng)

    wrong = api_client.post(
        "/api/auth/email/verify",
        json={"verification_id": registered["verification_id"], "otp": "000000"},
    )
    assert wrong.status_code == 422
    assert wrong.json()["error"]["code"] == "INVALID_OR_EXPIRED_OTP"

    login = _login(api_client)
    assert login.status_code == 401

    ok = api_client.post(
        "/api/auth/email/verify",
        json={"verification_id": registered["verification_id"], "otp": "482913"},
    )
    assert ok.status_code == 200


def test_registration_code_only_unlocks_its_own_application(api_client, rng, clock):
    first = _register(api_client, rng, code=111111)
    second = _register(api_client, rng, code=222222)

    crossed = api_client.post(
        "/api/auth/email/verify",
        json={"verification_id": first["verification_id"], "otp": "222222"},
    )
    assert crossed.status_code == 422

    ok = api_client.post(
        "/api/auth/email/verify",
        json={"verification_id": second["verification_id"], "otp": "222222"},
    )
    assert ok.status_code == 200

    # 邮箱已完成注册后，同邮箱的其余申请一并作废。
    stale = api_client.post(
        "/api/auth/email/verify",
        json={"verification_id": first["verification_id"], "otp": "111111"},
    )
    assert stale.status_code == 422


def test_register_rejects_existing_email(api_client, rng):
    _signup(api_client, rng)

    resp = api_client.post(
        "/api/auth/register",
        json={"name": "Again", "email": "alice@example.com", "password": PWD, "password_confirmation": PWD},
    )
    assert resp.status_code == 422
    error = resp.json()["error"]
    assert error["code"] == "VALIDATION_FAILED"
    assert error["details"]["errors"][0]["field"] == "email"


def test_register_validates_password_policy_and_confirmation(api_client):
    weak = api_client.post(
        "/api/auth/register",
        json={"name": "Bob", "email": "bob@example.com", "password": "password", "password_confirmation": "password"},
    )
    assert weak.status_code == 422
    assert weak.json()["error"]["code"] == "VALIDATION_ERROR"

    mismatch = api_client.post(
        "/api/auth/register",
        json={"name": "Bob", "email": "bob@example.com", "password": PWD, "password_confirmation": PWD + "x"},
    )
    assert mismatch.status_code == 422
    assert mismatch.json()["error"]["code"] == "VALIDATION_ERROR"


def test_resend_within_cooldown_is_rate_limited(api_client, rng, clock):
    registered = _register(api_client, rng)

    clock.advance(seconds=10)
    limited = api_client.post("/api/auth/email/resend-otp", json={"verification_id": registered["verification_id"]})
    assert limited.status_code == 429
    assert limited.headers["Retry-After"] == "20"
    assert limited.json()["error"]["details"]["retry_after"] == 20

    clock.advance(seconds=21)
    rng.codes = [654321]
    resent = api_client.post("/api/auth/email/resend-otp", json={"verification_id": registered["verification_id"]})
    assert resent.status_code == 200

    old = api_client.post(
        "/api/auth/email/verify",
        json={"verification_id": registered["verification_id"], "otp": "482913"},
    )
    assert old.status_code == 422
    new = api_client.post(
        "/api/auth/email/verify",
        json={"verification_id": registered["verification_id"], "otp": "654321"},
    )
    assert new.status_code == 200


def test_resend_for_unknown_registration_is_not_found(api_client):
    resp = api_client.post("/api/auth/email/resend-otp", json={"verification_id": str(uuid4())})

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"


def test_login_failures_share_one_error(api_client, rng):
    _signup(api_client, rng)

    wrong_password = _login(api_client, password="Wr0ng!Password")
    unknown_email = _login(api_client, email="nobody@example.com")

    assert wrong_password.status_code == 401
    assert unknown_email.status_code == 401
    assert wrong_password.json()["error"]["code"] == "INVALID_CREDENTIALS"
    assert wrong_password.json()["error"]["message"] == unknown_email.json()["error"]["message"]


def test_login_again_on_same_device_revokes_previous_token(api_client, rng):
    _signup(api_client, rng)

    first = _login(api_client, device_name="A").json()["data"]
    second = _login(api_client, device_name="A").json()["data"]
    other = _login(api_client, device_name="B").json()["data"]

    stale = api_client.get("/api/auth/me", headers=_auth_header(first["access_token"]))
    assert stale.status_code == 401
    assert stale.json()["error"]["code"] == "UNAUTHENTICATED"
    assert api_client.get("/api/auth/me", headers=_auth_header(second["access_token"])).status_code == 200
    assert api_client.get("/api/auth/me", headers=_auth_header(other["access_token"])).status_code == 200


def test_me_requires_bearer_token(api_client):
    assert api_client.get("/api/auth/me").status_code == 401
    assert api_client.get("/api/auth/me", headers=_auth_header("not-a-real-token")).status_code == 401


def test_refresh_rotates_and_rejects_replay(api_client, rng):
    _signup(api_client, rng)
    pair = _login(api_client, device_name="A").json()["data"]

    rotated = api_client.post("/api/auth/refresh", json={"refresh_token": pair["refresh_token"], "device_name": "A"})
    assert rotated.status_code == 200
    new_pair = rotated.json()["data"]
    assert new_pair["refresh_token"] != pair["refresh_token"]
    assert new_pair["user"] is None

    replay = api_client.post("/api/auth/refresh", json={"refresh_token": pair["refresh_token"], "device_name": "A"})
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "INVALID_OR_EXPIRED_REFRESH_TOKEN"
    assert api_client.get("/api/auth/me", headers=_auth_header(pair["access_token"])).status_code == 401
    assert api_client.get("/api/auth/me", headers=_auth_header(new_pair["access_token"])).status_code == 200


def test_logout_revokes_only_current_device(api_client, rng):
    _signup(api_client, rng)
    phone = _login(api_client, device_name="phone").json()["data"]
    laptop = _login(api_client, device_name="laptop").json()["data"]

    resp = api_client.post("/api/auth/logout", headers=_auth_header(phone["access_token"]))
    assert resp.status_code == 200
    assert resp.json()["data"] == {"logged_out": True, "revoked": 2}

    assert api_client.get("/api/auth/me", headers=_auth_header(phone["access_token"])).status_code == 401
    assert api_client.get("/api/auth/me", headers=_auth_header(laptop["access_token"])).status_code == 200


def test_logout_all_revokes_every_device(api_client, rng):
    _signup(api_client, rng)
    phone = _login(api_client, device_name="phone").json()["data"]
    laptop = _login(api_client, device_name="laptop").json()["data"]

    resp = api_client.post("/api/auth/logout-all", headers=_auth_header(phone["access_token"]))
    assert resp.status_code == 200

    assert api_client.get("/api/auth/me", headers=_auth_header(laptop["access_token"])).status_code == 401
    refresh = api_client.post(
        "/api/auth/refresh", json={"refresh_token": laptop["refresh_token"], "device_name": "laptop"}
    )
    assert refresh.status_code == 401


def test_forgot_and_reset_password_revokes_all_sessions(api_client, rng, clock):
    _signup(api_client, rng)
    session = _login(api_client, device_name="A").json()["data"]

    rng.codes = [135790]
    forgot = api_client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
    assert forgot.status_code == 200
    assert forgot.json()["data"]["expires_at"] is not None

    reset = api_client.post(
        "/api/auth/reset-password",
        json={
            "email": "alice@example.com",
            "otp": "135790",
            "password": NEW_PWD,
            "password_confirmation": NEW_PWD,
        },
    )
    assert reset.status_code == 200, reset.text

    assert api_client.get("/api/auth/me", headers=_auth_header(session["access_token"])).status_code == 401
    assert _login(api_client, device_name="A").status_code == 401
    assert _login(api_client, password=NEW_PWD, device_name="A").status_code == 200

    reused = api_client.post(
        "/api/auth/reset-password",
        json={
            "email": "alice@example.com",
            "otp": "135790",
            "password": PWD,
            "password_confirmation": PWD,
        },
    )
    assert reused.status_code == 422
    assert reused.json()["error"]["code"] == "INVALID_OR_EXPIRED_OTP"


def test_forgot_password_cooldown(api_client, rng, clock):
    _signup(api_client, rng)
    assert api_client.post("/api/auth/forgot-password", json={"email": "alice@example.com"}).status_code == 200

    clock.advance(seconds=5)
    again = api_client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
    assert again.status_code == 429
    assert again.headers["Retry-After"] == "25"


def test_forgot_password_unknown_email(api_client, monkeypatch):
    revealed = api_client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert revealed.status_code == 404

    monkeypatch.setenv("CA_AUTH_REVEAL_UNKNOWN_EMAIL", "false")
    get_settings.cache_clear()

    hidden = api_client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert hidden.status_code == 200
    assert hidden.json()["data"]["expires_at"] is None

    reset = api_client.post(
        "/api/auth/reset-password",
        json={"email": "ghost@example.com", "otp": "123456", "password": PWD, "password_confirmation": PWD},
    )
    assert reset.status_code == 422
    assert reset.json()["error"]["code"] == "INVALID_OR_EXPIRED_OTP"


def test_login_is_throttled_per_client(api_client, monkeypatch):
    monkeypatch.setenv("CA_THROTTLE_LIMIT", "2")
    get_settings.cache_clear()

    statuses = [_login(api_client, email="nobody@example.com").status_code for _ in range(3)]
    assert statuses == [401, 401, 429]

    # 不同客户端地址各自计数。
    other = api_client.post(
        "/api/auth/login",
        json={"email": "nobody@example.com", "password": PWD, "device_name": "A"},
        headers={"X-Forwarded-For": "10.0.0.9"},
    )
    assert other.status_code == 401


def test_account_email_verification_for_signed_in_user(api_client, session_factory, clock, rng):
    _seed_user(session_factory, clock, email="carol@example.com", verified=False)
    token = _login(api_client, email="carol@example.com").json()["data"]["access_token"]
    headers = _auth_header(token)

    rng.codes = [246810]
    sent = api_client.post("/api/auth/email/verification-notification", headers=headers)
    assert sent.status_code == 200

    wrong = api_client.post("/api/auth/email/verify-account", json={"otp": "000001"}, headers=headers)
    assert wrong.status_code == 422

    ok = api_client.post("/api/auth/email/verify-account", json={"otp": "246810"}, headers=headers)
    assert ok.status_code == 200
    assert api_client.get("/api/auth/me", headers=headers).json()["data"]["user"]["email_verified"] is True

    again = api_client.post("/api/auth/email/verification-notification", headers=headers)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "ALREADY_VERIFIED"


def test_broadcasting_auth_grants_own_user_channel(api_client, rng):
    signed_in = _signup(api_client, rng)
    user_id = signed_in["user"]["id"]

    resp = api_client.post(
        "/api/broadcasting/auth",
        json={"channel_name": f"private-user.{user_id}", "socket_id": "1.2"},
        headers=_auth_header(signed_in["access_token"]),
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["channel"] == f"user.{user_id}"
    claims = jwt.decode(data["token"], "unit-test-broadcast-secret", algorithms=["HS256"], options={"verify_exp": False})
    assert claims["sub"] == user_id
    assert claims["socket_id"] == "1.2"


def test_broadcasting_auth_denies_foreign_channels(api_client, rng):
    signed_in = _signup(api_client, rng)
    headers = _auth_header(signed_in["access_token"])

    other_user = api_client.post("/api/broadcasting/auth", json={"channel_name": f"user.{uuid4()}"}, headers=headers)
    assert other_user.status_code == 403
    assert other_user.json()["error"]["code"] == "UNAUTHORIZED"

    group = api_client.post("/api/broadcasting/auth", json={"channel_name": f"group.{uuid4()}"}, headers=headers)
    assert group.status_code == 403

    anonymous = api_client.post("/api/broadcasting/auth", json={"channel_name": f"user.{uuid4()}"})
    assert anonymous.status_code == 401


def test_broadcasting_auth_grants_group_member(api_client, session_factory, rng):
    signed_in = _signup(api_client, rng)
    group_id = uuid4()
    session = session_factory()
    try:
        session.add(GroupMembership(id=uuid4(), group_id=group_id, user_id=UUID(signed_in["user"]["id"])))
        session.commit()
    finally:
        session.close()

    resp = api_client.post(
        "/api/broadcasting/auth",
        json={"channel_name": f"presence-group.{group_id}"},
        headers=_auth_header(signed_in["access_token"]),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["channel"] == f"group.{group_id}"
