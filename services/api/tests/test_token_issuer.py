import pytest
from sqlalchemy import func, select

from chatauth_api.core.errors import InvalidOrExpiredRefreshToken, Unauthenticated
from chatauth_api.core.security import hash_token
from chatauth_api.models.auth import AccessToken, RefreshToken
from chatauth_api.models.enums import UserStatus
from chatauth_api.services.credentials import create_user, hash_password
from chatauth_api.services import tokens as tokens_module
from chatauth_api.services.tokens import (
    authenticate_access_token,
    issue_access_token,
    issue_refresh_token,
    issue_token_pair,
    revoke_all_tokens,
    revoke_device_tokens,
    rotate_refresh_token,
)


def _make_user(db, clock, email="token-user@example.com"):
    user = create_user(
        db,
        email=email,
        display_name="token user",
        password_hash=hash_password("Passw0rd!"),
        now=clock.now(),
        email_verified=True,
    )
    db.commit()
    return user


def test_token_plaintext_is_high_entropy_and_stored_hashed(db, clock, rng):
    user = _make_user(db, clock)
    pair = issue_token_pair(db, user_id=user.id, device_name="phone", clock=clock, rng=rng)
    db.commit()

    # 32 字节 → 43 个字符，48 字节 → 64 个字符（URL 安全 Base64，无填充）。
    assert len(pair.access_token) == 43
    assert len(pair.refresh_token) == 64
    stored = db.execute(select(AccessToken.token_hash)).scalar_one()
    assert stored == hash_token(pair.access_token)
    assert stored != pair.access_token
    assert db.execute(select(RefreshToken.token_hash)).scalar_one() == hash_token(pair.refresh_token)


def test_second_login_on_same_device_revokes_first_access_token(db, clock, rng):
    user = _make_user(db, clock)
    first = issue_token_pair(db, user_id=user.id, device_name="A", clock=clock, rng=rng)
    db.commit()
    second = issue_token_pair(db, user_id=user.id, device_name="A", clock=clock, rng=rng)
    db.commit()

    with pytest.raises(Unauthenticated):
        authenticate_access_token(db, first.access_token, clock=clock)
    session = authenticate_access_token(db, second.access_token, clock=clock)
    assert session.user.id == user.id
    assert session.device_name == "A"
    assert db.execute(select(func.count()).select_from(AccessToken)).scalar_one() == 1


def test_devices_keep_independent_sessions(db, clock, rng):
    user = _make_user(db, clock)
    phone = issue_token_pair(db, user_id=user.id, device_name="phone", clock=clock, rng=rng)
    laptop = issue_token_pair(db, user_id=user.id, device_name="laptop", clock=clock, rng=rng)
    db.commit()

    assert authenticate_access_token(db, phone.access_token, clock=clock).device_name == "phone"
    assert authenticate_access_token(db, laptop.access_token, clock=clock).device_name == "laptop"


def test_new_refresh_token_invalidates_previous_for_device(db, clock, rng):
    user = _make_user(db, clock)
    old = issue_refresh_token(db, user_id=user.id, device_name="A", clock=clock, rng=rng)
    issue_refresh_token(db, user_id=user.id, device_name="A", clock=clock, rng=rng)
    db.commit()

    with pytest.raises(InvalidOrExpiredRefreshToken):
        rotate_refresh_token(db, refresh_token=old.plaintext, device_name="A", clock=clock, rng=rng)


def test_rotation_is_single_use(db, clock, rng):
    user = _make_user(db, clock)
    pair = issue_token_pair(db, user_id=user.id, device_name="A", clock=clock, rng=rng)
    db.commit()

    rotated = rotate_refresh_token(db, refresh_token=pair.refresh_token, device_name="A", clock=clock, rng=rng)
    db.commit()

    assert rotated.refresh_token != pair.refresh_token
    assert rotated.access_token != pair.access_token
    with pytest.raises(InvalidOrExpiredRefreshToken):
        rotate_refresh_token(db, refresh_token=pair.refresh_token, device_name="A", clock=clock, rng=rng)
    with pytest.raises(Unauthenticated):
        authenticate_access_token(db, pair.access_token, clock=clock)
    authenticate_access_token(db, rotated.access_token, clock=clock)


def test_rotation_rejects_device_mismatch(db, clock, rng):
    user = _make_user(db, clock)
    pair = issue_token_pair(db, user_id=user.id, device_name="A", clock=clock, rng=rng)
    db.commit()

    with pytest.raises(InvalidOrExpiredRefreshToken):
        rotate_refresh_token(db, refresh_token=pair.refresh_token, device_name="B", clock=clock, rng=rng)
    # 设备不匹配不会消耗刷新令牌。
    rotate_refresh_token(db, refresh_token=pair.refresh_token, device_name="A", clock=clock, rng=rng)


def test_rotation_rejects_expired_refresh_token(db, clock, rng):
    user = _make_user(db, clock)
    pair = issue_token_pair(db, user_id=user.id, device_name="A", clock=clock, rng=rng)
    db.commit()

    clock.advance(days=7, seconds=1)
    with pytest.raises(InvalidOrExpiredRefreshToken):
        rotate_refresh_token(db, refresh_token=pair.refresh_token, device_name="A", clock=clock, rng=rng)


def test_access_token_expiry_is_not_extended_by_use(db, clock, rng):
    user = _make_user(db, clock)
    issued = issue_access_token(db, user_id=user.id, device_name="A", clock=clock, rng=rng)
    db.commit()

    clock.advance(minutes=10)
    session = authenticate_access_token(db, issued.plaintext, clock=clock)
    assert session.expires_at == issued.expires_at

    clock.advance(minutes=5)
    with pytest.raises(Unauthenticated):
        authenticate_access_token(db, issued.plaintext, clock=clock)


def test_disabled_user_cannot_authenticate(db, clock, rng):
    user = _make_user(db, clock)
    issued = issue_access_token(db, user_id=user.id, device_name="A", clock=clock, rng=rng)
    user.status = UserStatus.DISABLED
    db.commit()

    with pytest.raises(Unauthenticated):
        authenticate_access_token(db, issued.plaintext, clock=clock)


def test_revoke_device_and_revoke_all(db, clock, rng):
    user = _make_user(db, clock)
    phone = issue_token_pair(db, user_id=user.id, device_name="phone", clock=clock, rng=rng)
    laptop = issue_token_pair(db, user_id=user.id, device_name="laptop", clock=clock, rng=rng)
    db.commit()

    assert revoke_device_tokens(db, user_id=user.id, device_name="phone") == 2
    db.commit()
    with pytest.raises(Unauthenticated):
        authenticate_access_token(db, phone.access_token, clock=clock)
    authenticate_access_token(db, laptop.access_token, clock=clock)

    assert revoke_all_tokens(db, user_id=user.id) == 2
    db.commit()
    with pytest.raises(Unauthenticated):
        authenticate_access_token(db, laptop.access_token, clock=clock)
    with pytest.raises(InvalidOrExpiredRefreshToken):
        rotate_refresh_token(db, refresh_token=laptop.refresh_token, device_name="laptop", clock=clock, rng=rng)


def test_disabled_user_cannot_rotate_refresh_token(db, clock, rng):
    user = _make_user(db, clock)
    pair = issue_token_pair(db, user_id=user.id, device_name="A", clock=clock, rng=rng)
    user.status = UserStatus.DISABLED
    db.commit()

    with pytest.raises(InvalidOrExpiredRefreshToken):
        rotate_refresh_token(db, refresh_token=pair.refresh_token, device_name="A", clock=clock, rng=rng)


def test_rotation_loses_when_token_changed_after_lookup(db, clock, rng, monkeypatch):
    user = _make_user(db, clock)
    pair = issue_token_pair(db, user_id=user.id, device_name="A", clock=clock, rng=rng)
    db.commit()
    stale_row = tokens_module._find_refresh_token(db, hash_token(pair.refresh_token))

    winner = rotate_refresh_token(db, refresh_token=pair.refresh_token, device_name="A", clock=clock, rng=rng)
    db.commit()

    # 两个请求都已通过查找，后写入者只能命中条件更新的 0 行。
    monkeypatch.setattr(tokens_module, "_find_refresh_token", lambda _db, _hash: stale_row)
    with pytest.raises(InvalidOrExpiredRefreshToken):
        rotate_refresh_token(db, refresh_token=pair.refresh_token, device_name="A", clock=clock, rng=rng)
    db.rollback()

    monkeypatch.undo()
    stored = db.execute(select(RefreshToken.token_hash)).scalar_one()
    assert stored == hash_token(winner.refresh_token)
    authenticate_access_token(db, winner.access_token, clock=clock)


def test_concurrent_rotation_has_exactly_one_winner(serialized_session_factory, race, clock, rng):
    setup = serialized_session_factory()
    user = _make_user(setup, clock)
    pair = issue_token_pair(setup, user_id=user.id, device_name="A", clock=clock, rng=rng)
    setup.commit()
    setup.close()

    def _rotate(session) -> str:
        try:
            rotate_refresh_token(session, refresh_token=pair.refresh_token, device_name="A", clock=clock, rng=rng)
        except InvalidOrExpiredRefreshToken:
            session.rollback()
            return "rejected"
        session.commit()
        return "ok"

    assert race(_rotate) == ["ok", "rejected"]
