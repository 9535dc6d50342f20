"""Unit tests for auth/tokens.py -- access tokens and refresh-token rotation.

Covers:
- Access token round trip, expiry, tampering, wrong type
- Rotation consumes the presented token and links it to its successor
- Replay of a rotated or revoked token revokes the whole family
- Single-use under concurrency: two threads, one winner, family revoked
- Malformed / unknown / wrong-secret refresh tokens
- Idempotent revoke (logout)
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.errors import AuthError, Err, Ok
from auth.store import PrincipalStore
from auth.token_store import TokenStore
from auth.tokens import TokenService, create_access_token, decode_access_token
from core.config import get_settings


@pytest.fixture
def service(token_store, principal_store) -> TokenService:
    return TokenService(token_store, principal_store, get_settings())


@pytest.fixture
def principal(principal_store, make_principal):
    return principal_store.get_by_id(make_principal(principal_store, "jdoe", "Member"))


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


class TestAccessTokens:
    def test_round_trip(self) -> None:
        key = get_settings().secret_key
        token, expires = create_access_token(7, "jdoe", key, 600)
        result = decode_access_token(token, key)
        assert isinstance(result, Ok)
        assert result.value.principal_id == 7
        assert result.value.display_identifier == "jdoe"
        assert result.value.expires_at == int(expires.timestamp())

    def test_expired_token(self) -> None:
        key = get_settings().secret_key
        token, _ = create_access_token(7, "jdoe", key, -10)
        result = decode_access_token(token, key)
        assert isinstance(result, Err)
        assert result.error is AuthError.TOKEN_EXPIRED

    def test_wrong_key_is_malformed(self) -> None:
        token, _ = create_access_token(7, "jdoe", "k" * 32, 600)
        result = decode_access_token(token, "z" * 32)
        assert isinstance(result, Err)
        assert result.error is AuthError.TOKEN_MALFORMED

    def test_tampered_token_is_malformed(self) -> None:
        key = get_settings().secret_key
        token, _ = create_access_token(7, "jdoe", key, 600)
        other, _ = create_access_token(8, "admin", key, 600)
        head, _payload, sig = token.split(".")
        tampered = f"{head}.{other.split('.')[1]}.{sig}"
        result = decode_access_token(tampered, key)
        assert isinstance(result, Err)
        assert result.error is AuthError.TOKEN_MALFORMED

    def test_token_without_access_type_is_rejected(self) -> None:
        key = get_settings().secret_key
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": "jdoe", "pid": 7, "typ": "refresh", "iat": now, "exp": now + timedelta(minutes=5)},
            key,
            algorithm="HS256",
        )
        result = decode_access_token(token, key)
        assert isinstance(result, Err)
        assert result.error is AuthError.TOKEN_MALFORMED

    def test_verify_access_uses_no_store(self, principal, principal_store, token_store) -> None:
        """Access verification is purely computational: it works with the stores closed."""
        service = TokenService(token_store, principal_store, get_settings())
        pair = service.issue(principal)
        token_store.close()
        principal_store.close()
        assert isinstance(service.verify_access(pair.access_token), Ok)


# ---------------------------------------------------------------------------
# Issue and rotation
# ---------------------------------------------------------------------------


class TestRotation:
    def test_issue_returns_pair_and_stores_hash_only(self, service, principal, token_store) -> None:
        pair = service.issue(principal)
        token_id, secret = pair.refresh_token.split(".")
        record = token_store.get(token_id)
        assert record is not None
        assert record.principal_id == principal.id
        assert secret not in record.secret_hash
        assert pair.refresh_expires_in == get_settings().refresh_token_ttl_seconds
        assert pair.access_expires_in == get_settings().access_token_ttl_seconds

    def test_remember_me_uses_longer_ttl_and_survives_rotation(self, service, principal) -> None:
        pair = service.issue(principal, remember=True)
        assert pair.refresh_expires_in == get_settings().refresh_token_remember_ttl_seconds
        rotated = service.refresh(pair.refresh_token)
        assert isinstance(rotated, Ok)
        assert rotated.value.refresh_expires_in == get_settings().refresh_token_remember_ttl_seconds

    def test_refresh_rotates(self, service, principal, token_store) -> None:
        pair = service.issue(principal)
        result = service.refresh(pair.refresh_token)
        assert isinstance(result, Ok)
        new_pair = result.value
        assert new_pair.refresh_token != pair.refresh_token
        old = token_store.get(pair.refresh_token.split(".")[0])
        new = token_store.get(new_pair.refresh_token.split(".")[0])
        assert old.rotated_to == new.token_id
        assert new.family_id == old.family_id
        assert not new.revoked

    def test_replay_of_rotated_token_revokes_family(self, service, principal, token_store) -> None:
        pair = service.issue(principal)
        second = service.refresh(pair.refresh_token).value

        replay = service.refresh(pair.refresh_token)
        assert isinstance(replay, Err)
        assert replay.error is AuthError.TOKEN_REVOKED
        assert replay.reuse_detected is True
        assert replay.detail["principal_id"] == principal.id

        family = token_store.family(replay.detail["family_id"])
        assert len(family) == 2
        assert all(r.revoked for r in family)

        # The legitimate holder's newer token is burned too.
        follow_up = service.refresh(second.refresh_token)
        assert isinstance(follow_up, Err)
        assert follow_up.error is AuthError.TOKEN_REVOKED

    def test_other_families_survive_reuse(self, service, principal) -> None:
        laptop = service.issue(principal)
        phone = service.issue(principal)
        service.refresh(laptop.refresh_token)
        service.refresh(laptop.refresh_token)  # replay burns the laptop family
        assert isinstance(service.refresh(phone.refresh_token), Ok)

    def test_lost_compare_and_swap_is_treated_as_reuse(self, service, principal, token_store, monkeypatch) -> None:
        pair = service.issue(principal)
        monkeypatch.setattr(token_store, "mark_rotated", lambda token_id, successor: False)
        result = service.refresh(pair.refresh_token)
        assert isinstance(result, Err)
        assert result.reuse_detected is True

    def test_mark_rotated_succeeds_once(self, service, principal, token_store) -> None:
        pair = service.issue(principal)
        token_id = pair.refresh_token.split(".")[0]
        _raw1, successor1 = service._new_refresh(principal.id, "fam", False)
        _raw2, successor2 = service._new_refresh(principal.id, "fam", False)
        assert token_store.mark_rotated(token_id, successor1) is True
        assert token_store.mark_rotated(token_id, successor2) is False
        assert token_store.get(successor2.token_id) is None

    def test_concurrent_refresh_has_single_winner(self, tmp_path, make_principal) -> None:
        """Two threads present the same token at once: exactly one rotation, family revoked."""
        db_url = f"sqlite:///{tmp_path / 'race.db'}"
        principals = PrincipalStore(db_url)
        principals.sync_registry()
        principals.seed_default_roles()
        tokens = TokenStore(db_url)
        service = TokenService(tokens, principals, get_settings())
        principal = principals.get_by_id(make_principal(principals, "racer", "Member"))
        pair = service.issue(principal)

        barrier = threading.Barrier(2)
        results: list = []
        lock = threading.Lock()

        def worker() -> None:
            barrier.wait()
            outcome = service.refresh(pair.refresh_token)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        try:
            assert len(results) == 2
            winners = [r for r in results if isinstance(r, Ok)]
            losers = [r for r in results if isinstance(r, Err)]
            assert len(winners) == 1
            assert len(losers) == 1
            assert losers[0].reuse_detected is True
            family = tokens.family(losers[0].detail["family_id"])
            assert len(family) == 2
            assert all(r.revoked for r in family)
        finally:
            tokens.close()
            principals.close()


# ---------------------------------------------------------------------------
# Refresh failure kinds
# ---------------------------------------------------------------------------


class TestRefreshFailures:
    @pytest.mark.parametrize("raw", ["", "garbage", "abc.def", "0" * 32 + ".short", "X" * 32 + "." + "a" * 40])
    def test_malformed(self, service, raw) -> None:
        result = service.refresh(raw)
        assert isinstance(result, Err)
        assert result.error is AuthError.TOKEN_MALFORMED

    def test_unknown_token_id(self, service) -> None:
        result = service.refresh("0" * 32 + "." + "a" * 43)
        assert isinstance(result, Err)
        assert result.error is AuthError.TOKEN_REVOKED
        assert result.reuse_detected is False

    def test_wrong_secret_does_not_burn_family(self, service, principal) -> None:
        pair = service.issue(principal)
        token_id = pair.refresh_token.split(".")[0]
        result = service.refresh(f"{token_id}.{'b' * 43}")
        assert isinstance(result, Err)
        assert result.error is AuthError.TOKEN_MALFORMED
        assert isinstance(service.refresh(pair.refresh_token), Ok)

    def test_expired(self, token_store, principal_store, principal) -> None:
        settings = get_settings().model_copy(update={"refresh_token_ttl_seconds": -1})
        service = TokenService(token_store, principal_store, settings)
        pair = service.issue(principal)
        result = service.refresh(pair.refresh_token)
        assert isinstance(result, Err)
        assert result.error is AuthError.TOKEN_EXPIRED

    def test_inactive_principal_revokes_family(self, service, principal, principal_store, token_store) -> None:
        pair = service.issue(principal)
        principal_store.set_active(principal.id, False)
        result = service.refresh(pair.refresh_token)
        assert isinstance(result, Err)
        assert result.error is AuthError.TOKEN_REVOKED
        assert token_store.get(pair.refresh_token.split(".")[0]).revoked


# ---------------------------------------------------------------------------
# Revoke
# ---------------------------------------------------------------------------


class TestRevoke:
    def test_revoke_is_idempotent(self, service, principal) -> None:
        pair = service.issue(principal)
        assert service.revoke(pair.refresh_token) == principal.id
        assert service.revoke(pair.refresh_token) is None
        assert service.revoke(None) is None
        assert service.revoke("not-a-token") is None

    def test_revoked_token_cannot_refresh(self, service, principal) -> None:
        pair = service.issue(principal)
        service.revoke(pair.refresh_token)
        result = service.refresh(pair.refresh_token)
        assert isinstance(result, Err)
        assert result.error is AuthError.TOKEN_REVOKED

    def test_revoke_with_wrong_secret_is_noop(self, service, principal) -> None:
        pair = service.issue(principal)
        token_id = pair.refresh_token.split(".")[0]
        assert service.revoke(f"{token_id}.{'c' * 43}") is None
        assert isinstance(service.refresh(pair.refresh_token), Ok)

    def test_revoke_all(self, service, principal) -> None:
        first = service.issue(principal)
        second = service.issue(principal)
        assert service.revoke_all(principal.id) == 2
        assert isinstance(service.refresh(first.refresh_token), Err)
        assert isinstance(service.refresh(second.refresh_token), Err)

    def test_purge_expired_keeps_recent_records(self, token_store, principal_store, principal) -> None:
        expired = TokenService(
            token_store,
            principal_store,
            get_settings().model_copy(update={"refresh_token_ttl_seconds": -30 * 86400}),
        )
        old = expired.issue(principal)
        fresh = TokenService(token_store, principal_store, get_settings()).issue(principal)
        assert token_store.purge_expired(older_than_days=7) == 1
        assert token_store.get(old.refresh_token.split(".")[0]) is None
        assert token_store.get(fresh.refresh_token.split(".")[0]) is not None
