"""
tests/test_refresh_tokens.py -- Tests for auth/refresh.py and the refresh-token store primitives.

Covers:
  - issue persists only the hash, with 7-day TTL and provenance
  - validate: active -> user; revoked / expired / unknown -> None, and no side effects
  - rotate: single use, chained rotation, owner preserved, expired and replayed tokens fail
  - concurrent rotate of one token: exactly one winner (file-backed DB, two threads)
  - revoke_all_for_user counts and invalidates; unknown user -> NotFound
  - cleanup_expired prunes by expiry only, revoked-but-unexpired rows survive
  - status() classification feeding audit detail
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from auth.errors import NotFound
from auth.models import RefreshTokenStatus, User
from auth.refresh import RefreshTokenManager
from auth.store import CredentialStore
from auth.tokens import hash_refresh_token


def _alice(store: CredentialStore) -> User:
    return store.get_by_username("alice")


class TestIssue:
    def test_stores_hash_not_raw_value(self, manager: RefreshTokenManager, store: CredentialStore, user_ids) -> None:
        raw = manager.issue(_alice(store), "10.0.0.1", "pytest-agent")
        record = store.get_refresh_token_by_hash(hash_refresh_token(raw, "unit-test-signing-key-0123456789abcdef"))
        assert record is not None
        assert record.token_hash != raw
        assert record.user_id == user_ids["alice"]
        assert record.ip_address == "10.0.0.1"
        assert record.user_agent == "pytest-agent"
        assert record.revoked is False

    def test_default_ttl_is_seven_days(self, manager: RefreshTokenManager, store: CredentialStore, clock, user_ids) -> None:
        raw = manager.issue(_alice(store))
        record = store.get_refresh_token_by_hash(manager._hash(raw))
        assert record.issued_at == clock.now
        assert record.expires_at == clock.now + timedelta(days=7)

    def test_unsaved_user_is_rejected(self, manager: RefreshTokenManager) -> None:
        with pytest.raises(ValueError):
            manager.issue(User(username="ghost", email="ghost@example.com", password_hash="x"))

    def test_non_positive_ttl_fails_fast(self, store: CredentialStore) -> None:
        with pytest.raises(ValueError):
            RefreshTokenManager(store, hash_key="k" * 32, ttl=timedelta(0))


class TestValidate:
    def test_active_token_returns_owner(self, manager: RefreshTokenManager, store: CredentialStore, user_ids) -> None:
        raw = manager.issue(_alice(store))
        user = manager.validate(raw)
        assert user is not None
        assert user.id == user_ids["alice"]

    def test_validate_has_no_side_effects(self, manager: RefreshTokenManager, store: CredentialStore, user_ids) -> None:
        raw = manager.issue(_alice(store))
        for _ in range(3):
            assert manager.validate(raw) is not None
        assert manager.rotate(raw) is not None

    def test_expired_token_returns_none(self, manager: RefreshTokenManager, store: CredentialStore, clock, user_ids) -> None:
        raw = manager.issue(_alice(store))
        clock.advance(days=7)
        assert manager.validate(raw) is None
        assert manager.status(raw) is RefreshTokenStatus.EXPIRED

    def test_unknown_token_returns_none(self, manager: RefreshTokenManager, user_ids) -> None:
        assert manager.validate("rt_not-a-real-token") is None
        assert manager.validate("") is None
        assert manager.status("rt_not-a-real-token") is RefreshTokenStatus.UNKNOWN


class TestRotate:
    def test_rotation_is_single_use(self, manager: RefreshTokenManager, store: CredentialStore, user_ids) -> None:
        original = manager.issue(_alice(store))
        replacement = manager.rotate(original)
        assert replacement is not None
        assert replacement != original
        assert manager.rotate(original) is None, "Replayed token must not rotate again"
        assert manager.validate(original) is None
        assert manager.status(original) is RefreshTokenStatus.REVOKED

    def test_rotated_token_is_valid_for_exactly_one_more_rotation(
        self, manager: RefreshTokenManager, store: CredentialStore, user_ids
    ) -> None:
        first = manager.issue(_alice(store))
        second = manager.rotate(first)
        third = manager.rotate(second)
        assert third is not None
        assert manager.rotate(second) is None
        assert manager.rotate(first) is None
        assert manager.validate(third).username == "alice"

    def test_rotation_keeps_owner_and_records_revocation(
        self, manager: RefreshTokenManager, store: CredentialStore, clock, user_ids
    ) -> None:
        original = manager.issue(_alice(store))
        clock.advance(hours=1)
        replacement = manager.rotate(original, "10.0.0.2", "agent-2")
        old = store.get_refresh_token_by_hash(manager._hash(original))
        new = store.get_refresh_token_by_hash(manager._hash(replacement))
        assert old.revoked is True
        assert old.revoked_at == clock.now
        assert new.user_id == user_ids["alice"]
        assert new.issued_at == clock.now
        assert new.ip_address == "10.0.0.2"

    def test_expired_token_cannot_rotate(self, manager: RefreshTokenManager, store: CredentialStore, clock, user_ids) -> None:
        raw = manager.issue(_alice(store))
        clock.advance(days=7, seconds=1)
        assert manager.rotate(raw) is None
        assert store.get_refresh_token_by_hash(manager._hash(raw)).revoked is False

    def test_unknown_token_cannot_rotate(self, manager: RefreshTokenManager, user_ids) -> None:
        assert manager.rotate("rt_unknown") is None
        assert manager.rotate("") is None


class TestConcurrentRotation:
    def test_exactly_one_of_two_racing_rotations_wins(self, tmp_path, hasher) -> None:
        """Two threads rotate the same token at once; the conditional UPDATE lets only one through."""
        store = CredentialStore(f"sqlite:///{tmp_path / 'race.db'}")
        try:
            store.create_user(User(username="alice", email="alice@example.com", password_hash=hasher.hash("pw")))
            manager = RefreshTokenManager(store, hash_key="race-test-key-0123456789abcdef012345")
            raw = manager.issue(store.get_by_username("alice"))

            barrier = threading.Barrier(2)
            results: list[str | None] = []
            errors: list[BaseException] = []
            lock = threading.Lock()

            def worker() -> None:
                try:
                    barrier.wait(timeout=5)
                    outcome = manager.rotate(raw)
                    with lock:
                        results.append(outcome)
                except BaseException as exc:  # surfaced by the assertion below
                    with lock:
                        errors.append(exc)

            threads = [threading.Thread(target=worker) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

            assert errors == []
            winners = [r for r in results if r is not None]
            assert len(results) == 2
            assert len(winners) == 1, f"Expected exactly one successful rotation, got {results!r}"
            assert manager.validate(winners[0]) is not None
        finally:
            store.close()


class TestRevokeAll:
    def test_revoke_all_returns_count_and_invalidates(
        self, manager: RefreshTokenManager, store: CredentialStore, user_ids
    ) -> None:
        alice = _alice(store)
        tokens = [manager.issue(alice) for _ in range(3)]
        other = manager.issue(store.get_by_username("admin"))

        assert manager.revoke_all_for_user("alice") == 3
        for raw in tokens:
            assert manager.validate(raw) is None
        assert manager.validate(other) is not None, "Other users' tokens must be untouched"

    def test_username_is_case_insensitive(self, manager: RefreshTokenManager, store: CredentialStore, user_ids) -> None:
        manager.issue(_alice(store))
        assert manager.revoke_all_for_user("ALICE") == 1

    def test_no_tokens_returns_zero(self, manager: RefreshTokenManager, user_ids) -> None:
        assert manager.revoke_all_for_user("carol") == 0

    def test_unknown_user_raises_not_found(self, manager: RefreshTokenManager, user_ids) -> None:
        with pytest.raises(NotFound) as info:
            manager.revoke_all_for_user("nobody")
        assert info.value.kind == "user"


class TestCleanupExpired:
    def test_removes_only_expired_tokens(self, manager: RefreshTokenManager, store: CredentialStore, clock, user_ids) -> None:
        alice = _alice(store)
        old = manager.issue(alice)
        clock.advance(days=3)
        fresh = manager.issue(alice)
        revoked_source = manager.issue(alice)
        rotated = manager.rotate(revoked_source)
        clock.advance(days=4, seconds=1)  # old is past expiry, the rest are not

        assert manager.cleanup_expired() == 1
        assert store.get_refresh_token_by_hash(manager._hash(old)) is None
        assert manager.validate(fresh) is not None
        assert manager.validate(rotated) is not None
        revoked = store.get_refresh_token_by_hash(manager._hash(revoked_source))
        assert revoked is not None and revoked.revoked, "Revoked-but-unexpired rows persist until expiry"

    def test_cleanup_prunes_revoked_rows_once_expired(
        self, manager: RefreshTokenManager, store: CredentialStore, clock, user_ids
    ) -> None:
        raw = manager.issue(_alice(store))
        replacement = manager.rotate(raw)
        clock.advance(days=8)
        assert manager.cleanup_expired() == 2
        assert store.get_refresh_token_by_hash(manager._hash(raw)) is None
        assert store.get_refresh_token_by_hash(manager._hash(replacement)) is None

    def test_cleanup_is_idempotent(self, manager: RefreshTokenManager, store: CredentialStore, clock, user_ids) -> None:
        manager.issue(_alice(store))
        clock.advance(days=8)
        assert manager.cleanup_expired() == 1
        assert manager.cleanup_expired() == 0


class TestStatusReasons:
    @pytest.mark.parametrize(
        "status,reason",
        [
            (RefreshTokenStatus.REVOKED, "reuse_detected"),
            (RefreshTokenStatus.EXPIRED, "expired"),
            (RefreshTokenStatus.UNKNOWN, "unknown_token"),
            (RefreshTokenStatus.ACTIVE, "rotation_lost"),
        ],
    )
    def test_failure_reason(self, status: RefreshTokenStatus, reason: str) -> None:
        assert status.failure_reason == reason

    def test_active_status(self, manager: RefreshTokenManager, store: CredentialStore, user_ids) -> None:
        assert manager.status(manager.issue(_alice(store))) is RefreshTokenStatus.ACTIVE


def test_deleting_user_removes_its_tokens(manager: RefreshTokenManager, store: CredentialStore, user_ids) -> None:
    raw = manager.issue(_alice(store))
    assert store.delete_user(user_ids["alice"]) is True
    assert store.get_refresh_token_by_hash(manager._hash(raw)) is None
