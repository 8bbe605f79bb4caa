"""
Tests for auth/ledger.py -- refresh-token issuance, redemption and revocation.

Covers:
  - issue(): stores only the SHA-256 digest; value is long and URL-safe
  - token_state(): Active / Revoked / Expired, revocation wins over expiry
  - redeem(): succeeds once, replay -> TOKEN_REVOKED, unknown -> TOKEN_NOT_FOUND,
    past expiry -> TOKEN_EXPIRED
  - lost compare-and-swap (stale read) -> TOKEN_REVOKED
  - concurrent redemption against a file database: exactly one winner
  - revoke(): idempotent, owner guard, unknown token
  - revoke_all(), active_for(), cleanup_expired()
"""

import threading
from datetime import timedelta

import pytest

from auth.errors import ErrorCode
from auth.ledger import (
    LedgerConfig,
    RefreshTokenLedger,
    TokenState,
    hash_refresh_token,
    token_state,
)
from auth.models import RefreshToken, User
from auth.store import AuthStore


@pytest.fixture
def owner(store: AuthStore) -> User:
    return store.users.add(User(username="reader", email="reader@example.com", password_hash="x"))


class TestIssue:
    def test_only_digest_is_stored(self, ledger: RefreshTokenLedger, store: AuthStore, owner: User) -> None:
        issued = ledger.issue(owner.id)

        record = store.refresh_tokens.get_by_hash(hash_refresh_token(issued.value))
        assert record is not None
        assert record.user_id == owner.id
        assert record.token_hash != issued.value
        assert all(t.token_hash != issued.value for t in store.refresh_tokens.get_all())

    def test_value_is_high_entropy_and_url_safe(self, ledger: RefreshTokenLedger, owner: User) -> None:
        value = ledger.issue(owner.id).value
        assert len(value) >= 80
        assert all(c.isalnum() or c in "-_" for c in value)

    def test_values_are_unique(self, ledger: RefreshTokenLedger, owner: User) -> None:
        assert ledger.issue(owner.id).value != ledger.issue(owner.id).value

    def test_expiry_is_issue_time_plus_ttl(self, ledger: RefreshTokenLedger, clock, owner: User) -> None:
        assert ledger.issue(owner.id).expires_at == clock.now + timedelta(days=30)

    def test_non_positive_ttl_rejected(self) -> None:
        with pytest.raises(ValueError):
            LedgerConfig(ttl=timedelta(0))


class TestTokenState:
    def _record(self, clock, revoked: bool = False) -> RefreshToken:
        return RefreshToken(
            token_hash="h",
            user_id="u",
            expires_at=(clock.now + timedelta(days=1)).isoformat(),
            is_revoked=revoked,
        )

    def test_active_before_expiry(self, clock) -> None:
        assert token_state(self._record(clock), clock.now) is TokenState.ACTIVE

    def test_still_active_at_expiry_instant(self, clock) -> None:
        assert token_state(self._record(clock), clock.now + timedelta(days=1)) is TokenState.ACTIVE

    def test_expired_after_expiry(self, clock) -> None:
        later = clock.now + timedelta(days=1, seconds=1)
        assert token_state(self._record(clock), later) is TokenState.EXPIRED

    def test_revoked_wins_over_expired(self, clock) -> None:
        later = clock.now + timedelta(days=2)
        assert token_state(self._record(clock, revoked=True), later) is TokenState.REVOKED


class TestRedeem:
    def test_first_redemption_succeeds(self, ledger: RefreshTokenLedger, owner: User) -> None:
        value = ledger.issue(owner.id).value
        redemption = ledger.redeem(value)
        assert redemption.ok is True
        assert redemption.principal_id == owner.id

    def test_replay_is_revoked(self, ledger: RefreshTokenLedger, owner: User) -> None:
        value = ledger.issue(owner.id).value
        ledger.redeem(value)
        replay = ledger.redeem(value)
        assert replay.ok is False
        assert replay.error is ErrorCode.TOKEN_REVOKED

    def test_unknown_value_not_found(self, ledger: RefreshTokenLedger) -> None:
        assert ledger.redeem("never-issued").error is ErrorCode.TOKEN_NOT_FOUND
        assert ledger.redeem("").error is ErrorCode.TOKEN_NOT_FOUND

    def test_expired_token(self, ledger: RefreshTokenLedger, clock, owner: User) -> None:
        value = ledger.issue(owner.id).value
        clock.advance(days=30, seconds=1)
        assert ledger.redeem(value).error is ErrorCode.TOKEN_EXPIRED

    def test_revoked_token(self, ledger: RefreshTokenLedger, owner: User) -> None:
        value = ledger.issue(owner.id).value
        ledger.revoke(value)
        assert ledger.redeem(value).error is ErrorCode.TOKEN_REVOKED

    def test_lost_compare_and_swap_is_revoked(
        self, ledger: RefreshTokenLedger, store: AuthStore, owner: User, monkeypatch
    ) -> None:
        """A redemption that read the row before another redemption committed must still lose."""
        value = ledger.issue(owner.id).value
        stale = store.refresh_tokens.get_by_hash(hash_refresh_token(value))
        assert ledger.redeem(value).ok is True

        monkeypatch.setattr(store.refresh_tokens, "get_by_hash", lambda digest, conn=None: stale)
        late = ledger.redeem(value)
        assert late.ok is False
        assert late.error is ErrorCode.TOKEN_REVOKED

    def test_concurrent_redemptions_have_one_winner(self, tmp_path) -> None:
        store = AuthStore(f"sqlite:///{tmp_path / 'race.db'}")
        try:
            owner = store.users.add(User(username="racer", email="racer@example.com", password_hash="x"))
            ledger = RefreshTokenLedger(store)
            value = ledger.issue(owner.id).value

            workers = 8
            barrier = threading.Barrier(workers)
            outcomes = []
            lock = threading.Lock()

            def attempt() -> None:
                barrier.wait()
                with store.engine.connect() as conn:
                    redemption = ledger.redeem(value, conn=conn)
                    conn.commit()
                with lock:
                    outcomes.append(redemption)

            threads = [threading.Thread(target=attempt) for _ in range(workers)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            winners = [r for r in outcomes if r.ok]
            losers = [r for r in outcomes if not r.ok]
            assert len(outcomes) == workers
            assert len(winners) == 1
            assert {r.error for r in losers} == {ErrorCode.TOKEN_REVOKED}
        finally:
            store.close()


class TestRevoke:
    def test_revoke_is_idempotent(self, ledger: RefreshTokenLedger, owner: User) -> None:
        value = ledger.issue(owner.id).value
        assert ledger.revoke(value) is True
        assert ledger.revoke(value) is True

    def test_revoke_unknown_returns_false(self, ledger: RefreshTokenLedger) -> None:
        assert ledger.revoke("never-issued") is False
        assert ledger.revoke("") is False

    def test_owner_guard(self, ledger: RefreshTokenLedger, store: AuthStore, owner: User) -> None:
        value = ledger.issue(owner.id).value
        assert ledger.revoke(value, owner_id="someone-else") is False
        assert store.refresh_tokens.get_by_hash(hash_refresh_token(value)).is_revoked is False

        assert ledger.revoke(value, owner_id=owner.id) is True
        assert store.refresh_tokens.get_by_hash(hash_refresh_token(value)).is_revoked is True

    def test_revoke_all_counts_only_outstanding(self, ledger: RefreshTokenLedger, owner: User) -> None:
        first = ledger.issue(owner.id).value
        ledger.issue(owner.id)
        ledger.issue(owner.id)
        ledger.revoke(first)

        assert ledger.revoke_all(owner.id) == 2
        assert ledger.revoke_all(owner.id) == 0
        assert ledger.active_for(owner.id) == []

    def test_active_for_excludes_expired(self, ledger: RefreshTokenLedger, clock, owner: User) -> None:
        ledger.issue(owner.id)
        clock.advance(days=20)
        fresh = ledger.issue(owner.id)
        clock.advance(days=15)

        active = ledger.active_for(owner.id)
        assert [t.token_hash for t in active] == [hash_refresh_token(fresh.value)]


class TestCleanup:
    def test_cleanup_purges_only_expired(self, ledger: RefreshTokenLedger, store: AuthStore, clock, owner: User) -> None:
        old = ledger.issue(owner.id).value
        clock.advance(days=10)
        recent = ledger.issue(owner.id).value
        clock.advance(days=25)

        assert ledger.cleanup_expired() == 1
        assert store.refresh_tokens.get_by_hash(hash_refresh_token(old)) is None
        assert store.refresh_tokens.get_by_hash(hash_refresh_token(recent)) is not None

    def test_cleanup_with_nothing_expired(self, ledger: RefreshTokenLedger, owner: User) -> None:
        ledger.issue(owner.id)
        assert ledger.cleanup_expired() == 0
