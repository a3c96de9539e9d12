"""
tests/test_codes.py -- Unit tests for CodeIssuer.

Coverage:
  - issue: code shape, delivery, HMAC-only storage, resend throttling
  - supersede: a second issuance invalidates the first (code_superseded)
  - validate: success consumes; replay -> already used; late -> expired;
    wrong -> mismatch; other purpose/email -> mismatch
  - concurrent validation of one code: exactly one winner
  - guess budget: the active code is burned after code_max_attempts misses
  - dispatch failure: issuance rolled back (or the code expired when the
    rollback fails), retry allowed immediately
  - storage failure before delivery does not spend the resend allowance
  - malformed submissions are rejected before any attempt is counted
  - purge_expired honours the retention window
"""

from __future__ import annotations

import threading
from contextlib import contextmanager

import pytest
from sqlalchemy import select

from auth.codes import CodeIssuer
from auth.db import verification_codes
from auth.errors import (
    CodeAlreadyUsedError,
    CodeExpiredError,
    CodeMismatchError,
    CodeSupersededError,
    DispatchFailedError,
    InvalidFormatError,
    RateLimitedError,
    UnavailableError,
)
from auth.models import CodePurpose
from auth.ratelimit import RateLimiter, send_code_action

EMAIL = "alice@example.com"
ACTIVATION = CodePurpose.ACTIVATION
RESET = CodePurpose.PASSWORD_RESET


def _limiter(per_window: int = 100) -> RateLimiter:
    limiter = RateLimiter()
    for purpose in CodePurpose:
        limiter.configure(send_code_action(purpose.value), per_window, 60)
    return limiter


@pytest.fixture
def codes(engine, mailer, clock) -> CodeIssuer:
    return CodeIssuer(
        engine,
        secret_key="test-secret-key-0123456789abcdef0123456789",
        limiter=_limiter(),
        mailer=mailer,
        expire_seconds=600,
        max_attempts=3,
        retention_seconds=3600,
        clock=clock,
    )


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 10**len(code):0{len(code)}d}"


def _fail_transactions(monkeypatch, issuer: CodeIssuer, *failing_calls: int) -> None:
    """Make the listed transaction() calls (1-based) raise UnavailableError."""
    real_transaction = issuer.transaction
    calls = []

    @contextmanager
    def flaky_transaction(conn=None):
        calls.append(conn)
        if len(calls) in failing_calls:
            raise UnavailableError("Storage is temporarily unavailable.")
        with real_transaction(conn) as c:
            yield c

    monkeypatch.setattr(issuer, "transaction", flaky_transaction)


class TestIssue:
    def test_issue_delivers_six_digit_code(self, codes, mailer):
        codes.issue(EMAIL, ACTIVATION)
        code = mailer.last_code(EMAIL, ACTIVATION)
        assert len(code) == 6
        assert code.isdigit()

    def test_plaintext_code_is_never_stored(self, codes, mailer, engine):
        codes.issue(EMAIL, ACTIVATION)
        code = mailer.last_code(EMAIL, ACTIVATION)
        with engine.connect() as conn:
            stored = conn.execute(select(verification_codes.c.code_hash)).scalar()
        assert stored != code
        assert code not in stored
        assert len(stored) == 64

    def test_codes_are_not_repeated(self, codes, mailer):
        for _ in range(20):
            codes.issue(EMAIL, ACTIVATION)
        sent = {code for _, code, _ in mailer.sent}
        # 20 draws from 10^6; a collision here means the generator is broken.
        assert len(sent) == 20

    def test_resend_interval_is_enforced_per_email_and_purpose(self, engine, mailer, clock):
        issuer = CodeIssuer(engine, secret_key="k" * 32, limiter=_limiter(per_window=1), mailer=mailer, clock=clock)
        issuer.issue(EMAIL, ACTIVATION)
        with pytest.raises(RateLimitedError) as exc_info:
            issuer.issue(EMAIL, ACTIVATION)
        assert 1 <= exc_info.value.retry_after <= 60
        # Other purpose and other email have their own counters.
        issuer.issue(EMAIL, RESET)
        issuer.issue("bob@example.com", ACTIVATION)
        assert len(mailer.sent) == 3

    def test_rate_limited_issue_stores_nothing(self, engine, mailer, clock):
        issuer = CodeIssuer(engine, secret_key="k" * 32, limiter=_limiter(per_window=1), mailer=mailer, clock=clock)
        issuer.issue(EMAIL, ACTIVATION)
        with pytest.raises(RateLimitedError):
            issuer.issue(EMAIL, ACTIVATION)
        assert issuer.count_codes(EMAIL, ACTIVATION) == 1


class TestSupersede:
    def test_second_issue_supersedes_first(self, codes, mailer):
        codes.issue(EMAIL, ACTIVATION)
        first = mailer.last_code(EMAIL, ACTIVATION)
        codes.issue(EMAIL, ACTIVATION)
        second = mailer.last_code(EMAIL, ACTIVATION)
        if first == second:
            pytest.skip("identical codes drawn twice")

        with pytest.raises(CodeSupersededError):
            codes.validate(EMAIL, ACTIVATION, first)
        codes.validate(EMAIL, ACTIVATION, second)

    def test_only_one_active_code(self, codes, clock):
        for _ in range(3):
            codes.issue(EMAIL, ACTIVATION)
        active = codes.get_active(EMAIL, ACTIVATION)
        assert active is not None
        assert codes.count_codes(EMAIL, ACTIVATION) == 3

    def test_purposes_do_not_supersede_each_other(self, codes, mailer):
        codes.issue(EMAIL, ACTIVATION)
        activation = mailer.last_code(EMAIL, ACTIVATION)
        codes.issue(EMAIL, RESET)
        codes.validate(EMAIL, ACTIVATION, activation)


class TestValidate:
    def test_valid_code_is_consumed_once(self, codes, mailer):
        codes.issue(EMAIL, ACTIVATION)
        code = mailer.last_code(EMAIL, ACTIVATION)
        codes.validate(EMAIL, ACTIVATION, code)
        with pytest.raises(CodeAlreadyUsedError):
            codes.validate(EMAIL, ACTIVATION, code)
        assert codes.get_active(EMAIL, ACTIVATION) is None

    def test_expired_code(self, codes, mailer, clock):
        codes.issue(EMAIL, ACTIVATION)
        code = mailer.last_code(EMAIL, ACTIVATION)
        clock.advance(600)
        with pytest.raises(CodeExpiredError):
            codes.validate(EMAIL, ACTIVATION, code)

    def test_code_valid_just_before_expiry(self, codes, mailer, clock):
        codes.issue(EMAIL, ACTIVATION)
        code = mailer.last_code(EMAIL, ACTIVATION)
        clock.advance(599)
        codes.validate(EMAIL, ACTIVATION, code)

    def test_wrong_code_is_mismatch(self, codes, mailer):
        codes.issue(EMAIL, ACTIVATION)
        code = mailer.last_code(EMAIL, ACTIVATION)
        with pytest.raises(CodeMismatchError):
            codes.validate(EMAIL, ACTIVATION, _wrong(code))
        # A miss does not consume the real code.
        codes.validate(EMAIL, ACTIVATION, code)

    def test_code_is_bound_to_email_and_purpose(self, codes, mailer):
        codes.issue(EMAIL, ACTIVATION)
        code = mailer.last_code(EMAIL, ACTIVATION)
        with pytest.raises(CodeMismatchError):
            codes.validate("bob@example.com", ACTIVATION, code)
        with pytest.raises(CodeMismatchError):
            codes.validate(EMAIL, RESET, code)

    def test_no_code_issued_is_mismatch(self, codes):
        with pytest.raises(CodeMismatchError):
            codes.validate(EMAIL, ACTIVATION, "123456")

    def test_concurrent_validation_has_exactly_one_winner(self, codes, mailer):
        codes.issue(EMAIL, ACTIVATION)
        code = mailer.last_code(EMAIL, ACTIVATION)
        outcomes: list[str] = []
        barrier = threading.Barrier(8)

        def attempt() -> None:
            barrier.wait()
            try:
                codes.validate(EMAIL, ACTIVATION, code)
                outcomes.append("ok")
            except CodeAlreadyUsedError:
                outcomes.append("used")

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("used") == 7


class TestGuessBudget:
    def test_code_burned_after_max_attempts(self, codes, mailer):
        codes.issue(EMAIL, ACTIVATION)
        code = mailer.last_code(EMAIL, ACTIVATION)
        for _ in range(3):
            with pytest.raises(CodeMismatchError):
                codes.validate(EMAIL, ACTIVATION, _wrong(code))
        # The right code no longer works either.
        with pytest.raises(CodeExpiredError):
            codes.validate(EMAIL, ACTIVATION, code)

    def test_attempts_below_budget_keep_code_alive(self, codes, mailer):
        codes.issue(EMAIL, ACTIVATION)
        code = mailer.last_code(EMAIL, ACTIVATION)
        for _ in range(2):
            with pytest.raises(CodeMismatchError):
                codes.validate(EMAIL, ACTIVATION, _wrong(code))
        assert codes.get_active(EMAIL, ACTIVATION).failed_attempts == 2
        codes.validate(EMAIL, ACTIVATION, code)

    def test_new_code_gets_fresh_budget(self, codes, mailer):
        codes.issue(EMAIL, ACTIVATION)
        first = mailer.last_code(EMAIL, ACTIVATION)
        for _ in range(3):
            with pytest.raises(CodeMismatchError):
                codes.validate(EMAIL, ACTIVATION, _wrong(first))
        codes.issue(EMAIL, ACTIVATION)
        codes.validate(EMAIL, ACTIVATION, mailer.last_code(EMAIL, ACTIVATION))


class TestDispatchFailure:
    def test_failed_delivery_rolls_back_issue(self, engine, mailer, clock):
        issuer = CodeIssuer(engine, secret_key="k" * 32, limiter=_limiter(per_window=1), mailer=mailer, clock=clock)
        mailer.fail = True
        with pytest.raises(DispatchFailedError):
            issuer.issue(EMAIL, ACTIVATION)
        assert issuer.count_codes(EMAIL, ACTIVATION) == 0

        # Counter was cleared: the retry is not throttled.
        mailer.fail = False
        issuer.issue(EMAIL, ACTIVATION)
        issuer.validate(EMAIL, ACTIVATION, mailer.last_code(EMAIL, ACTIVATION))

    def test_failed_resend_keeps_previous_code_usable(self, codes, mailer):
        codes.issue(EMAIL, ACTIVATION)
        delivered = mailer.last_code(EMAIL, ACTIVATION)
        mailer.fail = True
        with pytest.raises(DispatchFailedError):
            codes.issue(EMAIL, ACTIVATION)
        mailer.fail = False
        codes.validate(EMAIL, ACTIVATION, delivered)

    def test_unexpected_mailer_error_becomes_dispatch_failed(self, engine, clock):
        class BrokenMailer:
            def send_code(self, email, code, purpose, expires_in):
                raise RuntimeError("boom")

        issuer = CodeIssuer(engine, secret_key="k" * 32, limiter=_limiter(), mailer=BrokenMailer(), clock=clock)
        with pytest.raises(DispatchFailedError):
            issuer.issue(EMAIL, ACTIVATION)
        assert issuer.count_codes(EMAIL, ACTIVATION) == 0

    def test_failed_rollback_expires_undelivered_code(self, engine, mailer, clock, monkeypatch):
        issuer = CodeIssuer(engine, secret_key="k" * 32, limiter=_limiter(per_window=1), mailer=mailer, clock=clock)
        # Call 1 stores the code, call 2 is the rollback.
        _fail_transactions(monkeypatch, issuer, 2)
        mailer.fail = True
        with pytest.raises(DispatchFailedError):
            issuer.issue(EMAIL, ACTIVATION)

        assert issuer.count_codes(EMAIL, ACTIVATION) == 1
        assert issuer.get_active(EMAIL, ACTIVATION) is None

        # Counter was cleared even though the rollback failed.
        mailer.fail = False
        issuer.issue(EMAIL, ACTIVATION)
        issuer.validate(EMAIL, ACTIVATION, mailer.last_code(EMAIL, ACTIVATION))


class TestStorageFailure:
    def test_failed_store_does_not_spend_resend_allowance(self, engine, mailer, clock, monkeypatch):
        issuer = CodeIssuer(engine, secret_key="k" * 32, limiter=_limiter(per_window=1), mailer=mailer, clock=clock)
        _fail_transactions(monkeypatch, issuer, 1)
        with pytest.raises(UnavailableError):
            issuer.issue(EMAIL, ACTIVATION)
        assert mailer.sent == []
        assert issuer.count_codes(EMAIL, ACTIVATION) == 0

        # Immediate retry is not throttled.
        issuer.issue(EMAIL, ACTIVATION)
        issuer.validate(EMAIL, ACTIVATION, mailer.last_code(EMAIL, ACTIVATION))


class TestSubmissionFormat:
    @pytest.mark.parametrize("submitted", ["12345", "1234567", "12a456", "", "１２３４５６"])
    def test_malformed_submission_is_rejected_without_spending_attempts(self, codes, mailer, submitted):
        codes.issue(EMAIL, ACTIVATION)
        with pytest.raises(InvalidFormatError):
            codes.validate(EMAIL, ACTIVATION, submitted)
        assert codes.get_active(EMAIL, ACTIVATION).failed_attempts == 0
        codes.validate(EMAIL, ACTIVATION, mailer.last_code(EMAIL, ACTIVATION))


class TestPurge:
    def test_purge_respects_retention(self, codes, mailer, clock):
        codes.issue(EMAIL, ACTIVATION)
        code = mailer.last_code(EMAIL, ACTIVATION)
        clock.advance(600 + 1800)
        assert codes.purge_expired() == 0
        # Still reported as expired, not as a mismatch, inside retention.
        with pytest.raises(CodeExpiredError):
            codes.validate(EMAIL, ACTIVATION, code)

        clock.advance(1800)
        assert codes.purge_expired() == 1
        assert codes.count_codes(EMAIL, ACTIVATION) == 0
