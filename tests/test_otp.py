"""Unit tests for auth/otp.py -- OTPService (emailed one-time codes).

Covers:
- request -> email -> verify marks the account verified and deletes the code
- wrong codes count attempts; a right code after wrong ones still works
- expiry, resend cooldown, unknown accounts, optional auto-creation
- a failed send keeps the stored code
- optional lockout after OTP_MAX_ATTEMPTS failures
- should_login decides whether a token pair is issued
"""

import asyncio
from contextlib import contextmanager

import pytest

from auth.errors import BadRequestError, InternalError, UnauthorizedError, ValidationError
from auth.otp import GENERIC_REQUEST_MESSAGE, VERIFIED_MESSAGE
from tests.support import build_services, create_account, make_settings

EMAIL = "carol@example.com"


@pytest.fixture
def carol(services):
    return create_account(services.accounts, EMAIL, first_name="Carol")


@contextmanager
def services_with(**overrides):
    svc = build_services(make_settings(**overrides))
    try:
        yield svc
    finally:
        svc.accounts.close()
        svc.secrets.close()


def request(services, email=EMAIL):
    return asyncio.run(services.otp.request_otp(email))


def verify(services, code, email=EMAIL, should_login=False):
    return asyncio.run(services.otp.verify_otp(email, code, should_login=should_login))


def wrong_code(right: str) -> str:
    return f"{(int(right) + 1) % 1_000_000:06d}"


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_request_sends_code(services, carol):
    assert request(services) == {"success": True, "message": GENERIC_REQUEST_MESSAGE}
    message = services.mailer.sent[0]
    assert message.to == EMAIL
    assert message.subject == "Email Verification Code"
    code = services.mailer.last_code()
    assert code in message.html_body
    assert "http://localhost:3000/auth/verify?" in message.html_body

    record = services.secrets.get_otp(carol.id)
    assert record.attempts == 0
    assert record.code_hash != code


def test_verify_marks_account_verified_and_consumes_code(services, carol):
    request(services)
    code = services.mailer.last_code()
    result = verify(services, code)

    assert result.success is True
    assert result.message == VERIFIED_MESSAGE
    assert result.user.email_verified is True
    assert result.access_token is None
    assert result.refresh_token is None
    assert services.accounts.get_by_id(carol.id).email_verified is True
    assert services.secrets.get_otp(carol.id) is None

    with pytest.raises(UnauthorizedError) as exc:
        verify(services, code)
    assert exc.value.message == "Invalid or expired code."


def test_verify_with_login_issues_tokens(services, carol):
    request(services)
    result = verify(services, services.mailer.last_code(), should_login=True)
    assert services.codec.verify_access_token(result.access_token)["email_verified"] is True
    assert services.codec.verify_refresh_token(result.refresh_token)["sub"] == str(carol.id)


def test_inactive_account_cannot_log_in_by_code(services):
    user = create_account(services.accounts, EMAIL, is_active=False)
    request(services)
    with pytest.raises(UnauthorizedError) as exc:
        verify(services, services.mailer.last_code(), should_login=True)
    assert exc.value.message == "This account has been deactivated."
    assert services.accounts.get_by_id(user.id).last_login is None


def test_verify_normalizes_email(services, carol):
    request(services)
    assert verify(services, services.mailer.last_code(), email="  CAROL@example.COM").success


# ---------------------------------------------------------------------------
# Attempts
# ---------------------------------------------------------------------------


def test_wrong_code_increments_attempts(services, carol):
    request(services)
    code = services.mailer.last_code()
    for expected in (1, 2, 3):
        with pytest.raises(UnauthorizedError) as exc:
            verify(services, wrong_code(code))
        assert exc.value.message == "Invalid code."
        assert services.secrets.get_otp(carol.id).attempts == expected


def test_right_code_after_wrong_ones(services, carol):
    request(services)
    code = services.mailer.last_code()
    for _ in range(5):
        with pytest.raises(UnauthorizedError):
            verify(services, wrong_code(code))
    assert verify(services, code).success is True


def test_lockout_after_max_attempts():
    with services_with(otp_max_attempts=3) as svc:
        user = create_account(svc.accounts, EMAIL)
        request(svc)
        code = svc.mailer.last_code()
        for _ in range(3):
            with pytest.raises(UnauthorizedError):
                verify(svc, wrong_code(code))
        with pytest.raises(UnauthorizedError) as exc:
            verify(svc, code)
        assert exc.value.message == "Too many failed attempts. Please request a new code."
        assert svc.secrets.get_otp(user.id) is None


def test_fresh_code_resets_attempts(services, carol):
    request(services)
    with pytest.raises(UnauthorizedError):
        verify(services, wrong_code(services.mailer.last_code()))
    services.clock.advance(seconds=60)
    request(services)
    assert services.secrets.get_otp(carol.id).attempts == 0


# ---------------------------------------------------------------------------
# Expiry and cooldown
# ---------------------------------------------------------------------------


def test_code_expires(services, carol):
    request(services)
    code = services.mailer.last_code()
    services.clock.advance(minutes=10, seconds=1)
    with pytest.raises(UnauthorizedError) as exc:
        verify(services, code)
    assert exc.value.message == "Code has expired. Please request a new one."


def test_code_valid_at_expiry_instant(services, carol):
    request(services)
    services.clock.advance(minutes=10)
    assert verify(services, services.mailer.last_code()).success


def test_resend_cooldown(services, carol):
    request(services)
    services.clock.advance(seconds=30)
    with pytest.raises(BadRequestError) as exc:
        request(services)
    assert exc.value.message == "Please wait 60 seconds before requesting a new code."
    assert len(services.mailer.sent) == 1

    services.clock.advance(seconds=30)
    request(services)
    assert len(services.mailer.sent) == 2


def test_new_code_replaces_old(services, carol):
    request(services)
    old = services.mailer.last_code()
    services.clock.advance(seconds=60)
    request(services)
    new = services.mailer.last_code()
    if old != new:
        with pytest.raises(UnauthorizedError):
            verify(services, old)
    assert verify(services, new).success


def test_cleanup_expired_codes(services, carol):
    other = create_account(services.accounts, "dave@example.com")
    request(services)
    services.clock.advance(minutes=5)
    request(services, "dave@example.com")
    services.clock.advance(minutes=5, seconds=1)
    assert services.otp.cleanup_expired_codes() == 1
    assert services.secrets.get_otp(carol.id) is None
    assert services.secrets.get_otp(other.id) is not None


# ---------------------------------------------------------------------------
# Unknown accounts and validation
# ---------------------------------------------------------------------------


def test_unknown_account_gets_generic_response(services, carol):
    assert request(services, "nobody@example.com") == request(services)
    assert len(services.mailer.sent) == 1
    assert services.accounts.get_by_email("nobody@example.com") is None


def test_unknown_account_cannot_verify(services):
    with pytest.raises(UnauthorizedError) as exc:
        verify(services, "123456", email="nobody@example.com")
    assert exc.value.message == "Invalid or expired code."


def test_auto_create_accounts():
    with services_with(otp_auto_create_accounts=True) as svc:
        request(svc, "new@example.com")
        user = svc.accounts.get_by_email("new@example.com")
        assert user is not None
        assert user.roles == ["user"]
        assert user.email_verified is False
        assert verify(svc, svc.mailer.last_code(), email="new@example.com").user.id == user.id


@pytest.mark.parametrize(
    "email,message",
    [(None, "Email is required"), ("  ", "Email is required"), ("bad", "Please provide a valid email address")],
)
def test_request_validation(services, email, message):
    with pytest.raises(ValidationError) as exc:
        request(services, email)
    assert exc.value.message == message


@pytest.mark.parametrize("email,code", [(None, "123456"), (EMAIL, None), ("", ""), (EMAIL, "")])
def test_verify_validation(services, email, code):
    with pytest.raises(ValidationError) as exc:
        verify(services, code, email=email)
    assert exc.value.message == "Email and code are required"


# ---------------------------------------------------------------------------
# Dispatch failure
# ---------------------------------------------------------------------------


def test_failed_send_keeps_code(services, carol):
    services.mailer.fail = True
    with pytest.raises(InternalError) as exc:
        request(services)
    assert exc.value.message == "Failed to send verification code. Please try again later."
    assert services.secrets.get_otp(carol.id) is not None
