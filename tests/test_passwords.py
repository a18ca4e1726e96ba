"""Unit tests for auth/passwords.py -- PasswordHasher and PasswordService.

Covers:
- register hashes the password and refuses a taken email
- login issues a token pair; every failure gets the same message
- unknown and passwordless accounts still cost one bcrypt comparison
- reset: request -> email -> reset changes the password, once
- reset tokens expire, supersede each other, and vanish on a failed send
- the change notice is sent, and its failure does not undo the reset
"""

import asyncio

import pytest

from auth.errors import BadRequestError, InternalError, RateLimitedError, UnauthorizedError, ValidationError
from auth.passwords import (
    INVALID_CREDENTIALS_MESSAGE,
    INVALID_RESET_MESSAGE,
    RESET_REQUEST_MESSAGE,
    RESET_SUCCESS_MESSAGE,
    PasswordHasher,
    check_password_policy,
)
from tests.support import create_account

EMAIL = "erin@example.com"
PASSWORD = "correct horse"
NEW_PASSWORD = "battery staple"


@pytest.fixture
def erin(services):
    return services.passwords.register(EMAIL, PASSWORD, first_name="Erin")


def forgot(services, email=EMAIL):
    return asyncio.run(services.passwords.request_password_reset(email))


def reset(services, token, password=NEW_PASSWORD):
    return asyncio.run(services.passwords.reset_password(token, password))


# ---------------------------------------------------------------------------
# Hashing and policy
# ---------------------------------------------------------------------------


class TestPasswordHasher:
    def test_hash_verifies_and_is_salted(self) -> None:
        hasher = PasswordHasher(rounds=4)
        first = hasher.hash("s3cret!")
        assert first != "s3cret!"
        assert first != hasher.hash("s3cret!")
        assert hasher.verify("s3cret!", first)
        assert not hasher.verify("s3cret?", first)

    def test_malformed_hash_never_matches(self) -> None:
        assert PasswordHasher(rounds=4).verify("anything", "not-a-bcrypt-hash") is False

    def test_rounds_are_encoded_in_hash(self) -> None:
        assert PasswordHasher(rounds=5).hash("s3cret!").startswith("$2b$05$")


@pytest.mark.parametrize(
    "password,message",
    [
        (None, "Password is required"),
        ("", "Password is required"),
        ("12345", "Password must be at least 6 characters"),
        ("x" * 73, "Password must be at most 72 bytes"),
        ("é" * 37, "Password must be at most 72 bytes"),
    ],
)
def test_password_policy_rejects(password, message):
    with pytest.raises(ValidationError) as exc:
        check_password_policy(password, 6)
    assert exc.value.message == message


def test_password_policy_accepts_boundaries():
    assert check_password_policy("123456", 6) == "123456"
    assert check_password_policy("x" * 72, 6) == "x" * 72


# ---------------------------------------------------------------------------
# Register
# ---------------------------------------------------------------------------


def test_register_creates_password_account(services, erin):
    assert erin.email == EMAIL
    assert erin.roles == ["user"]
    assert erin.first_name == "Erin"
    assert erin.email_verified is False
    assert erin.hashed_password.startswith("$2b$04$")
    assert PASSWORD not in erin.hashed_password


def test_register_normalizes_email(services):
    user = services.passwords.register("  Frank@Example.COM ", PASSWORD)
    assert user.email == "frank@example.com"


def test_register_duplicate_email(services, erin):
    with pytest.raises(BadRequestError) as exc:
        services.passwords.register(EMAIL.upper(), "another password")
    assert exc.value.message == "Email already in use"
    assert exc.value.code == "email_in_use"


@pytest.mark.parametrize(
    "email,password,message",
    [
        (None, PASSWORD, "Email is required"),
        ("nope", PASSWORD, "Please provide a valid email address"),
        (EMAIL, "short", "Password must be at least 6 characters"),
    ],
)
def test_register_validation(services, email, password, message):
    with pytest.raises(ValidationError) as exc:
        services.passwords.register(email, password)
    assert exc.value.message == message
    assert services.accounts.get_by_email(EMAIL) is None


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def test_login_issues_tokens(services, erin):
    result = services.passwords.login(" ERIN@example.com", PASSWORD)
    assert result.user.id == erin.id
    claims = services.codec.verify_access_token(result.access_token)
    assert claims["sub"] == str(erin.id)
    assert claims["email"] == EMAIL
    assert services.codec.verify_refresh_token(result.refresh_token)["sub"] == str(erin.id)
    assert services.accounts.get_by_id(erin.id).last_login is not None


def test_wrong_password(services, erin):
    with pytest.raises(UnauthorizedError) as exc:
        services.passwords.login(EMAIL, "wrong password")
    assert exc.value.message == INVALID_CREDENTIALS_MESSAGE
    assert services.accounts.get_by_id(erin.id).last_login is None


def test_unknown_and_passwordless_accounts_get_same_message(services, erin):
    create_account(services.accounts, "magic@example.com")
    messages = set()
    for email in ("ghost@example.com", "magic@example.com"):
        with pytest.raises(UnauthorizedError) as exc:
            services.passwords.login(email, PASSWORD)
        messages.add(exc.value.message)
    assert messages == {INVALID_CREDENTIALS_MESSAGE}


def test_unknown_account_still_runs_one_comparison(services, monkeypatch):
    calls = []
    original = PasswordHasher.verify

    def counting(self, plain, hashed):
        calls.append(plain)
        return original(self, plain, hashed)

    monkeypatch.setattr(PasswordHasher, "verify", counting)
    with pytest.raises(UnauthorizedError):
        services.passwords.login("ghost@example.com", PASSWORD)
    assert calls == [PASSWORD]


def test_inactive_account_gets_generic_message(services, erin):
    services.accounts.update_user(erin.id, is_active=False)
    with pytest.raises(UnauthorizedError) as exc:
        services.passwords.login(EMAIL, PASSWORD)
    assert exc.value.message == INVALID_CREDENTIALS_MESSAGE


@pytest.mark.parametrize("email,password", [(None, PASSWORD), (EMAIL, None), ("", "")])
def test_login_validation(services, email, password):
    with pytest.raises(ValidationError) as exc:
        services.passwords.login(email, password)
    assert exc.value.message == "Email and password are required"


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------


def test_reset_flow_changes_password_once(services, erin):
    assert forgot(services) == {"success": True, "message": RESET_REQUEST_MESSAGE}
    message = services.mailer.sent[-1]
    assert message.to == EMAIL
    assert message.subject == "Portcullis - Password Reset Request"
    assert "http://localhost:3000/auth/reset-password?token=" in message.html_body
    assert "expires in 60 minutes" in message.html_body
    token = services.mailer.last_token()

    (record,) = services.secrets.list_password_resets(erin.id)
    assert record.token_hash != token
    assert record.used is False

    assert reset(services, token) == {"success": True, "message": RESET_SUCCESS_MESSAGE}
    notice = services.mailer.sent[-1]
    assert notice.subject == "Portcullis - Password Changed"
    assert "http://localhost:3000/auth/login" in notice.html_body

    assert services.passwords.login(EMAIL, NEW_PASSWORD).user.id == erin.id
    with pytest.raises(UnauthorizedError):
        services.passwords.login(EMAIL, PASSWORD)

    with pytest.raises(UnauthorizedError) as exc:
        reset(services, token, "third password")
    assert exc.value.message == INVALID_RESET_MESSAGE
    assert services.secrets.list_password_resets(erin.id)[0].used is True


def test_unknown_and_passwordless_emails_get_generic_response(services, erin):
    create_account(services.accounts, "magic@example.com")
    assert forgot(services, "ghost@example.com") == forgot(services, "magic@example.com") == forgot(services)
    assert [m.to for m in services.mailer.sent] == [EMAIL]


def test_inactive_account_gets_no_reset_email(services, erin):
    services.accounts.update_user(erin.id, is_active=False)
    assert forgot(services)["message"] == RESET_REQUEST_MESSAGE
    assert services.mailer.sent == []
    assert services.secrets.list_password_resets(erin.id) == []


def test_token_expires_after_ttl(services, erin):
    forgot(services)
    token = services.mailer.last_token()
    services.clock.advance(minutes=60)
    with pytest.raises(UnauthorizedError) as exc:
        reset(services, token)
    assert exc.value.message == INVALID_RESET_MESSAGE


def test_token_valid_just_before_expiry(services, erin):
    forgot(services)
    services.clock.advance(minutes=59, seconds=59)
    assert reset(services, services.mailer.last_token())["success"] is True


def test_new_request_supersedes_old_token(services, erin):
    forgot(services)
    old = services.mailer.last_token()
    forgot(services)
    new = services.mailer.last_token()
    assert len(services.secrets.list_password_resets(erin.id)) == 1
    with pytest.raises(UnauthorizedError):
        reset(services, old)
    assert reset(services, new)["success"] is True


def test_weak_new_password_keeps_token_usable(services, erin):
    forgot(services)
    token = services.mailer.last_token()
    with pytest.raises(ValidationError):
        reset(services, token, "short")
    assert reset(services, token)["success"] is True


@pytest.mark.parametrize("token", [None, "", "   "])
def test_reset_requires_token(services, token):
    with pytest.raises(ValidationError) as exc:
        reset(services, token)
    assert exc.value.message == "Reset token is required"


def test_unknown_token_rejected(services, erin):
    with pytest.raises(UnauthorizedError) as exc:
        reset(services, "0" * 64)
    assert exc.value.message == INVALID_RESET_MESSAGE


def test_failed_send_removes_token(services, erin):
    services.mailer.fail = True
    with pytest.raises(InternalError) as exc:
        forgot(services)
    assert exc.value.message == "Failed to send password reset email. Please try again later."
    assert services.secrets.list_password_resets(erin.id) == []


def test_failed_change_notice_keeps_new_password(services, erin):
    forgot(services)
    token = services.mailer.last_token()
    services.mailer.fail = True
    assert reset(services, token)["success"] is True
    assert services.passwords.login(EMAIL, NEW_PASSWORD).user.id == erin.id


def test_reset_requests_are_rate_limited(services, erin, fake_time):
    for _ in range(3):
        forgot(services)
    with pytest.raises(RateLimitedError) as exc:
        forgot(services)
    assert exc.value.message == "Too many requests. Please try again in 15 minutes."
    assert exc.value.retry_after == 900
    assert len(services.mailer.sent) == 3


def test_cleanup_removes_used_and_expired_tokens(services, erin):
    other = services.passwords.register("gina@example.com", PASSWORD)
    forgot(services)
    reset(services, services.mailer.last_token())
    forgot(services, other.email)
    services.clock.advance(minutes=30)
    forgot(services)
    assert services.passwords.cleanup_expired_tokens() == 1

    services.clock.advance(minutes=30)
    assert services.passwords.cleanup_expired_tokens() == 1
    assert services.secrets.list_password_resets(other.id) == []
    assert len(services.secrets.list_password_resets(erin.id)) == 1
