"""Unit tests for authentication functions."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException
from jose import jwt

from common.auth import (
    authenticate_user,
    create_access_token,
    create_access_token_with_expiry,
    decode_token,
    get_password_hash,
    issue_user_token,
    verify_password,
)
from common.config import get_settings
from common.dependencies import has_any_role
from common.models import Role, RoleEnum, User

settings = get_settings()


def make_user(role: RoleEnum = RoleEnum.CUSTOMER, password: str = "Passw0rd!") -> User:
    return User(
        id=1,
        name="Test User",
        email="test@example.com",
        phone="+1-555-0100",
        hashed_password=get_password_hash(password),
        role=Role(name=role),
    )


class TestPasswordHashing:
    """Test password hashing and verification."""

    def test_password_hash_and_verify(self):
        """Test that a password can be hashed and verified."""
        password = "MySecurePassword123!"
        hashed = get_password_hash(password)

        assert hashed != password
        assert verify_password(password, hashed) is True
        assert verify_password("WrongPassword", hashed) is False

    def test_same_password_different_hashes(self):
        """The same password hashes differently thanks to the salt."""
        password = "TestPassword123"
        hash1 = get_password_hash(password)
        hash2 = get_password_hash(password)

        assert hash1 != hash2
        assert verify_password(password, hash1) is True
        assert verify_password(password, hash2) is True


class TestJWTTokens:
    """Test JWT token creation and decoding."""

    def test_create_access_token(self):
        """Test JWT creation with subject, role and expiry claims."""
        token = create_access_token({"sub": "test@example.com", "role": "admin"})

        decoded = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        assert decoded["sub"] == "test@example.com"
        assert decoded["role"] == "admin"
        assert "exp" in decoded

    def test_expiry_is_returned_with_token(self):
        """Test that the returned expiry matches the token's exp claim."""
        before = datetime.now(timezone.utc)
        token, expires_at = create_access_token_with_expiry({"sub": "x"}, timedelta(minutes=30))

        assert timedelta(minutes=29) < expires_at - before <= timedelta(minutes=30, seconds=5)
        assert decode_token(token)["exp"] == int(expires_at.timestamp())

    def test_default_expiry_uses_settings(self):
        """Test that tokens default to the configured lifetime."""
        before = datetime.now(timezone.utc)
        _, expires_at = create_access_token_with_expiry({"sub": "x"})

        expected = timedelta(minutes=settings.access_token_expire_minutes)
        assert expected - timedelta(seconds=5) < expires_at - before <= expected + timedelta(seconds=5)

    def test_user_token_carries_email_and_role(self):
        """Test that user tokens carry the email as subject and the role name."""
        token, _ = issue_user_token(make_user(RoleEnum.EMPLOYEE))

        decoded = decode_token(token)
        assert decoded["sub"] == "test@example.com"
        assert decoded["role"] == "employee"

    def test_decode_token_invalid(self):
        """Test that decoding a malformed token raises 401."""
        with pytest.raises(HTTPException) as exc_info:
            decode_token("invalid.token.here")

        assert exc_info.value.status_code == 401
        assert "Invalid token" in str(exc_info.value.detail)

    def test_decode_token_expired(self):
        """Test that decoding an expired token raises 401."""
        token = create_access_token({"sub": "test@example.com"}, timedelta(hours=-1))

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)

        assert exc_info.value.status_code == 401


class TestUserAuthentication:
    """Test user authentication logic."""

    def test_authenticate_user_success(self):
        """Test successful authentication by email."""
        mock_db = MagicMock()
        mock_db.query.return_value.filter.return_value.first.return_value = make_user()

        result = authenticate_user(mock_db, "test@example.com", "Passw0rd!")

        assert result is not None
        assert result.email == "test@example.com"

    def test_authenticate_user_wrong_password(self):
        """Test that authentication fails with a wrong password."""
        mock_db = MagicMock()
        mock_db.query.return_value.filter.return_value.first.return_value = make_user()

        assert authenticate_user(mock_db, "test@example.com", "WrongPassword") is None

    def test_authenticate_user_not_found(self):
        """Test that authentication fails for an unknown email."""
        mock_db = MagicMock()
        mock_db.query.return_value.filter.return_value.first.return_value = None

        assert authenticate_user(mock_db, "nobody@example.com", "anything") is None


class TestRoleChecks:
    def test_has_any_role(self):
        """Test role membership checks."""
        admin = make_user(RoleEnum.ADMIN)

        assert has_any_role(admin, {RoleEnum.ADMIN}) is True
        assert has_any_role(admin, [RoleEnum.EMPLOYEE, RoleEnum.ADMIN]) is True
        assert has_any_role(admin, {RoleEnum.CUSTOMER}) is False
        assert has_any_role(admin, []) is False
