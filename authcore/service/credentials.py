from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional, Protocol

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authcore.logging import get_logger
from authcore.service.errors import AccountInactiveError, InvalidCredentialsError
from authcore.storage.models import User

logger = get_logger(__name__)

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...


@dataclass
class VerifiedIdentity:
    user_id: str
    role: str
    email: str


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialVerifier:
    """Checks an email/password pair against the stored password hash.

    New hashes are argon2id. Hashes written by the previous bcrypt-based
    deployment still verify, and are replaced with argon2id on the first
    successful login.
    """

    def __init__(self, store: CredentialStore, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against for unknown emails so both failure paths do the same work
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _matches(self, stored_hash: str, password: str) -> bool:
        if stored_hash.startswith(_BCRYPT_PREFIXES):
            try:
                return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
            except ValueError:
                return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _needs_rehash(self, stored_hash: str) -> bool:
        if stored_hash.startswith(_BCRYPT_PREFIXES):
            return True
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return False

    def verify(self, email: str, password: str) -> VerifiedIdentity:
        """Return the identity for valid credentials.

        Raises ``InvalidCredentialsError`` for an unknown email or a wrong
        password, and ``AccountInactiveError`` when the password matched a
        deactivated account.
        """
        user = self.store.get_user_by_email(normalize_email(email))
        if not user or not user.password_hash:
            self._matches(self._dummy_hash, password or "")
            raise InvalidCredentialsError(reason="unknown_email")
        if not self._matches(user.password_hash, password or ""):
            raise InvalidCredentialsError(reason="invalid_password")
        if not user.is_active:
            raise AccountInactiveError()
        if self._needs_rehash(user.password_hash):
            self._rehash(user, password)
        return VerifiedIdentity(user_id=user.id, role=user.role, email=user.email)

    def _rehash(self, user: User, password: str) -> None:
        try:
            self.store.update_password_hash(user.id, self.hash_password(password))
            self.logger.info("password_rehashed", user_id=user.id)
        except Exception as exc:
            self.logger.warning("password_rehash_failed", user_id=user.id, error=str(exc))
