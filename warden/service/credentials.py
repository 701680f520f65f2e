from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger
from warden.service.errors import AuthenticationError
from warden.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class CredentialValidator:
    """Password hashing and identifier/password verification."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the identifier matches nobody so both paths
        # pay for one argon2 verification
        self._dummy_hash = self._pwd_hasher.hash("warden-dummy-password")

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _lookup(self, identifier: str) -> Optional[User]:
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        if "@" in identifier:
            user = self.store.get_user_by_email(identifier)
        else:
            user = self.store.get_user_by_username(identifier)
        if user and not user.is_active:
            return None
        return user

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            self._burn_dummy(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_dummy(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    def validate(self, identifier: str, password: str) -> User:
        """Resolve ``identifier`` to an active user and check ``password``.

        An identifier containing ``@`` is looked up as an email address,
        anything else as a username. Every failure raises the same
        :class:`AuthenticationError` so callers cannot tell which check failed.
        """
        user = self._lookup(identifier)
        if not user:
            self._burn_dummy(password or "")
            logger.info("credential_check_failed", reason="unknown_identifier")
            raise AuthenticationError("invalid credentials")
        if not self.verify_password(user.id, password or ""):
            logger.info("credential_check_failed", user_id=user.id, reason="mismatch")
            raise AuthenticationError("invalid credentials")
        return user
