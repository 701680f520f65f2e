"""Password hashing and credential validation."""

import pytest

from warden.service.credentials import PASSWORD_ALGO, CredentialValidator
from warden.service.errors import AuthenticationError


@pytest.fixture
def validator(store):
    return CredentialValidator(store)


@pytest.fixture
def alice(store, validator):
    user = store.create_user("alice", email="Alice@Example.com")
    pwd_hash, algo = validator.hash_password("CorrectHorse42!")
    store.save_password(user.id, pwd_hash, algo)
    return user


class TestPasswordHashing:
    def test_hash_is_argon2id_and_salted(self, validator):
        first, algo = validator.hash_password("CorrectHorse42!")
        second, _ = validator.hash_password("CorrectHorse42!")
        assert algo == PASSWORD_ALGO
        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_password(self, validator, alice):
        assert validator.verify_password(alice.id, "CorrectHorse42!") is True
        assert validator.verify_password(alice.id, "wrong-password") is False

    def test_verify_without_record(self, validator, store):
        user = store.create_user("nopass", email="nopass@example.com")
        assert validator.verify_password(user.id, "anything") is False


class TestValidate:
    def test_login_by_email_is_case_insensitive(self, validator, alice):
        user = validator.validate("alice@example.com", "CorrectHorse42!")
        assert user.id == alice.id

    def test_login_by_username(self, validator, alice):
        assert validator.validate("alice", "CorrectHorse42!").id == alice.id

    def test_wrong_password(self, validator, alice):
        with pytest.raises(AuthenticationError) as exc_info:
            validator.validate("alice", "not-it")
        assert exc_info.value.message == "invalid credentials"

    def test_unknown_identifier_has_same_error(self, validator, alice):
        with pytest.raises(AuthenticationError) as exc_info:
            validator.validate("bob@example.com", "CorrectHorse42!")
        assert exc_info.value.message == "invalid credentials"

    def test_inactive_user_rejected(self, validator, store):
        user = store.create_user("dormant", email="dormant@example.com", is_active=False)
        pwd_hash, algo = validator.hash_password("CorrectHorse42!")
        store.save_password(user.id, pwd_hash, algo)
        with pytest.raises(AuthenticationError):
            validator.validate("dormant", "CorrectHorse42!")

    def test_empty_identifier(self, validator):
        with pytest.raises(AuthenticationError):
            validator.validate("", "whatever")
