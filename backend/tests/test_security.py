from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

from billing_core.core.config import SecurityConfig
from billing_core.core.exceptions import AuthenticationError, ConfigurationError
from billing_core.core.security import ReceiptCipher, TokenVerifier

from helpers import JWT_SECRET, access_token


class TestReceiptCipher:
    def test_round_trip(self):
        cipher = ReceiptCipher(Fernet.generate_key().decode())
        stored = cipher.encrypt("pro_monthly:token")

        assert cipher.enabled is True
        assert "token" not in stored
        assert cipher.decrypt(stored) == "pro_monthly:token"

    def test_without_key_stores_tagged_plaintext(self):
        cipher = ReceiptCipher()
        stored = cipher.encrypt("pro_monthly:token")

        assert cipher.enabled is False
        assert stored == "plain:pro_monthly:token"
        assert cipher.decrypt(stored) == "pro_monthly:token"

    def test_plaintext_readable_after_key_is_added(self):
        stored = ReceiptCipher().encrypt("pro_monthly:token")
        assert ReceiptCipher(Fernet.generate_key().decode()).decrypt(stored) == "pro_monthly:token"

    def test_invalid_key(self):
        with pytest.raises(ConfigurationError):
            ReceiptCipher("not-a-fernet-key")

    def test_encrypted_value_needs_key(self):
        stored = ReceiptCipher(Fernet.generate_key().decode()).encrypt("pro_monthly:token")
        with pytest.raises(ConfigurationError):
            ReceiptCipher().decrypt(stored)

    def test_wrong_key(self):
        stored = ReceiptCipher(Fernet.generate_key().decode()).encrypt("pro_monthly:token")
        with pytest.raises(ConfigurationError):
            ReceiptCipher(Fernet.generate_key().decode()).decrypt(stored)


class TestTokenVerifier:
    @pytest.fixture
    def verifier(self) -> TokenVerifier:
        return TokenVerifier(SecurityConfig(secret_key=JWT_SECRET))

    def test_subject_is_user_id(self, verifier):
        assert verifier.user_id_from_token(access_token("user-42")) == "user-42"

    def test_expired(self, verifier):
        expired = datetime.now(timezone.utc) - timedelta(minutes=1)
        with pytest.raises(AuthenticationError) as exc_info:
            verifier.verify_token(access_token(exp=expired))
        assert exc_info.value.details["error"] == "token_expired"
        assert exc_info.value.status_code == 401

    def test_wrong_secret(self, verifier):
        token = access_token(secret="another-secret-that-is-also-long-enough")
        with pytest.raises(AuthenticationError) as exc_info:
            verifier.verify_token(token)
        assert exc_info.value.details["error"] == "invalid_token"

    def test_garbage(self, verifier):
        with pytest.raises(AuthenticationError):
            verifier.verify_token("not.a.jwt")

    def test_missing_subject(self, verifier):
        with pytest.raises(AuthenticationError):
            verifier.user_id_from_token(access_token(user_id=""))

    def test_unconfigured_secret_rejects_everything(self):
        with pytest.raises(AuthenticationError):
            TokenVerifier(SecurityConfig(secret_key=None)).verify_token(access_token())

    def test_short_secret_is_refused(self):
        with pytest.raises(ValueError):
            SecurityConfig(secret_key="short")
