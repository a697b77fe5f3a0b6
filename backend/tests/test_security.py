"""Authentication and webhook signature tests"""
import pytest
from unittest.mock import patch

from paygate.core.security import compute_webhook_signature, verify_webhook_signature


@pytest.mark.critical
class TestWebhookSignature:
    def test_valid_signature(self):
        body = b'{"payment_id": "pay_1"}'
        assert verify_webhook_signature(body, compute_webhook_signature(body, "secret"), "secret") is True

    def test_uppercase_hex_accepted(self):
        body = b'{"payment_id": "pay_1"}'
        signature = compute_webhook_signature(body, "secret").upper()
        assert verify_webhook_signature(body, signature, "secret") is True

    def test_modified_body_rejected(self):
        signature = compute_webhook_signature(b'{"amount": 1}', "secret")
        assert verify_webhook_signature(b'{"amount": 100}', signature, "secret") is False

    def test_missing_header_rejected(self):
        assert verify_webhook_signature(b"{}", None, "secret") is False

    def test_no_secret_in_production(self):
        with patch("paygate.core.security.settings") as mock_settings:
            mock_settings.FANBASES_WEBHOOK_SECRET = ""
            mock_settings.ENVIRONMENT = "production"
            assert verify_webhook_signature(b"{}", None) is False

    def test_no_secret_in_development(self):
        with patch("paygate.core.security.settings") as mock_settings:
            mock_settings.FANBASES_WEBHOOK_SECRET = ""
            mock_settings.ENVIRONMENT = "development"
            assert verify_webhook_signature(b"{}", None) is True


@pytest.mark.critical
class TestRequireAuth:
    def test_no_session(self, client):
        assert client.get("/api/credits/balance").status_code == 401

    def test_expired_session(self, client, test_user):
        client.cookies.set("session_id", "unknown-session")
        assert client.get("/api/credits/balance").status_code == 401

    def test_bearer_session(self, client, test_user, mock_redis):
        mock_redis.set("session:bearer-session", test_user.id)
        response = client.get("/api/credits/balance", headers={"Authorization": "Bearer bearer-session"})

        assert response.status_code == 200
        assert response.json()["subscription_tier"] == "free"
