"""
Integration tests for the SMS webhook endpoint.
"""

import pytest
from unittest.mock import AsyncMock, patch, MagicMock
from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from checkin.main import app


class TestSmsWebhook:
    """Tests for the SMS webhook endpoint."""

    @pytest.fixture
    def client(self):
        """Create a test client."""
        return TestClient(app)

    @pytest.fixture
    def valid_webhook_data(self):
        """Valid webhook form data."""
        return {
            "Body": "Done!",
            "From": "+15551230001",
            "MessageSid": "SM123456789abcdef",
            "NumMedia": "0",
        }

    @pytest.fixture
    def mock_service(self):
        with patch("checkin.api.sms_webhook.ResponseService") as service_cls:
            instance = MagicMock()
            instance.handle_inbound = AsyncMock()
            service_cls.return_value = instance
            yield instance

    def test_health_check(self, client):
        """Test health check endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["name"] == "Check-in Reminders"

    @patch("checkin.api.sms_webhook.is_message_processed", new_callable=AsyncMock)
    @patch("checkin.api.sms_webhook.mark_message_processed", new_callable=AsyncMock)
    def test_webhook_processes_text_message(
        self,
        mock_mark,
        mock_is_processed,
        client,
        valid_webhook_data,
        mock_service
    ):
        """Test that webhook hands a text reply to the response service."""
        mock_is_processed.return_value = False
        mock_mark.return_value = True

        response = client.post("/webhook/sms", data=valid_webhook_data)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/xml")
        assert "<Response></Response>" in response.text
        mock_mark.assert_called_once_with("SM123456789abcdef")

        message = mock_service.handle_inbound.call_args.args[0]
        assert message.sender_address == "+15551230001"
        assert message.body == "Done!"
        assert message.attachment_refs == []
        assert message.carrier_message_id == "SM123456789abcdef"

    @patch("checkin.api.sms_webhook.is_message_processed", new_callable=AsyncMock)
    @patch("checkin.api.sms_webhook.mark_message_processed", new_callable=AsyncMock)
    def test_webhook_collects_media(self, mock_mark, mock_is_processed, client, mock_service):
        """Test that every media URL is passed on as an attachment."""
        mock_is_processed.return_value = False
        mock_mark.return_value = True

        data = {
            "Body": "",
            "From": "+15551230001",
            "MessageSid": "SMmedia",
            "NumMedia": "2",
            "MediaUrl0": "https://api.twilio.com/media/0",
            "MediaContentType0": "image/jpeg",
            "MediaUrl1": "https://api.twilio.com/media/1",
        }

        response = client.post("/webhook/sms", data=data)

        message = mock_service.handle_inbound.call_args.args[0]
        assert response.status_code == 200
        assert message.attachment_refs == [
            "https://api.twilio.com/media/0",
            "https://api.twilio.com/media/1",
        ]

    @patch("checkin.api.sms_webhook.is_message_processed", new_callable=AsyncMock)
    def test_webhook_skips_duplicate_message(
        self,
        mock_is_processed,
        client,
        valid_webhook_data,
        mock_service
    ):
        """Test that webhook skips already processed messages."""
        mock_is_processed.return_value = True

        response = client.post("/webhook/sms", data=valid_webhook_data)

        assert response.status_code == 200
        mock_service.handle_inbound.assert_not_called()

    @patch("checkin.api.sms_webhook.is_message_processed", new_callable=AsyncMock)
    @patch("checkin.api.sms_webhook.mark_message_processed", new_callable=AsyncMock)
    def test_webhook_skips_concurrent_duplicate(
        self,
        mock_mark,
        mock_is_processed,
        client,
        valid_webhook_data,
        mock_service
    ):
        """Test that losing the processed-message insert skips the message."""
        mock_is_processed.return_value = False
        mock_mark.return_value = False

        response = client.post("/webhook/sms", data=valid_webhook_data)

        assert response.status_code == 200
        mock_service.handle_inbound.assert_not_called()

    def test_webhook_rejects_non_e164_sender(self, client, valid_webhook_data, mock_service):
        """Test that a malformed sender address is rejected."""
        valid_webhook_data["From"] = "whatsapp:+15551230001"

        response = client.post("/webhook/sms", data=valid_webhook_data)

        assert response.status_code == 400
        mock_service.handle_inbound.assert_not_called()

    @patch("checkin.api.sms_webhook.is_message_processed", new_callable=AsyncMock)
    @patch("checkin.api.sms_webhook.mark_message_processed", new_callable=AsyncMock)
    def test_webhook_survives_service_error(
        self,
        mock_mark,
        mock_is_processed,
        client,
        valid_webhook_data,
        mock_service
    ):
        """Test that a processing error still acknowledges the webhook."""
        mock_is_processed.return_value = False
        mock_mark.return_value = True
        mock_service.handle_inbound.side_effect = RuntimeError("database down")

        response = client.post("/webhook/sms", data=valid_webhook_data)

        assert response.status_code == 200


class TestSignatureValidation:
    """Tests for Twilio signature checks."""

    @pytest.fixture
    def client(self):
        return TestClient(app)

    @pytest.fixture
    def signing_settings(self):
        mock = MagicMock()
        mock.validate_twilio_signature = True
        mock.twilio_auth_token = "test_token"
        with patch("checkin.api.sms_webhook.settings", mock):
            yield mock

    def test_missing_signature_rejected(self, client, signing_settings):
        data = {"Body": "Done", "From": "+15551230001", "MessageSid": "SMsig1", "NumMedia": "0"}

        response = client.post("/webhook/sms", data=data)

        assert response.status_code == 403

    @patch("checkin.api.sms_webhook.is_message_processed", new_callable=AsyncMock)
    @patch("checkin.api.sms_webhook.mark_message_processed", new_callable=AsyncMock)
    def test_valid_signature_accepted(self, mock_mark, mock_is_processed, client, signing_settings):
        mock_is_processed.return_value = False
        mock_mark.return_value = True
        data = {"Body": "Done", "From": "+15551230001", "MessageSid": "SMsig2", "NumMedia": "0"}
        url = "http://testserver/webhook/sms"
        signature = RequestValidator("test_token").compute_signature(url, data)

        with patch("checkin.api.sms_webhook.ResponseService") as service_cls:
            service_cls.return_value.handle_inbound = AsyncMock()
            response = client.post("/webhook/sms", data=data, headers={"X-Twilio-Signature": signature})

        assert response.status_code == 200


class TestProcessedMessageDeduplication:
    """Tests for message deduplication using SQLite."""

    @pytest.mark.asyncio
    async def test_is_message_processed_returns_false_for_new(self, session_factory):
        """Test that new messages are not marked as processed."""
        from checkin.api.sms_webhook import is_message_processed

        with patch("checkin.api.sms_webhook.async_session_factory", session_factory):
            assert await is_message_processed("NEW_MESSAGE_SID") is False

    @pytest.mark.asyncio
    async def test_mark_and_check_processed(self, session_factory):
        """Test marking a message as processed and checking it."""
        from checkin.api.sms_webhook import mark_message_processed, is_message_processed

        with patch("checkin.api.sms_webhook.async_session_factory", session_factory):
            assert await mark_message_processed("TEST_SID_123") is True
            assert await mark_message_processed("TEST_SID_123") is False
            assert await is_message_processed("TEST_SID_123") is True

    @pytest.mark.asyncio
    async def test_cleanup_removes_old_records(self, session_factory, test_session):
        """Test that old processed messages are trimmed."""
        from datetime import datetime, timedelta
        from checkin.api.sms_webhook import cleanup_old_processed_messages
        from checkin.domain.processed_message import ProcessedMessage

        test_session.add(ProcessedMessage(
            message_sid="OLD_SID",
            processed_at=datetime.utcnow() - timedelta(days=30)
        ))
        await test_session.commit()

        with patch("checkin.api.sms_webhook.async_session_factory", session_factory):
            removed = await cleanup_old_processed_messages(days=7)

        assert removed == 1
