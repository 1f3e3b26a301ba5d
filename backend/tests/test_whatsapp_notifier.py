"""Tests for the WhatsApp notification service (Twilio).

All Twilio calls are mocked; nothing leaves the process.
"""

from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from bodaledger.config import settings
from bodaledger.models.settlement import (
    PartnerSettlement,
    PartnerType,
    SettlementStatus,
    SettlementType,
)
from bodaledger.services.whatsapp_notifier import (
    WhatsAppSettlementNotifier,
    partner_contact_phone,
    send_whatsapp_message,
)


def _fake_twilio_response(status_code: int = 201, body: dict | None = None):
    """Return a mock httpx.Response that looks like a Twilio reply."""
    if body is None:
        body = {"sid": "SM00000000000000000000000000000000", "status": "queued"}
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    resp.json.return_value = body
    return resp


def _mock_client(post):
    client = AsyncMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    client.post = post
    return client


def _settlement(**overrides) -> PartnerSettlement:
    fields = dict(
        settlement_number="KBA-CM-20250131-001",
        partner_type=PartnerType.KBA,
        settlement_type=SettlementType.COMMISSION,
        status=SettlementStatus.APPROVED,
        total_amount=8_900,
        period_start=date(2025, 1, 1),
        period_end=date(2025, 1, 31),
        bank_reference="UBA-TRX-1",
        confirmation_reference="CONF-1",
    )
    fields.update(overrides)
    return PartnerSettlement(**fields)


# ===================================================================
# Sender
# ===================================================================


class TestSendWhatsAppMessage:

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        with patch.object(settings, "twilio_account_sid", ""), \
             patch.object(settings, "twilio_auth_token", "tok"):
            result = await send_whatsapp_message("+254700000001", "hi")
        assert "not configured" in result["error"]

    @pytest.mark.asyncio
    async def test_dev_mode_redirects_to_sandbox_phone(self):
        post = AsyncMock(return_value=_fake_twilio_response())
        with patch.object(settings, "twilio_account_sid", "ACtest"), \
             patch.object(settings, "twilio_auth_token", "tok"), \
             patch.object(settings, "environment", "development"), \
             patch.object(settings, "whatsapp_sandbox_phone", "+15551234567"), \
             patch("bodaledger.services.whatsapp_notifier.httpx.AsyncClient",
                   return_value=_mock_client(post)):
            result = await send_whatsapp_message("+254700000001", "test")

        assert result["sid"].startswith("SM")
        sent = post.call_args.kwargs["data"]
        assert sent["To"] == "whatsapp:+15551234567"
        assert sent["From"].startswith("whatsapp:")

    @pytest.mark.asyncio
    async def test_production_uses_real_phone(self):
        post = AsyncMock(return_value=_fake_twilio_response())
        with patch.object(settings, "twilio_account_sid", "ACtest"), \
             patch.object(settings, "twilio_auth_token", "tok"), \
             patch.object(settings, "environment", "production"), \
             patch("bodaledger.services.whatsapp_notifier.httpx.AsyncClient",
                   return_value=_mock_client(post)):
            await send_whatsapp_message("+254700000001", "test")
        assert post.call_args.kwargs["data"]["To"] == "whatsapp:+254700000001"

    @pytest.mark.asyncio
    async def test_api_error_is_returned_not_raised(self):
        post = AsyncMock(return_value=_fake_twilio_response(400, {"message": "Invalid To"}))
        with patch.object(settings, "twilio_account_sid", "ACtest"), \
             patch.object(settings, "twilio_auth_token", "tok"), \
             patch.object(settings, "environment", "production"), \
             patch("bodaledger.services.whatsapp_notifier.httpx.AsyncClient",
                   return_value=_mock_client(post)):
            result = await send_whatsapp_message("+254700000001", "test")
        assert result == {"error": "Invalid To", "status_code": 400}

    @pytest.mark.asyncio
    async def test_network_error_is_returned_not_raised(self):
        post = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        with patch.object(settings, "twilio_account_sid", "ACtest"), \
             patch.object(settings, "twilio_auth_token", "tok"), \
             patch.object(settings, "environment", "production"), \
             patch("bodaledger.services.whatsapp_notifier.httpx.AsyncClient",
                   return_value=_mock_client(post)):
            result = await send_whatsapp_message("+254700000001", "test")
        assert "connection refused" in result["error"]


# ===================================================================
# Settlement notifier
# ===================================================================


class TestSettlementNotifier:

    @pytest.mark.asyncio
    async def test_approved_goes_to_partner_and_operators(self):
        send = AsyncMock(return_value={"sid": "SM1"})
        with patch.object(settings, "kba_contact_phone", "+254700000001"), \
             patch.object(settings, "operator_phones", "+254700000009, +254700000010"):
            results = await WhatsAppSettlementNotifier(send).settlement_approved(_settlement())

        assert len(results) == 3
        phones = [c.args[0] for c in send.call_args_list]
        assert phones == ["+254700000001", "+254700000009", "+254700000010"]
        body = send.call_args_list[0].args[1]
        assert "KBA-CM-20250131-001" in body
        assert "KES 89.00" in body
        assert "Kenya Bodaboda Association" in body

    @pytest.mark.asyncio
    async def test_completed_mentions_references(self):
        send = AsyncMock(return_value={"sid": "SM1"})
        with patch.object(settings, "kba_contact_phone", "+254700000001"), \
             patch.object(settings, "operator_phones", ""):
            await WhatsAppSettlementNotifier(send).settlement_completed(
                _settlement(status=SettlementStatus.COMPLETED)
            )
        body = send.call_args.args[1]
        assert "UBA-TRX-1" in body
        assert "CONF-1" in body

    @pytest.mark.asyncio
    async def test_missing_contacts_are_skipped(self):
        send = AsyncMock(return_value={"error": "No recipient phone"})
        with patch.object(settings, "robs_contact_phone", ""), \
             patch.object(settings, "operator_phones", "+254700000009"):
            results = await WhatsAppSettlementNotifier(send).settlement_approved(
                _settlement(partner_type=PartnerType.ROBS_INSURANCE)
            )
        send.assert_awaited_once()
        assert results == [{"error": "No recipient phone"}]

    def test_platform_has_no_contact(self):
        assert partner_contact_phone(PartnerType.ATRONACH) == ""
