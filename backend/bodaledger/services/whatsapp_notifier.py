"""WhatsApp notification service using Twilio REST API.

Sends settlement notices to partners and finance operators.  In
non-production environments the recipient is always overridden with the
configured sandbox phone number so real partners are never contacted during
development / testing.
"""

import logging
from typing import Any

import httpx

from bodaledger.config import settings
from bodaledger.models.settlement import PartnerSettlement, PartnerType
from bodaledger.money import format_amount

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = (
    "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
)

PARTNER_NAMES = {
    PartnerType.DEFINITE_ASSURANCE: "Definite Assurance",
    PartnerType.KBA: "Kenya Bodaboda Association",
    PartnerType.ROBS_INSURANCE: "Robs Insurance Agency",
    PartnerType.ATRONACH: "Atronach K Ltd",
}


async def send_whatsapp_message(to_phone: str, body: str) -> dict[str, Any]:
    """Send a WhatsApp message via Twilio.

    Returns the Twilio API response JSON on success, or ``{"error": "..."}``
    on failure.  This function never raises: notification failures must
    not break the calling flow.
    """
    sid = settings.twilio_account_sid
    token = settings.twilio_auth_token

    if not sid or not token:
        logger.warning("Twilio credentials not configured: skipping WhatsApp send")
        return {"error": "Twilio credentials not configured"}

    # In sandbox / development mode always send to the sandbox phone
    if settings.environment != "production":
        to_phone = settings.whatsapp_sandbox_phone

    if not to_phone:
        logger.warning("No recipient phone for WhatsApp message: skipping")
        return {"error": "No recipient phone"}

    if not to_phone.startswith("whatsapp:"):
        to_phone = f"whatsapp:{to_phone}"

    from_number = settings.twilio_whatsapp_number
    if not from_number.startswith("whatsapp:"):
        from_number = f"whatsapp:{from_number}"

    url = TWILIO_MESSAGES_URL.format(sid=sid)

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                url,
                data={"To": to_phone, "From": from_number, "Body": body},
                auth=(sid, token),
                timeout=15.0,
            )

        result = response.json()

        if response.status_code >= 400:
            logger.error(
                "Twilio API error %s: %s",
                response.status_code,
                result.get("message", result),
            )
            return {"error": result.get("message", str(result)), "status_code": response.status_code}

        logger.info("WhatsApp message sent: SID %s, to %s", result.get("sid"), to_phone)
        return result

    except (httpx.HTTPError, ValueError) as exc:
        logger.error("Failed to send WhatsApp message: %s", exc)
        return {"error": str(exc)}


def partner_contact_phone(partner: PartnerType) -> str:
    return {
        PartnerType.KBA: settings.kba_contact_phone,
        PartnerType.ROBS_INSURANCE: settings.robs_contact_phone,
        PartnerType.DEFINITE_ASSURANCE: settings.definite_contact_phone,
    }.get(partner, "")


# ===================================================================
# Settlement notifications
# ===================================================================

class WhatsAppSettlementNotifier:
    """Tells the partner and every finance operator about a settlement."""

    def __init__(self, send=None):
        self._send = send or send_whatsapp_message

    async def settlement_approved(self, settlement: PartnerSettlement) -> list[dict]:
        msg = (
            f"Settlement {settlement.settlement_number} for "
            f"{PARTNER_NAMES[settlement.partner_type]} has been approved: "
            f"{format_amount(settlement.total_amount, settings.currency_code)} "
            f"({settlement.settlement_type.value.replace('_', ' ')}, "
            f"{settlement.period_start:%d %b} - {settlement.period_end:%d %b %Y}). "
            f"Payment will follow shortly."
        )
        return await self._broadcast(settlement, msg)

    async def settlement_completed(self, settlement: PartnerSettlement) -> list[dict]:
        msg = (
            f"Settlement {settlement.settlement_number} of "
            f"{format_amount(settlement.total_amount, settings.currency_code)} to "
            f"{PARTNER_NAMES[settlement.partner_type]} has been paid "
            f"(bank ref: {settlement.bank_reference or 'n/a'}, "
            f"confirmation: {settlement.confirmation_reference or 'n/a'})."
        )
        return await self._broadcast(settlement, msg)

    async def _broadcast(self, settlement: PartnerSettlement, body: str) -> list[dict]:
        recipients = [partner_contact_phone(settlement.partner_type), *settings.operator_phone_list]
        results = []
        for phone in recipients:
            if not phone:
                continue
            results.append(await self._send(phone, body))
        failed = [r for r in results if "error" in r]
        if failed:
            logger.warning(
                "%d of %d notifications for %s failed",
                len(failed), len(results), settlement.settlement_number,
            )
        return results
