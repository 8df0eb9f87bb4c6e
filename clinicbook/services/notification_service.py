# clinicbook/services/notification_service.py
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from .. import models
from ..config import Settings, get_settings
from ..database import get_db
from ..errors import ExternalServiceError
from ..models import MessageKind, MessageStatus, NotificationChannel
from . import clock

logger = logging.getLogger(__name__)

TWILIO_STATUS_MAP = {
    "accepted": MessageStatus.PENDING,
    "queued": MessageStatus.PENDING,
    "sending": MessageStatus.PENDING,
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.DELIVERED,
    "failed": MessageStatus.FAILED,
    "undelivered": MessageStatus.UNDELIVERED,
}


@dataclass
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class NotificationService:
    """SMS / WhatsApp delivery over Twilio. Every attempt is written to communication_logs.

    Log rows are added to the caller's session and commit with it.
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None, client: Optional[Client] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.client = client
        if self.client is None and self.settings.twilio_enabled:
            self.client = Client(self.settings.twilio_account_sid, self.settings.twilio_auth_token)

    def _sender_for(self, channel: NotificationChannel) -> Optional[str]:
        if channel == NotificationChannel.WHATSAPP:
            sender = self.settings.twilio_whatsapp_from
            if sender and not sender.startswith("whatsapp:"):
                sender = f"whatsapp:{sender}"
            return sender
        return self.settings.twilio_sms_from

    async def _send_one(self, to: str, body: str, channel: NotificationChannel) -> SendResult:
        """Send over one channel. Provider failures raise ExternalServiceError."""
        sender = self._sender_for(channel)
        if self.client is None or not sender:
            if self.settings.is_production:
                raise ExternalServiceError(f"Twilio {channel.value} not configured", {"channel": channel.value})
            sim_id = f"sim_{uuid.uuid4().hex[:16]}"
            logger.info("SIMULATED %s to %s: %s", channel.value, to, body)
            return SendResult(True, provider_message_id=sim_id)

        kwargs = {
            "from_": sender,
            "to": f"whatsapp:{to}" if channel == NotificationChannel.WHATSAPP else to,
            "body": body,
        }
        if self.settings.twilio_status_callback_url:
            kwargs["status_callback"] = self.settings.twilio_status_callback_url

        try:
            message = await asyncio.to_thread(self.client.messages.create, **kwargs)
        except TwilioRestException as e:
            raise ExternalServiceError(
                f"Twilio error {e.code}: {e.msg}", {"channel": channel.value, "provider_code": e.code}
            ) from e
        return SendResult(True, provider_message_id=message.sid)

    def _log(
        self,
        to: str,
        body: str,
        kind: MessageKind,
        channel: NotificationChannel,
        result: SendResult,
        patient_id: Optional[int],
        appointment_id: Optional[int],
    ) -> None:
        now = clock.utcnow()
        self.db.add(models.CommunicationLog(
            patient_id=patient_id,
            appointment_id=appointment_id,
            channel=channel,
            kind=kind,
            to_address=to,
            content=body,
            channel_message_id=result.provider_message_id,
            status=MessageStatus.SENT if result.success else MessageStatus.FAILED,
            error_message=result.error,
            sent_at=now,
            failed_at=None if result.success else now,
        ))

    async def send(
        self,
        to: str,
        body: str,
        kind: MessageKind,
        channel: NotificationChannel = NotificationChannel.SMS,
        patient_id: Optional[int] = None,
        appointment_id: Optional[int] = None,
    ) -> SendResult:
        """Deliver one message. BOTH tries SMS and WhatsApp and succeeds if either does."""
        channels = (
            [NotificationChannel.SMS, NotificationChannel.WHATSAPP]
            if channel == NotificationChannel.BOTH else [channel]
        )
        results = []
        for ch in channels:
            try:
                result = await self._send_one(to, body, ch)
            except ExternalServiceError as e:
                logger.error("%s send to %s failed: %s", ch.value, to, e.message)
                result = SendResult(False, error=e.message)
            self._log(to, body, kind, ch, result, patient_id, appointment_id)
            results.append(result)

        for result in results:
            if result.success:
                return result
        return SendResult(False, error="; ".join(r.error or "unknown error" for r in results))


async def notify_patient(
    transport, patient: models.Patient, body: str, kind: MessageKind, appointment_id: Optional[int] = None
) -> SendResult:
    """Send over the patient's preferred channel."""
    return await transport.send(
        patient.phone_number,
        body,
        kind,
        channel=patient.preferred_channel or NotificationChannel.SMS,
        patient_id=patient.id,
        appointment_id=appointment_id,
    )


def update_delivery_status(
    db: Session,
    provider_message_id: str,
    provider_status: str,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> bool:
    """Apply a provider delivery callback to the matching log row. Appointment state is never touched."""
    log = db.query(models.CommunicationLog).filter(
        models.CommunicationLog.channel_message_id == provider_message_id
    ).first()
    if log is None:
        logger.warning("Delivery callback for unknown message %s", provider_message_id)
        return False

    status = TWILIO_STATUS_MAP.get((provider_status or "").lower())
    if status is None:
        logger.info("Ignoring unknown delivery status %r for %s", provider_status, provider_message_id)
        return True

    log.status = status
    now = clock.utcnow()
    if status == MessageStatus.DELIVERED:
        log.delivered_at = now
    elif status in (MessageStatus.FAILED, MessageStatus.UNDELIVERED):
        log.failed_at = now
        log.error_message = f"{error_code}: {error_message}" if error_code else error_message
    db.commit()
    logger.info("Message %s marked %s", provider_message_id, status.value)
    return True


def get_transport(db: Session = Depends(get_db)) -> NotificationService:
    """FastAPI dependency: a transport bound to the request's session."""
    return NotificationService(db)
