# clinicbook/routers/webhooks.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session
from twilio.request_validator import RequestValidator

from ..config import get_settings
from ..database import get_db
from ..services import notification_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
)


@router.post("/twilio/status")
async def twilio_status_callback(request: Request, db: Session = Depends(get_db)):
    """Twilio delivery receipts for SMS and WhatsApp. Only the communication log is updated."""
    form = await request.form()
    params = {key: value for key, value in form.items()}

    settings = get_settings()
    if settings.twilio_auth_token:
        validator = RequestValidator(settings.twilio_auth_token)
        url = settings.twilio_status_callback_url or str(request.url)
        signature = request.headers.get("X-Twilio-Signature", "")
        if not validator.validate(url, params, signature):
            logger.warning("Rejected Twilio callback with invalid signature")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    message_sid = params.get("MessageSid") or params.get("SmsSid")
    message_status = params.get("MessageStatus") or params.get("SmsStatus")
    if not message_sid or not message_status:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="MessageSid and MessageStatus are required")

    notification_service.update_delivery_status(
        db,
        message_sid,
        message_status,
        error_code=params.get("ErrorCode"),
        error_message=params.get("ErrorMessage"),
    )
    # Twilio retries on non-2xx, so unknown messages still get 200
    return Response(status_code=status.HTTP_200_OK)
