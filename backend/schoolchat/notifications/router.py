"""Notification delivery router.

Endpoints:
    POST /api/notifications/send - Push a notification to one user's sockets

Other services (announcements, calendar, grades) call this endpoint after
applying their own audience and preference rules. The notification is
delivered as the ``notification-<userId>`` realtime event.
"""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from schoolchat.realtime import events
from schoolchat.realtime.hub import hub

from .schemas import Notification, NotificationSend

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.post("/send")
async def send_notification(body: NotificationSend) -> JSONResponse:
    """Deliver a notification to every open connection of a user.

    Args:
        body: ``{userId, notification}``.

    Returns:
        ``{success, message}``; 400 when a field is missing or invalid.
    """
    if not body.userId or not body.notification:
        return JSONResponse(
            {"success": False, "message": "userId and notification are required"},
            status_code=400,
        )

    try:
        notification = Notification.model_validate(body.notification)
    except ValidationError as e:
        logger.warning("[notifications] Invalid notification for %s: %s", body.userId, e)
        return JSONResponse(
            {"success": False, "message": "Invalid notification payload"},
            status_code=400,
        )

    delivered = await hub.emit_to_user(
        body.userId,
        events.notification_event(body.userId),
        notification.model_dump(mode="json"),
    )
    logger.info(
        "[notifications] %s notification sent to user %s (%d connection(s))",
        notification.type, body.userId, delivered,
    )
    return JSONResponse({"success": True, "message": "Notification sent successfully"})
