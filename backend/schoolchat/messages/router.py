"""Message history REST API router.

Endpoints:
    GET /api/messages/group/{group_id}?page=&limit= - Paginated history
    GET /api/messages/group/{group_id}/recent       - Most recent page
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from schoolchat.groups.service import GroupError, GroupService
from schoolchat.identity import UserIdentity, get_current_user

from .schemas import RecentMessages
from .service import MessageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messages", tags=["messages"])


@router.get("/group/{group_id}")
async def get_group_messages(
    group_id: str,
    page: int = Query(1, ge=1, description="Page number, 1 = most recent"),
    limit: Optional[int] = Query(None, ge=1, description="Messages per page"),
    user: UserIdentity = Depends(get_current_user),
) -> JSONResponse:
    """Get one page of a group's message history.

    Page 1 holds the newest messages; higher pages go back in time. Messages
    inside a page are oldest first.

    Returns:
        JSON with ``messages`` and ``pagination`` (``hasNextPage`` etc.).

    Example:
        GET /api/messages/group/abc123?page=2&limit=20
    """
    try:
        GroupService.get_instance().require_member(group_id, user.userId)
    except GroupError as e:
        return JSONResponse({"error": str(e)}, status_code=e.status_code)

    result = MessageService.get_instance().get_page(group_id, page, limit)
    logger.debug(
        "[messages] group=%s page=%d -> %d message(s), hasNextPage=%s",
        group_id, page, len(result.messages), result.pagination.hasNextPage,
    )
    return JSONResponse(result.model_dump(mode="json"))


@router.get("/group/{group_id}/recent")
async def get_recent_messages(
    group_id: str, user: UserIdentity = Depends(get_current_user)
) -> JSONResponse:
    """Get the most recent messages of a group, oldest first."""
    try:
        GroupService.get_instance().require_member(group_id, user.userId)
    except GroupError as e:
        return JSONResponse({"error": str(e)}, status_code=e.status_code)

    messages = MessageService.get_instance().recent(group_id)
    body = RecentMessages(messages=messages, totalMessages=len(messages))
    return JSONResponse(body.model_dump(mode="json"))
