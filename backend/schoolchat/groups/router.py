"""Groups REST API router.

Endpoints:
    GET    /api/groups                              - Groups of the caller
    POST   /api/groups                              - Create a group (teachers)
    POST   /api/groups/{group_id}/members           - Add members (teachers)
    DELETE /api/groups/{group_id}/members/{member_id} - Remove a member (teachers)
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from schoolchat.identity import UserIdentity, get_current_user
from schoolchat.realtime.hub import hub

from .schemas import GroupCreate, MembersAdd
from .service import GroupError, GroupService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/groups", tags=["groups"])


def _service() -> GroupService:
    return GroupService.get_instance()


def _error(exc: GroupError) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


@router.get("")
async def list_groups(user: UserIdentity = Depends(get_current_user)) -> JSONResponse:
    """List the active groups the caller belongs to.

    Returns:
        JSON array of groups, most recently active first.
    """
    groups = _service().list_for_user(user.userId)
    return JSONResponse([g.model_dump(mode="json") for g in groups])


@router.post("", status_code=201)
async def create_group(
    body: GroupCreate, user: UserIdentity = Depends(get_current_user)
) -> JSONResponse:
    """Create a group. The caller becomes its teacher member.

    Returns:
        The created group (201), 400 on missing name/members, 403 for non-teachers.
    """
    try:
        group = _service().create(user, body)
    except GroupError as e:
        logger.warning("[groups] create refused for %s: %s", user.userId, e)
        return _error(e)
    return JSONResponse(group.model_dump(mode="json"), status_code=201)


@router.post("/{group_id}/members")
async def add_members(
    group_id: str, body: MembersAdd, user: UserIdentity = Depends(get_current_user)
) -> JSONResponse:
    """Add student members to a group.

    Returns:
        The updated group, or 400/403/404 on rule violations.
    """
    try:
        group = _service().add_members(user, group_id, body.members)
    except GroupError as e:
        logger.warning("[groups] add_members refused for %s on %s: %s", user.userId, group_id, e)
        return _error(e)
    return JSONResponse(group.model_dump(mode="json"))


@router.delete("/{group_id}/members/{member_id}")
async def remove_member(
    group_id: str, member_id: str, user: UserIdentity = Depends(get_current_user)
) -> JSONResponse:
    """Remove a student from a group and evict them from its realtime room.

    Returns:
        The updated group, or 403/404 on rule violations.
    """
    try:
        group = _service().remove_member(user, group_id, member_id)
    except GroupError as e:
        logger.warning("[groups] remove_member refused for %s on %s: %s", user.userId, group_id, e)
        return _error(e)

    hub.evict_user(group_id, member_id)
    return JSONResponse(group.model_dump(mode="json"))
