"""HTTP client for the chat persistence API.

Thin async wrapper over httpx that sends the caller's identity headers and
parses responses into the shared pydantic models. Every failure, whether
transport, HTTP status or malformed body, surfaces as ChatApiError so
callers have a single exception type to handle.
"""
import logging
from typing import Any, Iterable, List, Optional, Union

import httpx
from pydantic import TypeAdapter, ValidationError

from schoolchat.config import get_config
from schoolchat.groups.schemas import Group, GroupCreate, MemberRef
from schoolchat.identity import UserIdentity
from schoolchat.messages.schemas import MessagePage

logger = logging.getLogger(__name__)

_GROUP_LIST = TypeAdapter(List[Group])


class ChatApiError(Exception):
    """A persistence API call failed.

    Attributes:
        status_code: HTTP status, or None for transport errors.
        detail: Error message reported by the server, if any.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


def _member_refs(members: Iterable[Union[str, MemberRef, dict]]) -> List[dict]:
    refs = []
    for member in members:
        if isinstance(member, str):
            member = MemberRef(user=member)
        elif isinstance(member, dict):
            member = MemberRef.model_validate(member)
        refs.append(member.model_dump())
    return refs


class ChatApiClient:
    """Async client for the groups and messages endpoints.

    Args:
        identity: The logged-in user; sent as X-User-Id / X-User-Role.
        base_url: Chat server URL (defaults to ``client.api_base_url``).
        timeout: Request timeout in seconds (defaults to ``client.request_timeout``).
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        identity: UserIdentity,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        cfg = get_config().client
        self._client = httpx.AsyncClient(
            base_url=base_url or cfg.api_base_url,
            timeout=timeout or cfg.request_timeout,
            headers={
                "X-User-Id": identity.userId,
                "X-User-Role": identity.role.value,
            },
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # -----------------------------------------------------------------------
    # Groups
    # -----------------------------------------------------------------------

    async def get_groups(self) -> List[Group]:
        data = await self._request("GET", "/api/groups")
        return self._parse(_GROUP_LIST.validate_python, data)

    async def create_group(self, data: Union[GroupCreate, dict]) -> Group:
        if isinstance(data, dict):
            data = GroupCreate.model_validate(data)
        body = await self._request("POST", "/api/groups", json=data.model_dump())
        return self._parse(Group.model_validate, body)

    async def add_members(self, group_id: str, members: Iterable[Union[str, MemberRef, dict]]) -> Group:
        body = await self._request(
            "POST", f"/api/groups/{group_id}/members", json={"members": _member_refs(members)}
        )
        return self._parse(Group.model_validate, body)

    async def remove_member(self, group_id: str, member_id: str) -> Group:
        body = await self._request("DELETE", f"/api/groups/{group_id}/members/{member_id}")
        return self._parse(Group.model_validate, body)

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    async def get_group_messages(self, group_id: str, page: int = 1, limit: int = 20) -> MessagePage:
        """Fetch one page of history; page 1 is the most recent."""
        body = await self._request(
            "GET", f"/api/messages/group/{group_id}", params={"page": page, "limit": limit}
        )
        return self._parse(MessagePage.model_validate, body)

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ChatApiError(f"{method} {url} failed: {e}") from e

        if response.is_error:
            detail = None
            try:
                payload = response.json()
                if isinstance(payload, dict):
                    detail = payload.get("error") or payload.get("detail")
            except ValueError:
                detail = response.text or None
            raise ChatApiError(
                f"{method} {url} returned {response.status_code}",
                status_code=response.status_code,
                detail=detail,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ChatApiError(f"{method} {url} returned a non-JSON body") from e

    @staticmethod
    def _parse(parser, data: Any):
        try:
            return parser(data)
        except ValidationError as e:
            raise ChatApiError(f"Unexpected response shape: {e}") from e
