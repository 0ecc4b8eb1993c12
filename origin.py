#!/usr/bin/env python3
"""
Origin store client: reads submitted posts and publishes summaries as comments.

Talks to the Reddit OAuth API with a bearer token. HTTP failures surface as
`CollaboratorError` with a kind derived from the status code.
"""

from asyncio import TimeoutError
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiohttp import ClientSession, ClientTimeout, ClientError

from config import config, get_logger
from errors import CollaboratorError, ErrorKind, from_http_exception, kind_for_status
from telemetry import trace_span

logger = get_logger("origin")

POST_PREFIX = "t3_"


def post_fullname(item_id: str) -> str:
    """Return the `t3_` fullname for a bare or prefixed post id."""
    return item_id if item_id.startswith(POST_PREFIX) else f"{POST_PREFIX}{item_id}"


@dataclass(frozen=True)
class ItemMetadata:
    id: str
    title: str
    url: Optional[str]
    permalink: Optional[str] = None
    community: Optional[str] = None
    author: Optional[str] = None
    is_self: bool = False

    @classmethod
    def from_listing(cls, data: Dict[str, Any]) -> "ItemMetadata":
        is_self = bool(data.get("is_self"))
        return cls(
            id=data.get("name") or post_fullname(str(data.get("id", ""))),
            title=data.get("title") or "",
            url=None if is_self else data.get("url_overridden_by_dest") or data.get("url"),
            permalink=data.get("permalink"),
            community=data.get("subreddit"),
            author=data.get("author"),
            is_self=is_self,
        )


class OriginStore:
    # 401 means our bearer token was rejected; 403 only refuses that one thread
    CREDENTIAL_STATUSES = (401,)

    def __init__(self, session: ClientSession, access_token: Optional[str] = None, api_base: Optional[str] = None):
        self.session = session
        self.access_token = access_token or config.REDDIT_ACCESS_TOKEN
        self.api_base = (api_base or config.REDDIT_API_BASE).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": config.USER_AGENT}
        if self.access_token:
            headers["Authorization"] = f"bearer {self.access_token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.api_base}{path}"
        try:
            async with self.session.request(
                method,
                url,
                headers=self._headers(),
                timeout=ClientTimeout(total=config.HTTP_TIMEOUT),
                **kwargs,
            ) as response:
                if response.status >= 400:
                    detail = (await response.text())[:200]
                    kind = kind_for_status(response.status, self.CREDENTIAL_STATUSES)
                    raise CollaboratorError(f"HTTP {response.status} from {path}: {detail}", kind, "origin")
                return await response.json(content_type=None)
        except CollaboratorError:
            raise
        except (ClientError, TimeoutError) as e:
            raise from_http_exception(e, "origin", self.CREDENTIAL_STATUSES) from e
        except ValueError as e:
            raise CollaboratorError(f"Invalid JSON from {path}: {e}", ErrorKind.UNKNOWN, "origin") from e

    @trace_span(
        "origin.get_item",
        tracer_name="origin",
        attr_from_args=lambda self, item_id: {"item.id": item_id},
    )
    async def get_item_by_id(self, item_id: str) -> Optional[ItemMetadata]:
        """Look up a post; None when it no longer exists or was removed."""
        try:
            payload = await self._request("GET", "/api/info", params={"id": post_fullname(item_id), "raw_json": "1"})
        except CollaboratorError as e:
            if e.kind == ErrorKind.NOT_FOUND:
                return None
            raise

        children = ((payload or {}).get("data") or {}).get("children") or []
        if not children:
            return None
        data = children[0].get("data") or {}
        if data.get("removed_by_category"):
            logger.debug(f"Post {item_id} was removed ({data['removed_by_category']})")
            return None
        return ItemMetadata.from_listing(data)

    @trace_span(
        "origin.publish",
        tracer_name="origin",
        attr_from_args=lambda self, item_id, text: {"item.id": item_id, "comment.length": len(text or "")},
    )
    async def publish_result(self, item_id: str, text: str) -> Optional[str]:
        """Post `text` as a comment on the item; returns the comment fullname, or None if refused."""
        payload = await self._request(
            "POST",
            "/api/comment",
            data={"thing_id": post_fullname(item_id), "text": text, "api_type": "json"},
        )
        body = (payload or {}).get("json") or {}
        errors = body.get("errors") or []
        if errors:
            codes = [e[0] for e in errors if isinstance(e, (list, tuple)) and e]
            if "RATELIMIT" in codes:
                raise CollaboratorError(f"Comment rate limited: {errors}", ErrorKind.RATE_LIMITED, "origin")
            logger.warning(f"Comment on {item_id} rejected: {errors}")
            return None
        things = (body.get("data") or {}).get("things") or []
        if not things:
            return None
        return (things[0].get("data") or {}).get("name")

    @trace_span(
        "origin.distinguish",
        tracer_name="origin",
        attr_from_args=lambda self, comment_id, sticky=True: {"comment.id": comment_id},
    )
    async def distinguish(self, comment_id: str, sticky: bool = True) -> bool:
        """Mark a comment as a moderator comment and optionally pin it."""
        payload = await self._request(
            "POST",
            "/api/distinguish",
            data={"id": comment_id, "how": "yes", "sticky": "true" if sticky else "false", "api_type": "json"},
        )
        errors = ((payload or {}).get("json") or {}).get("errors") or []
        if errors:
            logger.warning(f"Distinguish of {comment_id} rejected: {errors}")
            return False
        return True
