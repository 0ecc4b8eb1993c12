#!/usr/bin/env python3
"""
Result publisher.

Formats a summary as a comment (summary, optional archive link, footer),
publishes it through the origin store and pins it when configured to.
"""

from typing import Optional

from config import config, get_logger
from errors import CollaboratorError, ErrorKind
from llm_client import load_prompts
from utils import truncate_string

logger = get_logger("publisher")

DEFAULT_FOOTER = "*I am a bot and this summary was created automatically.*"


def format_comment(summary: str, archive_url: Optional[str] = None, footer: str = "",
                   max_length: Optional[int] = None) -> str:
    """Build the comment body, shortening the summary (never the link or footer) to fit."""
    max_length = max_length or config.COMMENT_MAX_LENGTH
    tail_parts = []
    if archive_url:
        tail_parts.append(f"Archived version: {archive_url}")
    if footer:
        tail_parts.append(footer.strip())
    tail = "".join(f"\n\n{part}" for part in tail_parts)

    room = max(max_length - len(tail), 0)
    return truncate_string(summary.strip(), room) + tail


class ResultPublisher:
    def __init__(self, origin, footer: Optional[str] = None, max_length: Optional[int] = None):
        self.origin = origin
        if footer is None:
            footer = load_prompts().get("footer") or DEFAULT_FOOTER
        self.footer = footer
        self.max_length = max_length or config.COMMENT_MAX_LENGTH

    async def publish(self, item_id: str, summary: str, archive_url: Optional[str] = None,
                      include_archive_link: bool = True, distinguish: bool = True) -> str:
        """Publish a summary on an item and return the comment id.

        A refused comment raises a SERVICE_UNAVAILABLE CollaboratorError. A
        failed distinguish is only logged since the comment is already live.
        """
        text = format_comment(
            summary,
            archive_url if include_archive_link else None,
            self.footer,
            self.max_length,
        )
        comment_id = await self.origin.publish_result(item_id, text)
        if not comment_id:
            raise CollaboratorError(f"Origin did not acknowledge comment on {item_id}",
                                    ErrorKind.SERVICE_UNAVAILABLE, "publisher")
        logger.info(f"Published summary on {item_id} as {comment_id}")

        if distinguish:
            try:
                if not await self.origin.distinguish(comment_id, sticky=True):
                    logger.warning(f"Could not distinguish {comment_id}")
            except CollaboratorError as e:
                logger.warning(f"Distinguish failed for {comment_id}: {e}")
        return comment_id
