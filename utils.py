#!/usr/bin/env python3
"""
Utility classes and functions shared by the pipeline components.

Contains the clock abstraction used for all time-dependent logic, token
estimation helpers, text helpers and HTML sanitization.
"""

from asyncio import sleep
from hashlib import sha256
from math import ceil
from time import time
from typing import Optional
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from markdownify import markdownify as md

from config import get_logger

logger = get_logger("utils")

# Roughly one token per four characters of English text
CHARS_PER_TOKEN = 4


class SystemClock:
    """Wall-clock time source.

    Every component that reads time or waits takes a clock, so the whole
    pipeline can be driven by virtual time in tests.
    """

    def now(self) -> float:
        return time()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await sleep(seconds)


def estimate_tokens(text: Optional[str]) -> int:
    """Estimate the number of tokens in a text."""
    if not text:
        return 0
    return ceil(len(text) / CHARS_PER_TOKEN)


def estimate_max_tokens(character_limit: int) -> int:
    """Estimate the maximum number of tokens for a given character limit."""
    return ceil(max(character_limit, 0) / CHARS_PER_TOKEN)


def fingerprint(value: str) -> str:
    """Return a stable SHA-256 hex digest, used to track secrets without storing them."""
    return sha256(value.encode('utf-8')).hexdigest()


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL."""
    if not url or not isinstance(url, str):
        return False
    url = url.strip()
    if not url:
        return False
    return url.startswith(('http://', 'https://')) and '.' in url


def normalize_whitespace(text: str) -> str:
    return re.sub(r'\s+', ' ', text or '').strip()


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text
    if len(suffix) >= max_length:
        return text[:max_length]
    return text[:max_length - len(suffix)] + suffix


def clean_html_to_markdown(html_content: str, base_url: Optional[str] = None) -> str:
    """Sanitize HTML content and convert it to Markdown.

    Args:
        html_content: Raw HTML to sanitize
        base_url: Optional base URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous and non-content elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Resolves relative href/src against ``base_url``; without one, non-absolute
      references are neutralized (links -> ``#``, images removed)
    - Converts the result to Markdown with markdownify, without line wrapping
    """
    if not html_content:
        return ""

    try:
        soup = BeautifulSoup(html_content, 'html.parser')

        for tag in soup([
            "script", "style", "iframe", "form", "object", "embed", "noscript",
            "frame", "frameset", "applet", "meta", "base", "link"
        ]):
            tag.decompose()

        for tag in soup.find_all(True):
            for attr in list(tag.attrs):
                if attr.lower().startswith('on'):
                    del tag[attr]
                elif attr.lower() in ('href', 'src') and str(tag[attr]).lower().startswith('javascript:'):
                    del tag[attr]

        def _rewrite_url(value: str, attr: str) -> Optional[str]:
            if attr == 'href' and value.startswith('mailto:'):
                return value
            if value.startswith(('http://', 'https://')):
                return value
            if base_url:
                resolved = urljoin(base_url, value)
                if resolved.startswith(('http://', 'https://')):
                    return resolved
            return None

        for tag in soup.find_all(['a', 'img']):
            for attr in ('href', 'src'):
                if not tag.has_attr(attr) or not str(tag[attr]):
                    continue
                rewritten = _rewrite_url(str(tag[attr]), attr)
                if rewritten:
                    tag[attr] = rewritten
                elif attr == 'href':
                    tag[attr] = '#'
                else:
                    del tag[attr]

        # wrap_width=0 keeps URLs on one line
        return md(str(soup), heading_style="ATX", wrap_width=0).strip()
    except (ValueError, TypeError, AttributeError) as e:
        logger.error(f"Error cleaning HTML to Markdown: {e}")
        return html_content
