#!/usr/bin/env python3
"""
archive.today client.

Finds the latest snapshot of a URL or submits a fresh one. Submissions need
the `submitid` token scraped from the service's front page; that token is
cached by `ArchiveTokenCache`, with the durable store as the source of truth.
"""

from asyncio import TimeoutError
import re
from typing import Optional
from urllib.parse import quote, urlparse

from aiohttp import ClientSession, ClientTimeout, ClientError
from bs4 import BeautifulSoup

from config import config, get_logger
from errors import CollaboratorError, ErrorKind, from_http_exception, kind_for_status
from telemetry import trace_span
from utils import SystemClock

logger = get_logger("archiver")

ARCHIVE_HOSTS = frozenset({
    "archive.ph", "archive.is", "archive.today", "archive.li", "archive.vn", "archive.md", "archive.fo",
})
REFRESH_URL_PATTERN = re.compile(r'url=(.+)$', re.IGNORECASE)


def is_archive_url(url: str) -> bool:
    """True when the URL already points at an archive.today mirror."""
    host = (urlparse(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host in ARCHIVE_HOSTS


class Archiver:
    def __init__(self, session: ClientSession, base_url: Optional[str] = None):
        self.session = session
        self.base_url = base_url or config.ARCHIVE_URL
        if not self.base_url.endswith("/"):
            self.base_url += "/"

    def _timeout(self) -> ClientTimeout:
        return ClientTimeout(total=config.HTTP_TIMEOUT)

    async def find_latest(self, url: str) -> Optional[str]:
        """Return the URL of the newest snapshot, or None when there is none."""
        probe = f"{self.base_url}latest/{quote(url, safe='')}"
        try:
            async with self.session.head(
                probe,
                headers={"User-Agent": config.USER_AGENT},
                allow_redirects=True,
                timeout=self._timeout(),
            ) as response:
                if response.status < 400:
                    found = str(response.url)
                    logger.debug(f"Archive found for {url}: {found}")
                    return found
                logger.debug(f"No archive for {url} (HTTP {response.status})")
        except (ClientError, TimeoutError) as e:
            logger.warning(f"Error checking archive for {url}: {e}")
        return None

    async def scrape_submit_token(self) -> str:
        """Read the `submitid` form token from the archive front page."""
        try:
            async with self.session.get(
                self.base_url, headers={"User-Agent": config.USER_AGENT}, timeout=self._timeout()
            ) as response:
                if response.status >= 400:
                    raise CollaboratorError(
                        f"HTTP {response.status} loading archive front page", kind_for_status(response.status), "archiver"
                    )
                html = await response.text()
        except CollaboratorError:
            raise
        except (ClientError, TimeoutError) as e:
            raise from_http_exception(e, "archiver") from e

        field = BeautifulSoup(html, "html.parser").find("input", attrs={"name": "submitid"})
        token = field.get("value") if field else None
        if not token:
            raise CollaboratorError("Failed to obtain archive submit token", ErrorKind.UNKNOWN, "archiver")
        return token

    @trace_span(
        "archiver.submit",
        tracer_name="archiver",
        attr_from_args=lambda self, url, token: {"link.url": url},
    )
    async def submit(self, url: str, token: str) -> str:
        """Ask the archive to snapshot `url`; returns the snapshot URL."""
        logger.debug(f"Submitting {url} to archive")
        try:
            async with self.session.post(
                f"{self.base_url}submit/",
                data={"url": url, "anyway": "1", "submitid": token},
                headers={"User-Agent": config.USER_AGENT},
                allow_redirects=True,
                timeout=self._timeout(),
            ) as response:
                if response.status >= 400:
                    raise CollaboratorError(
                        f"HTTP {response.status} submitting to archive", kind_for_status(response.status), "archiver"
                    )
                refresh = response.headers.get("Refresh")
                if refresh:
                    match = REFRESH_URL_PATTERN.search(refresh)
                    if match:
                        return match.group(1).strip()
                html = await response.text()
        except CollaboratorError:
            raise
        except (ClientError, TimeoutError) as e:
            raise from_http_exception(e, "archiver") from e

        meta = BeautifulSoup(html, "html.parser").find("meta", attrs={"property": "og:url"})
        if meta and meta.get("content"):
            return meta["content"]
        raise CollaboratorError(f"Archive submission of {url} returned no snapshot URL", ErrorKind.UNKNOWN, "archiver")


class ArchiveTokenCache:
    """Memoized archive submit token, persisted in the store with a TTL.

    The in-object copy only saves a store round trip; the stored value decides
    validity, so a recycled process picks up where the last one left off.
    """

    KEY = "archive_token"

    def __init__(self, store, archiver: Archiver, ttl: Optional[float] = None, clock=None):
        self.store = store
        self.archiver = archiver
        self.ttl = config.ARCHIVE_TOKEN_TTL if ttl is None else ttl
        self.clock = clock or SystemClock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    async def get_or_refresh(self, now: Optional[float] = None) -> str:
        now = self.clock.now() if now is None else now
        if self._token and now < self._expires_at:
            return self._token

        stored = await self.store.execute('get', key=self.KEY)
        if stored:
            remaining = await self.store.execute('ttl', key=self.KEY)
            self._token = stored
            self._expires_at = now + (remaining if remaining is not None else self.ttl)
            return stored

        token = await self.archiver.scrape_submit_token()
        await self.store.execute('set', key=self.KEY, value=token, ttl=self.ttl)
        self._token = token
        self._expires_at = now + self.ttl
        logger.debug("Refreshed archive submit token")
        return token

    async def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0
        await self.store.execute('delete', key=self.KEY)
