#!/usr/bin/env python3
"""
Content fetcher for submitted links.

Prefers an archived copy of the page (existing snapshot, else a fresh
submission) and falls back to the original URL. Article text is extracted with
readability and converted to Markdown; when readability finds nothing, the
plain text of <article> or <body> is used instead.
"""

from asyncio import get_event_loop, wait_for, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Any, Optional, Tuple

from aiohttp import ClientSession, ClientTimeout, ClientError
from bs4 import BeautifulSoup
from readability import Document

from archiver import Archiver, ArchiveTokenCache, is_archive_url
from config import config, get_logger
from errors import CollaboratorError, ErrorKind, from_http_exception, kind_for_status
from telemetry import trace_span
from utils import clean_html_to_markdown, normalize_whitespace

logger = get_logger("fetcher")

HTML_TYPES = ("text/html", "application/xhtml+xml")
ACCEPT_HEADER = "text/html,application/xhtml+xml,text/plain;q=0.9,*/*;q=0.8"


@dataclass(frozen=True)
class FetchedContent:
    title: str
    body: str
    canonical_alt_url: Optional[str] = None


class ContentFetcher:
    def __init__(self, session: ClientSession, archiver: Archiver, token_cache: Optional[ArchiveTokenCache] = None):
        self.session = session
        self.archiver = archiver
        self.token_cache = token_cache
        self.executor = ThreadPoolExecutor(max_workers=2)

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the thread pool executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "fetcher.fetch",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, credentials=None: {"link.url": url},
    )
    async def fetch(self, url: str, credentials: Optional[str] = None) -> FetchedContent:
        """Fetch and extract the content behind `url`.

        `credentials` is an archive submit token; when omitted, one is taken
        from the token cache only if a fresh submission is needed.
        """
        if is_archive_url(url):
            logger.debug(f"{url} is already an archive link")
            return await self._fetch_page(url, canonical_alt_url=url)

        archive_url = await self.archiver.find_latest(url)
        if archive_url is None:
            archive_url = await self._submit_to_archive(url, credentials)

        if archive_url:
            try:
                return await self._fetch_page(archive_url, canonical_alt_url=archive_url)
            except CollaboratorError as e:
                logger.warning(f"Archived copy {archive_url} unusable ({e}); fetching original")

        return await self._fetch_page(url)

    async def _submit_to_archive(self, url: str, credentials: Optional[str]) -> Optional[str]:
        try:
            token = credentials
            if token is None and self.token_cache is not None:
                token = await self.token_cache.get_or_refresh()
            if not token:
                return None
            archive_url = await self.archiver.submit(url, token)
            logger.info(f"Submitted {url} to archive: {archive_url}")
            return archive_url
        except CollaboratorError as e:
            logger.warning(f"Archive submission failed for {url}: {e}")
            return None

    async def _download(self, url: str) -> Tuple[str, str]:
        """GET a page and return (text, content type)."""
        try:
            async with self.session.get(
                url,
                headers={
                    "User-Agent": config.USER_AGENT,
                    "Accept": ACCEPT_HEADER,
                    "Accept-Language": "en-US,en;q=0.5",
                },
                timeout=ClientTimeout(total=config.HTTP_TIMEOUT),
            ) as response:
                if response.status != 200:
                    raise CollaboratorError(
                        f"HTTP {response.status} fetching {url}", kind_for_status(response.status), "fetcher"
                    )
                content_type = (response.content_type or "").lower()
                return await response.text(errors="replace"), content_type
        except CollaboratorError:
            raise
        except (ClientError, TimeoutError) as e:
            raise from_http_exception(e, "fetcher") from e

    async def _fetch_page(self, url: str, canonical_alt_url: Optional[str] = None) -> FetchedContent:
        text, content_type = await self._download(url)
        if content_type == "text/plain":
            title, body = "", normalize_whitespace(text)
        elif content_type in HTML_TYPES or not content_type:
            # readability parsing is CPU-bound
            title, body = await self.run_in_executor(self.extract_article, text, url)
        else:
            raise CollaboratorError(f"Unsupported content type {content_type} at {url}", ErrorKind.UNKNOWN, "fetcher")

        if not body:
            raise CollaboratorError(f"No readable content at {url}", ErrorKind.UNKNOWN, "fetcher")
        return FetchedContent(title=title or "No title found", body=body, canonical_alt_url=canonical_alt_url)

    def extract_article(self, html_content: str, url: str) -> Tuple[str, str]:
        """Return (title, markdown body) for an HTML page (runs in executor)."""
        soup = BeautifulSoup(html_content, "html.parser")
        title = normalize_whitespace(soup.title.get_text()) if soup.title else ""

        body = ""
        try:
            article = Document(html_content)
            title = title or normalize_whitespace(article.short_title())
            body = clean_html_to_markdown(article.summary(), base_url=url)
        except (ValueError, RuntimeError, TypeError) as e:
            logger.debug(f"Readability could not parse {url}: {e}")

        if not body.strip():
            container = soup.find("article") or soup.body
            body = normalize_whitespace(container.get_text(" ")) if container else ""
        return title, body.strip()

    async def close(self) -> None:
        """Shut down the thread pool executor."""
        try:
            await wait_for(
                get_event_loop().run_in_executor(None, lambda: self.executor.shutdown(wait=True)),
                timeout=30.0,
            )
        except TimeoutError:
            logger.warning("Thread pool executor shutdown timed out after 30 seconds")
            self.executor.shutdown(wait=False)
        logger.debug("ContentFetcher closed")
