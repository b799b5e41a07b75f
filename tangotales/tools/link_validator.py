"""Network probe for cited URLs.

A link counts as valid only when it resolves, after redirects, to a 2xx
response. For HTML pages the first few KB are streamed so the Metadata
Matcher has a title and a snippet to work with. Audio, video and other binary
content is judged on status alone.
"""
from __future__ import annotations

import asyncio
import time
from typing import Iterable

import httpx
from bs4 import BeautifulSoup
from loguru import logger

from tangotales.config import settings
from tangotales.models.enrichment import ValidationResult
from tangotales.services.logger import log_link_validation
from tangotales.tools.web_utils import clean_text, is_ephemeral_redirect, is_valid_url

USER_AGENT = "TangoTalesLinkCheck/1.0 (+https://tangotales.local)"
EPHEMERAL_REDIRECT_REASON = "ephemeral_redirect"
# HEAD not supported: retry with GET.
_HEAD_REJECTED = {405, 501}
_MIN_PARAGRAPH_CHARS = 20
_SNIPPET_CHARS = 200


def _looks_like_html(content_type: str) -> bool:
    lowered = content_type.lower()
    return not lowered or "html" in lowered


def extract_title_and_snippet(html: str) -> tuple[str | None, str | None]:
    soup = BeautifulSoup(html, "html.parser")

    title = None
    if soup.title and soup.title.get_text():
        title = clean_text(soup.title.get_text(), max_length=500) or None

    snippet = None
    meta = soup.find("meta", attrs={"name": "description"}) or soup.find(
        "meta", attrs={"property": "og:description"}
    )
    if meta and meta.get("content"):
        snippet = clean_text(meta["content"], max_length=_SNIPPET_CHARS) or None
    if snippet is None:
        for paragraph in soup.find_all("p"):
            text = clean_text(paragraph.get_text(" "), max_length=10_000)
            if len(text) >= _MIN_PARAGRAPH_CHARS:
                snippet = text[:_SNIPPET_CHARS]
                break
    return title, snippet


class LinkValidator:
    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        max_redirects: int | None = None,
        max_bytes: int | None = None,
        concurrency: int | None = None,
        trust_ephemeral_redirects: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else settings.link_validation_timeout_seconds
        )
        self.max_redirects = int(
            max_redirects if max_redirects is not None else settings.link_validation_max_redirects
        )
        self.max_bytes = int(max_bytes if max_bytes is not None else settings.link_validation_max_bytes)
        self.concurrency = max(
            1, int(concurrency if concurrency is not None else settings.link_validation_concurrency)
        )
        self.trust_ephemeral_redirects = (
            settings.trust_ephemeral_redirects
            if trust_ephemeral_redirects is None
            else trust_ephemeral_redirects
        )
        self._transport = transport

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=True,
            max_redirects=self.max_redirects,
            headers={"User-Agent": USER_AGENT},
            transport=self._transport,
        )

    async def validate(self, url: str, *, client: httpx.AsyncClient | None = None) -> ValidationResult:
        if not is_valid_url(url):
            result = ValidationResult(is_valid=False, error="Invalid URL format")
            log_link_validation(url, False, error=result.error)
            return result

        started = time.perf_counter()
        try:
            async with asyncio.timeout(self.timeout_seconds):
                if client is None:
                    async with self._build_client() as owned:
                        result = await self._probe(owned, url)
                else:
                    result = await self._probe(client, url)
        except (TimeoutError, httpx.TimeoutException):
            result = ValidationResult(is_valid=False, error="Request timeout")
        except httpx.TooManyRedirects:
            result = ValidationResult(is_valid=False, error="Too many redirects")
        except httpx.InvalidURL:
            result = ValidationResult(is_valid=False, error="Invalid URL format")
        except httpx.HTTPError as exc:
            result = ValidationResult(is_valid=False, error=f"Network error: {type(exc).__name__}")

        log_link_validation(
            url,
            result.is_valid,
            http_status=result.http_status,
            duration_ms=int((time.perf_counter() - started) * 1000),
            error=result.error,
        )
        return result

    async def _probe(self, client: httpx.AsyncClient, url: str) -> ValidationResult:
        head: httpx.Response | None = None
        try:
            head = await client.head(url)
        except (httpx.TimeoutException, httpx.TooManyRedirects):
            raise
        except httpx.HTTPError as exc:
            logger.debug(f"HEAD failed for {url} ({type(exc).__name__}), retrying with GET")

        if head is not None and head.status_code not in _HEAD_REJECTED:
            content_type = head.headers.get("content-type", "")
            if not head.is_success:
                return ValidationResult(
                    is_valid=False,
                    http_status=head.status_code,
                    final_url=str(head.url),
                    content_type=content_type or None,
                    error=f"HTTP {head.status_code}",
                )
            if not _looks_like_html(content_type):
                return ValidationResult(
                    is_valid=True,
                    http_status=head.status_code,
                    final_url=str(head.url),
                    content_type=content_type,
                )

        return await self._fetch(client, url)

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> ValidationResult:
        async with client.stream("GET", url) as response:
            content_type = response.headers.get("content-type", "")
            status = response.status_code
            final_url = str(response.url)
            if not response.is_success:
                return ValidationResult(
                    is_valid=False,
                    http_status=status,
                    final_url=final_url,
                    content_type=content_type or None,
                    error=f"HTTP {status}",
                )
            if not _looks_like_html(content_type):
                return ValidationResult(
                    is_valid=True,
                    http_status=status,
                    final_url=final_url,
                    content_type=content_type,
                )
            html = await self._read_head(response)

        title, snippet = extract_title_and_snippet(html)
        return ValidationResult(
            is_valid=True,
            http_status=status,
            final_url=final_url,
            content_type=content_type or None,
            extracted_title=title,
            extracted_snippet=snippet,
        )

    async def _read_head(self, response: httpx.Response) -> str:
        """Read at most ``max_bytes``, stopping once title and description are in."""
        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) >= self.max_bytes:
                break
            seen = buffer.decode("utf-8", errors="ignore").lower()
            if "</title>" in seen and ("</p>" in seen or "description" in seen):
                break

        data = bytes(buffer[: self.max_bytes])
        try:
            return data.decode(response.charset_encoding or "utf-8", errors="replace")
        except LookupError:
            return data.decode("utf-8", errors="replace")

    async def validate_many(self, urls: Iterable[str]) -> dict[str, ValidationResult]:
        """Validate in waves of ``concurrency``; results keyed by input URL."""
        unique = list(dict.fromkeys(url for url in urls if url))
        results: dict[str, ValidationResult] = {}
        pending: list[str] = []
        for url in unique:
            if self.trust_ephemeral_redirects and is_ephemeral_redirect(url):
                results[url] = ValidationResult(
                    is_valid=True,
                    final_url=url,
                    skipped_reason=EPHEMERAL_REDIRECT_REASON,
                )
            else:
                pending.append(url)

        if not pending:
            return results

        async with self._build_client() as client:
            for start in range(0, len(pending), self.concurrency):
                wave = pending[start : start + self.concurrency]
                outcomes = await asyncio.gather(
                    *(self.validate(url, client=client) for url in wave),
                    return_exceptions=True,
                )
                for url, outcome in zip(wave, outcomes):
                    if isinstance(outcome, BaseException):
                        logger.warning(f"Link validation crashed for {url}: {outcome}")
                        outcome = ValidationResult(
                            is_valid=False, error=f"Network error: {type(outcome).__name__}"
                        )
                    results[url] = outcome

        valid = sum(1 for result in results.values() if result.is_valid)
        logger.info(f"Validated {len(results)} links: {valid} valid")
        return results
