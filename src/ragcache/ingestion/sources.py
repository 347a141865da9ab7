"""Document sources: turn a locator into plain text or fail."""

from __future__ import annotations

import re
from typing import Protocol, Sequence
from uuid import NAMESPACE_URL, uuid5

import httpx

from ragcache.errors import (
    SourceEmptyError,
    SourceNotFoundError,
    SourceUnauthorizedError,
    SourceUnavailableError,
)
from ragcache.metrics.observability import get_logger

LOGGER = get_logger("sources")

_GOOGLE_DOC_PATTERN = re.compile(r"/document/d/([a-zA-Z0-9-_]+)")
_ACCESS_MARKERS = ("Access denied", "Sign in", "Request access")
_NOT_PUBLIC = (
    "Document is not publicly accessible. Share it with "
    "'Anyone with the link can view' permissions."
)


def extract_google_doc_id(locator: str) -> str | None:
    match = _GOOGLE_DOC_PATTERN.search(locator or "")
    return match.group(1) if match else None


def derive_document_id(locator: str) -> str:
    """Google Docs keep their own id; anything else gets a stable id from the locator."""

    return extract_google_doc_id(locator) or uuid5(NAMESPACE_URL, locator).hex


def export_url(locator: str) -> str:
    doc_id = extract_google_doc_id(locator)
    if doc_id is None:
        return locator
    return f"https://docs.google.com/document/d/{doc_id}/export?format=txt"


class DocumentSource(Protocol):
    """Fetches the text behind a document locator."""

    async def fetch(self, locator: str) -> str:
        """Return stripped text or raise ``SourceUnavailableError``."""


class HttpDocumentSource:
    """Fetches publicly readable documents over HTTP."""

    def __init__(
        self,
        allowed_domains: Sequence[str] = ("docs.google.com",),
        *,
        client: httpx.AsyncClient | None = None,
        max_bytes: int = 25 * 1024 * 1024,
    ) -> None:
        self._allowed_domains = tuple(domain.lower() for domain in allowed_domains)
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._max_bytes = max_bytes

    def _check_host(self, url: str) -> None:
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError) as exc:
            raise SourceNotFoundError(f"Invalid document URL: {url}") from exc
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise SourceNotFoundError(f"Invalid document URL: {url}")
        if self._allowed_domains and parsed.host.lower() not in self._allowed_domains:
            raise SourceUnavailableError(f"Domain not allowed: {parsed.host}")

    async def fetch(self, locator: str) -> str:
        url = export_url(locator.strip())
        self._check_host(url)
        LOGGER.info("source.fetch", url=url)
        try:
            async with self._client.stream(
                "GET",
                url,
                headers={"Accept": "text/plain,*/*"},
                follow_redirects=True,
            ) as response:
                if response.status_code in (401, 403):
                    raise SourceUnauthorizedError(_NOT_PUBLIC)
                if response.status_code == 404:
                    raise SourceNotFoundError(f"Document not found: {locator}")
                if response.status_code >= 400:
                    raise SourceUnavailableError(f"Failed to fetch document: {response.status_code}")
                body = bytearray()
                async for piece in response.aiter_bytes():
                    body.extend(piece)
                    if len(body) > self._max_bytes:
                        raise SourceUnavailableError(f"Document too large: {locator}")
                encoding = response.encoding or "utf-8"
        except httpx.HTTPError as exc:
            raise SourceUnavailableError(f"Failed to fetch document: {exc}") from exc

        content = bytes(body).decode(encoding, errors="replace")
        if any(marker in content for marker in _ACCESS_MARKERS):
            raise SourceUnauthorizedError(_NOT_PUBLIC)
        if not content.strip():
            raise SourceEmptyError("Document appears to be empty or inaccessible")
        return content.strip()


class StaticDocumentSource:
    """In-memory source keyed by locator; used offline and in tests."""

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self._documents = dict(documents or {})

    def add(self, locator: str, text: str) -> None:
        self._documents[locator] = text

    async def fetch(self, locator: str) -> str:
        if locator not in self._documents:
            raise SourceNotFoundError(f"Document not found: {locator}")
        content = self._documents[locator]
        if not content.strip():
            raise SourceEmptyError("Document appears to be empty or inaccessible")
        return content.strip()
