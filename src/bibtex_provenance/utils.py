"""Shared bibliographic utilities for the provenance pipeline.

This module provides common functionality used by:
- registries.py (Crossref / PubMed clients)
- resolver.py and checkpoint.py (title matching, record handling)

Includes text normalization, DOI/PMID handling, async HTTP infrastructure
with rate limiting and retries, and registry response converters.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

import httpx


# ------------- Constants & Regex -------------

CROSSREF_API = "https://api.crossref.org/works"
DOI_RESOLVER = "https://doi.org"
EUTILS_BASE = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
ESEARCH_URL = f"{EUTILS_BASE}/esearch.fcgi"
ESUMMARY_URL = f"{EUTILS_BASE}/esummary.fcgi"

_DOI_PREFIX_RE = re.compile(r"^(?:https?://(?:dx\.)?doi\.org/|doi:\s*)", re.IGNORECASE)
_YEAR_RE = re.compile(r"\b(1[89]|20)\d{2}\b")
_HTML_TAG_RE = re.compile(r"<[^>]*>")

logger = logging.getLogger(__name__)


# ------------- Text Normalization -------------


def safe_lower(x: str | None) -> str:
    """Null-safe lowercase and strip."""
    return (x or "").lower().strip()


def clean_text(value: str | None) -> str:
    """Collapse whitespace and strip HTML tags from a registry string."""
    if not value:
        return ""
    return " ".join(_HTML_TAG_RE.sub("", value).split())


# ------------- DOI & PMID Utilities -------------


def doi_normalize(doi: str | None) -> str | None:
    """Strip resolver prefixes and whitespace from a DOI.

    Case is preserved: the DOI resolver is case-insensitive but stored values
    are echoed back to users.
    """
    if not doi:
        return None
    d = _DOI_PREFIX_RE.sub("", doi.strip()).strip()
    return d or None


def pmid_normalize(pmid: str | int | None) -> str | None:
    """Keep only the digits of a PMID."""
    if pmid is None:
        return None
    digits = re.sub(r"\D", "", str(pmid))
    return digits or None


def parse_year(value: Any) -> int | None:
    """Extract a four-digit year from a date string or number."""
    if value is None:
        return None
    m = _YEAR_RE.search(str(value))
    return int(m.group(0)) if m else None


# ------------- Data Classes -------------


@dataclass
class WorkRecord:
    """A bibliographic record as reported by an external registry."""

    title: str = ""
    authors: list[str] = field(default_factory=list)  # display names, "Given Family"
    venue: str = ""
    year: int | None = None
    volume: str | None = None
    issue: str | None = None
    pages: str | None = None
    doi: str | None = None
    pmid: str | None = None
    work_type: str = "unknown"
    publisher: str | None = None


# ------------- Registry Response Converters -------------


def crossref_message_to_record(msg: dict[str, Any]) -> WorkRecord:
    """Convert a Crossref works message to a WorkRecord."""
    titles = msg.get("title") or []
    title = clean_text(titles[0]) if titles else ""

    # Authors - handle given/family and literal formats
    authors: list[str] = []
    for a in msg.get("author", []) or []:
        name = " ".join(p for p in (a.get("given"), a.get("family")) if p)
        if not name and a.get("literal"):
            name = a["literal"]
        if name:
            authors.append(name.strip())

    container = msg.get("container-title") or []
    venue = container[0] if container else ""

    # Publication date - check print first, then online, then issued
    year = None
    for dt_key in ("published-print", "published-online", "issued"):
        parts = (msg.get(dt_key) or {}).get("date-parts") or []
        if parts and parts[0] and parts[0][0]:
            year = int(parts[0][0])
            break

    # Issue can be in different locations
    issue = msg.get("issue") or (msg.get("journal-issue") or {}).get("issue")

    return WorkRecord(
        title=title,
        authors=authors,
        venue=venue,
        year=year,
        volume=msg.get("volume"),
        issue=issue,
        pages=msg.get("page"),
        doi=doi_normalize(msg.get("DOI")),
        work_type=msg.get("type") or "unknown",
        publisher=msg.get("publisher"),
    )


def pubmed_summary_to_record(doc: dict[str, Any]) -> WorkRecord:
    """Convert a PubMed esummary document to a WorkRecord."""
    authors = [a["name"].strip() for a in doc.get("authors") or [] if isinstance(a, dict) and a.get("name")]

    doi = None
    for item in doc.get("articleids") or []:
        if isinstance(item, dict) and safe_lower(item.get("idtype")) == "doi" and item.get("value"):
            doi = doi_normalize(item["value"])
            break

    return WorkRecord(
        title=clean_text(doc.get("title")),
        authors=authors,
        venue=doc.get("fulljournalname") or doc.get("source") or "",
        year=parse_year(doc.get("pubdate")),
        volume=doc.get("volume") or None,
        issue=doc.get("issue") or None,
        pages=doc.get("pages") or None,
        doi=doi,
        pmid=pmid_normalize(doc.get("uid")),
        work_type="journal-article",
    )


# ------------- Async Rate Limiting -------------


class AsyncRateLimiter:
    """Async-compatible rate limiter using sliding window.

    This rate limiter uses an asyncio lock and sleep for non-blocking
    rate limiting in async contexts. It maintains a sliding window of
    timestamps to enforce the rate limit.
    """

    def __init__(self, req_per_min: int) -> None:
        self.req_per_min = max(req_per_min, 1)
        self.lock = asyncio.Lock()
        self.timestamps: list[float] = []

    async def wait(self) -> None:
        """Async wait until a request can be made within the rate limit."""
        async with self.lock:
            now = time.monotonic()
            window = 60.0
            self.timestamps = [t for t in self.timestamps if now - t < window]

            if len(self.timestamps) >= self.req_per_min:
                earliest = min(self.timestamps)
                sleep_for = window - (now - earliest) + 0.01
                if sleep_for > 0:
                    await asyncio.sleep(sleep_for)
                    now = time.monotonic()
                    self.timestamps = [t for t in self.timestamps if now - t < window]

            self.timestamps.append(now)


class AsyncRateLimiterRegistry:
    """Manages per-service async rate limiters."""

    DEFAULT_LIMITS = {
        "crossref": 50,  # Crossref: 50/min polite pool
        "doi": 50,  # doi.org content negotiation
        "pubmed": 180,  # E-utilities: 3 req/sec without API key
    }

    def __init__(self, limits: dict[str, int] | None = None) -> None:
        """Initialize the registry with optional custom limits.

        Args:
            limits: Optional dict of service name to requests per minute.
                   Overrides DEFAULT_LIMITS for specified services.
        """
        self._limits = {**self.DEFAULT_LIMITS, **(limits or {})}
        self._limiters: dict[str, AsyncRateLimiter] = {}

    def get(self, service: str) -> AsyncRateLimiter:
        """Get or create async rate limiter for service."""
        if service not in self._limiters:
            limit = self._limits.get(service, 30)  # Default 30/min
            self._limiters[service] = AsyncRateLimiter(limit)
        return self._limiters[service]

    async def wait(self, service: str) -> None:
        """Async wait for rate limit on specified service."""
        await self.get(service).wait()


# ------------- Async HTTP Client -------------


class AsyncHttpClient:
    """Async HTTP client with rate limiting, timeouts and retry logic.

    Transport errors and 5xx responses are retried with exponential backoff.
    Every other response, 404 included, is returned to the caller at once:
    absence is not a transient condition.
    """

    def __init__(
        self,
        rate_limiters: AsyncRateLimiterRegistry | None = None,
        timeout: float = 10.0,
        user_agent: str = "bibtex-provenance/1.0",
        max_retries: int = 3,
        backoff_base: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the async HTTP client.

        Args:
            rate_limiters: AsyncRateLimiterRegistry for per-service rate limiting
            timeout: Request timeout in seconds
            user_agent: User-Agent header value
            max_retries: Retries after the first attempt for transient failures
            backoff_base: First backoff delay in seconds, doubled on each retry
            transport: Optional httpx transport (used by tests)
        """
        self.rate_limiters = rate_limiters or AsyncRateLimiterRegistry()
        self.timeout = timeout
        self.user_agent = user_agent
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client instance."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        service: str = "default",
        params: dict[str, Any] | None = None,
        accept: str = "application/json",
        timeout: float | None = None,
    ) -> httpx.Response:
        """Make async HTTP request with rate limiting and retry.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Request URL
            service: Service name for rate limiting (e.g., 'crossref', 'pubmed')
            params: Query parameters
            accept: Accept header value
            timeout: Per-call timeout overriding the client default

        Returns:
            httpx.Response object (a 5xx response once retries are exhausted)

        Raises:
            httpx.TransportError: If the request keeps failing at the network level
        """
        headers = {"Accept": accept}
        request_timeout = httpx.Timeout(timeout if timeout is not None else self.timeout)
        backoff = self.backoff_base

        for attempt in range(self.max_retries + 1):
            await self.rate_limiters.wait(service)
            try:
                resp = await self.client.request(method, url, params=params, headers=headers, timeout=request_timeout)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise
                logger.debug("%s %s failed (%s); retrying in %.1fs", method, url, e, backoff)
            else:
                if resp.status_code < 500 or attempt >= self.max_retries:
                    return resp
                logger.debug("%s %s returned %d; retrying in %.1fs", method, url, resp.status_code, backoff)
            await asyncio.sleep(backoff)
            backoff *= 2

        raise RuntimeError(f"Network failure after retries for {url}")  # pragma: no cover

    async def get(
        self,
        url: str,
        service: str = "default",
        params: dict[str, Any] | None = None,
        accept: str = "application/json",
        timeout: float | None = None,
    ) -> httpx.Response:
        """Convenience method for GET requests."""
        return await self.request("GET", url, service=service, params=params, accept=accept, timeout=timeout)

    async def close(self) -> None:
        """Close the async HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> AsyncHttpClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
