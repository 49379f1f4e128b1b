"""Clients for the external bibliographic registries.

Two registries back the resolver:
- Crossref / doi.org, keyed by DOI. doi.org content negotiation returns
  BibTeX directly; the Crossref works API adds structured metadata.
- PubMed E-utilities, keyed by PMID. Only structured summaries are available,
  so BibTeX is synthesised field by field.

Every client turns transport failures into "not found" (``None`` or an empty
result) after the HTTP layer has exhausted its retries. All BibTeX handed out
here has had its ``doi`` field removed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any
from urllib.parse import quote

import httpx

from bibtex_provenance.bibtex import record_to_bibtex, rekey_entry, strip_identifier_field
from bibtex_provenance.utils import (
    CROSSREF_API,
    DOI_RESOLVER,
    ESEARCH_URL,
    ESUMMARY_URL,
    AsyncHttpClient,
    WorkRecord,
    crossref_message_to_record,
    doi_normalize,
    pmid_normalize,
    pubmed_summary_to_record,
)

MAX_SEARCH_ROWS = 20


@dataclass
class RegistryLookup:
    """Result of an identifier lookup: serialized BibTeX plus structured fields."""

    bibtex: str
    record: WorkRecord


@dataclass
class SearchResult:
    items: list[WorkRecord] = field(default_factory=list)
    total_count: int = 0


class RegistryClient(ABC):
    """Capability the resolver needs from a registry."""

    name = "registry"

    @abstractmethod
    async def lookup_by_identifier(self, identifier: str) -> RegistryLookup | None:
        """Fetch one work by its registry identifier; ``None`` when absent."""

    @abstractmethod
    async def search_by_text(self, query: str, limit: int = 10) -> SearchResult:
        """Free-text search returning at most ``min(limit, 20)`` items."""

    def to_bibtex(self, record: WorkRecord, cite_key: str) -> str:
        """Best-effort serialization of a record, without identifier fields."""
        return record_to_bibtex(record, cite_key)


def _rows(limit: int) -> int:
    return max(1, min(limit, MAX_SEARCH_ROWS))


def _json_member(resp: httpx.Response, key: str) -> dict[str, Any]:
    """``resp.json()[key]`` when both levels are JSON objects, else ``{}``."""
    data = resp.json()
    value = data.get(key) if isinstance(data, dict) else None
    return value if isinstance(value, dict) else {}


class CrossrefClient(RegistryClient):
    """DOI registry: doi.org content negotiation plus the Crossref works API."""

    name = "crossref"

    def __init__(self, http: AsyncHttpClient, logger: logging.Logger | None = None) -> None:
        self.http = http
        self.logger = logger or logging.getLogger(__name__)

    async def lookup_by_identifier(self, identifier: str) -> RegistryLookup | None:
        doi = doi_normalize(identifier)
        if not doi:
            return None

        url = f"{DOI_RESOLVER}/{quote(doi, safe='/')}"
        try:
            resp = await self.http.get(url, service="doi", accept="application/x-bibtex")
        except httpx.HTTPError as e:
            self.logger.debug("DOI content negotiation failed for %s: %s", doi, e)
            return None
        text = resp.text.strip() if resp.status_code == 200 else ""
        if not text.startswith("@"):
            self.logger.debug("DOI %s did not resolve to BibTeX (status %d)", doi, resp.status_code)
            return None

        record = await self.fetch_metadata(doi)
        return RegistryLookup(bibtex=strip_identifier_field(text), record=record)

    async def fetch_metadata(self, doi: str) -> WorkRecord:
        """Structured metadata for a DOI.

        Failure is not fatal: a minimal record carrying only the DOI is
        returned so the content-negotiated BibTeX still stands.
        """
        url = f"{CROSSREF_API}/{quote(doi, safe='')}"
        try:
            resp = await self.http.get(url, service="crossref")
            if resp.status_code == 200:
                record = crossref_message_to_record(_json_member(resp, "message"))
                record.doi = record.doi or doi
                return record
            self.logger.debug("Crossref works returned %d for %s", resp.status_code, doi)
        except (httpx.HTTPError, ValueError) as e:
            self.logger.debug("Crossref works failed for %s: %s", doi, e)
        return WorkRecord(doi=doi)

    async def search_by_text(self, query: str, limit: int = 10) -> SearchResult:
        params = {"query.bibliographic": query, "rows": _rows(limit)}
        try:
            resp = await self.http.get(CROSSREF_API, service="crossref", params=params)
            if resp.status_code != 200:
                return SearchResult()
            message = _json_member(resp, "message")
        except (httpx.HTTPError, ValueError) as e:
            self.logger.debug("Crossref search failed '%s': %s", query, e)
            return SearchResult()
        items = [crossref_message_to_record(item) for item in message.get("items") or [] if isinstance(item, dict)]
        return SearchResult(items=items, total_count=int(message.get("total-results") or 0))


class PubMedClient(RegistryClient):
    """PMID registry backed by NCBI E-utilities (esearch / esummary)."""

    name = "pubmed"

    def __init__(
        self,
        http: AsyncHttpClient,
        api_key: str | None = None,
        doi_registry: CrossrefClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.http = http
        self.api_key = api_key
        self.doi_registry = doi_registry
        self.logger = logger or logging.getLogger(__name__)

    def _params(self, **params: str | int) -> dict[str, str | int]:
        params = {"db": "pubmed", "retmode": "json", **params}
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    async def _summaries(self, pmids: list[str]) -> list[WorkRecord]:
        resp = await self.http.get(ESUMMARY_URL, service="pubmed", params=self._params(id=",".join(pmids)))
        if resp.status_code != 200:
            return []
        result = _json_member(resp, "result")
        records = []
        for pmid in pmids:
            doc = result.get(pmid)
            if not isinstance(doc, dict) or doc.get("error"):
                continue
            records.append(pubmed_summary_to_record(doc))
        return records

    async def lookup_by_identifier(self, identifier: str) -> RegistryLookup | None:
        pmid = pmid_normalize(identifier)
        if not pmid:
            return None
        try:
            records = await self._summaries([pmid])
        except (httpx.HTTPError, ValueError) as e:
            self.logger.debug("PubMed esummary failed for %s: %s", pmid, e)
            return None
        if not records:
            return None
        record = records[0]
        return RegistryLookup(bibtex=self.to_bibtex(record, f"pmid{pmid}"), record=record)

    async def search_by_text(self, query: str, limit: int = 10) -> SearchResult:
        try:
            resp = await self.http.get(
                ESEARCH_URL, service="pubmed", params=self._params(term=query, retmax=_rows(limit))
            )
            if resp.status_code != 200:
                return SearchResult()
            found = _json_member(resp, "esearchresult")
            ids = [str(i) for i in found.get("idlist") or []]
            total = int(found.get("count") or 0)
            if not ids:
                return SearchResult(total_count=total)
            return SearchResult(items=await self._summaries(ids), total_count=total)
        except (httpx.HTTPError, ValueError) as e:
            self.logger.debug("PubMed search failed '%s': %s", query, e)
            return SearchResult()

    def to_bibtex(self, record: WorkRecord, cite_key: str) -> str:
        return record_to_bibtex(record, cite_key, entry_type="article")

    async def to_bibtex_with_cascade(self, record: WorkRecord, cite_key: str) -> str:
        """Serialize a PubMed record, preferring the DOI registry's BibTeX.

        When the record carries a DOI the content-negotiated entry is higher
        fidelity; if that lookup fails the structured fields are used.
        """
        if record.doi and self.doi_registry is not None:
            lookup = await self.doi_registry.lookup_by_identifier(record.doi)
            if lookup:
                return rekey_entry(lookup.bibtex, cite_key)
            return self.doi_registry.to_bibtex(replace(record, work_type="journal-article"), cite_key)
        return self.to_bibtex(record, cite_key)
