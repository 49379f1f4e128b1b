"""Shared fixtures for bibtex_provenance tests."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import pytest

from bibtex_provenance import (
    CitationResolver,
    InMemoryCitationStore,
    PersistedCitation,
    ProvenanceTier,
    RegistryClient,
    RegistryLookup,
    SearchResult,
    WorkRecord,
)

FIXED_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_lookup(title: str, doi: str | None = None, key: str = "placeholder", year: str = "2020") -> RegistryLookup:
    """A registry answer with complete BibTeX and matching structured fields."""
    bibtex = (
        f"@article{{{key},\n"
        f"  title = {{{title}}},\n"
        f"  author = {{Doe, Jane}},\n"
        f"  journal = {{Journal of Tests}},\n"
        f"  year = {{{year}}}\n"
        f"}}"
    )
    return RegistryLookup(bibtex=bibtex, record=WorkRecord(title=title, doi=doi, work_type="journal-article"))


class FakeRegistry(RegistryClient):
    """In-memory registry with call recording and optional latency or failures."""

    name = "fake"

    def __init__(self, lookups=None, search_items=None, errors=None, delay: float = 0.0):
        self.lookups: dict[str, RegistryLookup] = lookups or {}
        # list -> returned for every query; dict -> per query
        self.search_items = search_items if search_items is not None else []
        self.errors: dict[str, Exception] = errors or {}
        self.delay = delay
        self.lookup_calls: list[str] = []
        self.search_calls: list[tuple[str, int]] = []
        self.active = 0
        self.max_active = 0

    async def _simulate(self, key: str) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if key in self.errors:
                raise self.errors[key]
        finally:
            self.active -= 1

    async def lookup_by_identifier(self, identifier):
        self.lookup_calls.append(identifier)
        await self._simulate(identifier)
        return self.lookups.get(identifier)

    async def search_by_text(self, query, limit=10):
        self.search_calls.append((query, limit))
        await self._simulate(query)
        items = self.search_items.get(query, []) if isinstance(self.search_items, dict) else self.search_items
        return SearchResult(items=list(items[:limit]), total_count=len(items))


class FakePubMed(FakeRegistry):
    async def to_bibtex_with_cascade(self, record, cite_key):
        return self.to_bibtex(record, cite_key)


@pytest.fixture
def logger():
    """Create a test logger."""
    return logging.getLogger("test")


@pytest.fixture
def make_entry():
    """Factory fixture for raw BibTeX entry text."""

    def _make_entry(key: str = "testkey", entry_type: str = "article", **fields) -> str:
        values = {
            "title": "Example Title Of A Paper",
            "author": "Doe, Jane and Smith, John",
            "year": "2020",
        }
        values.update(fields)
        body = ",\n".join(f"  {name} = {{{value}}}" for name, value in values.items() if value is not None)
        return f"@{entry_type}{{{key},\n{body}\n}}"

    return _make_entry


@pytest.fixture
def doi_registry():
    return FakeRegistry()


@pytest.fixture
def pmid_registry():
    return FakeRegistry()


@pytest.fixture
def resolver(doi_registry, pmid_registry, logger):
    return CitationResolver(doi_registry, pmid_registry, logger=logger)


@pytest.fixture
def store():
    return InMemoryCitationStore()


@pytest.fixture
def make_row():
    """Factory fixture for persisted citation rows."""

    def _make_row(cite_key: str, tier: str = "A", project_id: str = "p1", **kwargs) -> PersistedCitation:
        kwargs.setdefault(
            "bibtex",
            f"@article{{{cite_key},\n  title = {{Stored Title For {cite_key}}},\n  author = {{Doe, Jane}},\n"
            f"  journal = {{Journal}},\n  year = {{2020}}\n}}",
        )
        return PersistedCitation(
            project_id=project_id,
            cite_key=cite_key,
            provenance_tier=ProvenanceTier(tier),
            created_at=FIXED_NOW,
            updated_at=FIXED_NOW,
            **kwargs,
        )

    return _make_row
