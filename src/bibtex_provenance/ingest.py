"""Ingestion of generated document fragments into the citation store.

A fragment is prose with ``\\cite{...}`` markers, optionally followed by a
``---BIBTEX---`` trailer. Trailer entries are resolved and merged into the
store without touching locked rows; every marker key left without a row gets
a Tier D placeholder so the document assembler always finds one.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from bibtex_provenance.bibtex import extract_cite_keys, split_trailer
from bibtex_provenance.registries import RegistryClient
from bibtex_provenance.resolver import (
    CitationResolver,
    ProvenanceTier,
    ResolutionError,
    ResolvedCitation,
    run_in_chunks,
)
from bibtex_provenance.store import CitationStore, PersistedCitation, utc_now

ORPHAN_KEY_RE = re.compile(r"^([A-Za-z]+)(\d{4})$")


@dataclass
class IngestionSummary:
    """Counts for one ingestion run; ``total`` is the number of rows written."""

    total: int = 0
    tier_a: int = 0
    tier_d: int = 0
    errors: int = 0
    skipped_locked: int = 0
    orphans_created: int = 0
    salvaged: bool = False
    error_details: list[ResolutionError] = field(default_factory=list)


def orphan_search_query(cite_key: str) -> str | None:
    """``smith2023`` -> ``"smith 2023"``; None when the key has another shape."""
    m = ORPHAN_KEY_RE.match(cite_key)
    return f"{m.group(1)} {m.group(2)}" if m else None


class IngestionPipeline:
    def __init__(
        self,
        resolver: CitationResolver,
        store: CitationStore,
        doi_registry: RegistryClient | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.resolver = resolver
        self.store = store
        self.doi_registry = doi_registry or resolver.doi_registry
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

    async def ingest(self, project_id: str, fragment: str) -> IngestionSummary:
        """Resolve and persist the citations of one generated fragment.

        Args:
            project_id: Owning project of every row written
            fragment: Generated text, trailer optional

        Returns:
            IngestionSummary; resolution errors are counted, never raised
        """
        split = split_trailer(fragment)
        summary = IngestionSummary(salvaged=split.salvaged)
        if split.salvaged:
            self.logger.info("No bibliography marker found; salvaged entries from the text")

        resolved_keys: set[str] = set()
        if split.bib:
            result = await self.resolver.resolve_all_entries(split.bib)
            summary.errors = len(result.errors)
            summary.error_details = result.errors
            for citation in result.resolved:
                resolved_keys.add(citation.cite_key)
                if self._write_resolved(project_id, citation):
                    summary.total += 1
                    if citation.provenance_tier is ProvenanceTier.A:
                        summary.tier_a += 1
                    else:
                        summary.tier_d += 1
                else:
                    summary.skipped_locked += 1

        await self._create_orphan_placeholders(project_id, split.body, resolved_keys, summary)

        self.logger.info(
            "Ingested %d citation(s) for %s: %d Tier A, %d Tier D, %d error(s), %d locked, %d orphan(s)",
            summary.total,
            project_id,
            summary.tier_a,
            summary.tier_d,
            summary.errors,
            summary.skipped_locked,
            summary.orphans_created,
        )
        return summary

    def _write_resolved(self, project_id: str, citation: ResolvedCitation) -> bool:
        existing = self.store.get(project_id, citation.cite_key)
        if existing is not None and existing.is_locked:
            self.logger.debug("Skipping locked citation %s", citation.cite_key)
            return False
        self.store.upsert(PersistedCitation.from_resolved(project_id, citation, now=self.clock()))
        return True

    async def _create_orphan_placeholders(
        self, project_id: str, body: str, resolved_keys: set[str], summary: IngestionSummary
    ) -> None:
        existing = self.store.keys(project_id)
        orphans = [k for k in extract_cite_keys(body) if k not in resolved_keys and k not in existing]
        if not orphans:
            return

        candidate_dois = await run_in_chunks(orphans, self.resolver.chunk_size, self._find_orphan_doi)
        for key, doi in zip(orphans, candidate_dois):
            if isinstance(doi, BaseException):
                self.logger.warning("Orphan lookup failed for %s: %s", key, doi)
                doi = None
            now = self.clock()
            # Key-based search hits are unverified guesses; only the DOI is kept
            self.store.upsert(
                PersistedCitation(
                    project_id=project_id,
                    cite_key=key,
                    bibtex="",
                    provenance_tier=ProvenanceTier.D,
                    source_doi=doi,
                    created_at=now,
                    updated_at=now,
                )
            )
            summary.total += 1
            summary.tier_d += 1
            summary.orphans_created += 1

    async def _find_orphan_doi(self, cite_key: str) -> str | None:
        query = orphan_search_query(cite_key)
        if query is None:
            return None
        result = await self.doi_registry.search_by_text(query, limit=1)
        doi = result.items[0].doi if result.items else None
        if doi:
            self.logger.debug("Orphan %s: candidate DOI %s", cite_key, doi)
        return doi
