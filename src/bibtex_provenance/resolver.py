"""Citation resolution: raw BibTeX -> provenance tier with evidence.

A single entry is resolved by a short-circuiting cascade (first success wins):
  1) DOI hint -> DOI registry lookup,
  2) PMID hint -> PMID registry lookup,
  3) title search on the DOI registry, accepted on a close title match,
  4) otherwise Tier D with the original text preserved.

Only Tier A and Tier D are produced here. Tiers B and C exist in the stored
schema but no step of this resolver emits them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar, Union

from bibtex_provenance.bibtex import (
    BibliographicHint,
    extract_hints,
    extract_title,
    parse_bibtex_entries,
    rekey_entry,
    strip_identifier_field,
)
from bibtex_provenance.registries import RegistryClient
from bibtex_provenance.similarity import similarity

T = TypeVar("T")

TITLE_MATCH_THRESHOLD = 0.85
MIN_TITLE_SEARCH_LENGTH = 10
TITLE_SEARCH_ROWS = 3
RESOLVE_CHUNK_SIZE = 3


# ------------- Enums & Data Classes -------------


class ProvenanceTier(Enum):
    """Confidence that a citation refers to a real, citable work (A strongest)."""

    A = "A"  # machine-verified against a registry
    B = "B"
    C = "C"
    D = "D"  # unverifiable, original text preserved

    @property
    def rank(self) -> int:
        return "ABCD".index(self.value)


class EvidenceType(Enum):
    DOI = "doi"
    PMID = "pmid"
    ISBN = "isbn"
    URL = "url"
    MANUAL = "manual"


@dataclass
class ResolvedCitation:
    """Outcome of resolving one bibliographic entry."""

    cite_key: str
    bibtex: str
    provenance_tier: ProvenanceTier
    evidence_type: EvidenceType | None = None
    evidence_value: str | None = None
    source_doi: str | None = None
    source_pmid: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cite_key": self.cite_key,
            "bibtex": self.bibtex,
            "provenance_tier": self.provenance_tier.value,
            "evidence_type": self.evidence_type.value if self.evidence_type else None,
            "evidence_value": self.evidence_value,
            "source_doi": self.source_doi,
            "source_pmid": self.source_pmid,
        }


@dataclass(frozen=True)
class Found:
    citation: ResolvedCitation


@dataclass(frozen=True)
class NotFound:
    reason: str = ""


StepResult = Union[Found, NotFound]


@dataclass
class ResolutionError:
    cite_key: str
    error: str


@dataclass
class ResolutionResult:
    resolved: list[ResolvedCitation] = field(default_factory=list)
    errors: list[ResolutionError] = field(default_factory=list)


# ------------- Bounded fan-out -------------


async def run_in_chunks(
    items: Sequence[T],
    chunk_size: int,
    worker: Callable[[T], Awaitable[Any]],
    should_continue: Callable[[], bool] | None = None,
) -> list[Any]:
    """Run ``worker`` over ``items`` one fixed-size chunk at a time.

    Every item of a chunk is started together and the whole chunk is awaited
    before the next one starts, which bounds concurrent registry calls to
    ``chunk_size``. A failing item yields its exception in the result list
    instead of aborting its siblings.

    When ``should_continue`` returns False before a chunk, the remaining items
    are left unprocessed and the returned list is shorter than ``items``.
    """
    chunk_size = max(1, chunk_size)
    results: list[Any] = []
    for start in range(0, len(items), chunk_size):
        if should_continue is not None and not should_continue():
            break
        chunk = items[start : start + chunk_size]
        results.extend(await asyncio.gather(*(worker(item) for item in chunk), return_exceptions=True))
    return results


# ------------- Resolver -------------


class CitationResolver:
    """Resolve raw BibTeX entries against injected registry clients.

    Expected failures (network trouble, no match) end in Tier D; only
    programming errors escape ``resolve_entry``.
    """

    def __init__(
        self,
        doi_registry: RegistryClient,
        pmid_registry: RegistryClient,
        logger: logging.Logger | None = None,
        title_threshold: float = TITLE_MATCH_THRESHOLD,
        chunk_size: int = RESOLVE_CHUNK_SIZE,
    ) -> None:
        self.doi_registry = doi_registry
        self.pmid_registry = pmid_registry
        self.logger = logger or logging.getLogger(__name__)
        self.title_threshold = title_threshold
        self.chunk_size = chunk_size

    async def resolve_entry(self, cite_key: str, raw_bibtex: str) -> ResolvedCitation:
        """Resolve a single entry to a provenance tier.

        Args:
            cite_key: Key the caller's in-text markers use; always kept
            raw_bibtex: Entry text, possibly malformed or partial

        Returns:
            ResolvedCitation at Tier A (with evidence) or Tier D
        """
        hints = extract_hints(raw_bibtex)
        steps = (self._resolve_by_doi, self._resolve_by_pmid, self._resolve_by_title)
        for step in steps:
            outcome = await step(cite_key, raw_bibtex, hints)
            if isinstance(outcome, Found):
                return outcome.citation
            if outcome.reason:
                self.logger.debug("%s: %s", cite_key, outcome.reason)
        return self._unresolved(cite_key, raw_bibtex)

    async def _resolve_by_doi(self, cite_key: str, raw_bibtex: str, hints: BibliographicHint) -> StepResult:
        if not hints.doi:
            return NotFound()
        lookup = await self.doi_registry.lookup_by_identifier(hints.doi)
        if lookup is None:
            return NotFound(f"DOI {hints.doi} not found")
        self.logger.debug("%s: verified via DOI %s", cite_key, hints.doi)
        return Found(
            ResolvedCitation(
                cite_key=cite_key,
                bibtex=rekey_entry(lookup.bibtex, cite_key),
                provenance_tier=ProvenanceTier.A,
                evidence_type=EvidenceType.DOI,
                evidence_value=hints.doi,
                source_doi=hints.doi,
                source_pmid=hints.pmid,
            )
        )

    async def _resolve_by_pmid(self, cite_key: str, raw_bibtex: str, hints: BibliographicHint) -> StepResult:
        if not hints.pmid:
            return NotFound()
        lookup = await self.pmid_registry.lookup_by_identifier(hints.pmid)
        if lookup is None:
            return NotFound(f"PMID {hints.pmid} not found")
        self.logger.debug("%s: verified via PMID %s", cite_key, hints.pmid)
        # Built from the summary alone; no DOI cascade on this path
        return Found(
            ResolvedCitation(
                cite_key=cite_key,
                bibtex=self.pmid_registry.to_bibtex(lookup.record, cite_key),
                provenance_tier=ProvenanceTier.A,
                evidence_type=EvidenceType.PMID,
                evidence_value=hints.pmid,
                source_doi=lookup.record.doi,
                source_pmid=hints.pmid,
            )
        )

    async def _resolve_by_title(self, cite_key: str, raw_bibtex: str, hints: BibliographicHint) -> StepResult:
        title = extract_title(raw_bibtex)
        if len(title) <= MIN_TITLE_SEARCH_LENGTH:
            return NotFound()
        result = await self.doi_registry.search_by_text(title, limit=TITLE_SEARCH_ROWS)
        if not result.items:
            return NotFound("title search returned nothing")

        best = result.items[0]
        score = similarity(title, best.title)
        if score < self.title_threshold:
            return NotFound(f"best title match scored {score:.3f}")

        lookup = await self.doi_registry.lookup_by_identifier(best.doi) if best.doi else None
        bibtex = rekey_entry(lookup.bibtex, cite_key) if lookup else strip_identifier_field(raw_bibtex)
        self.logger.debug("%s: verified via title search (score %.3f)", cite_key, score)
        return Found(
            ResolvedCitation(
                cite_key=cite_key,
                bibtex=bibtex,
                provenance_tier=ProvenanceTier.A,
                evidence_type=EvidenceType.DOI if best.doi else None,
                evidence_value=best.doi,
                source_doi=best.doi,
            )
        )

    @staticmethod
    def _unresolved(cite_key: str, raw_bibtex: str) -> ResolvedCitation:
        return ResolvedCitation(
            cite_key=cite_key,
            bibtex=strip_identifier_field(raw_bibtex),
            provenance_tier=ProvenanceTier.D,
        )

    async def resolve_all_entries(self, raw_bibtex: str) -> ResolutionResult:
        """Resolve every entry of a raw multi-entry bibliography.

        Entries run in chunks of ``chunk_size``; an exception from one entry
        is recorded against its key and never aborts the others, so
        ``len(resolved) + len(errors)`` equals the number of parsed entries.
        """
        entries = parse_bibtex_entries(raw_bibtex)
        keys = list(entries)
        outcomes = await run_in_chunks(keys, self.chunk_size, lambda key: self.resolve_entry(key, entries[key]))

        result = ResolutionResult()
        for key, outcome in zip(keys, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.error("Resolution failed for %s: %s", key, outcome)
                result.errors.append(ResolutionError(cite_key=key, error=str(outcome) or type(outcome).__name__))
            else:
                result.resolved.append(outcome)
        return result
