"""Pre-seed real PubMed references for a text generator's prompt.

Queries of decreasing specificity are built from project metadata, run
concurrently against PubMed, deduplicated by PMID and converted to BibTeX so
that the generator can cite works that are known to exist.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from bibtex_provenance.registries import PubMedClient
from bibtex_provenance.utils import WorkRecord

TIME_BUDGET = 8.0
DEFAULT_MAX_REFS = 20

logger = logging.getLogger(__name__)


@dataclass
class PreSeededReference:
    pmid: str
    cite_key: str
    bibtex: str
    record: WorkRecord


def build_search_queries(
    title: str,
    keywords: list[str],
    study_type: str | None = None,
    department: str | None = None,
) -> list[str]:
    """Build 2-3 PubMed queries of decreasing specificity."""
    queries: list[str] = []

    title_words = " ".join([w for w in re.sub(r"[^a-zA-Z0-9\s]", "", title or "").split() if len(w) > 3][:5])
    if title_words:
        queries.append(f"{title_words} {study_type}" if study_type else title_words)

    if keywords:
        queries.append(" ".join(keywords[:4]))

    if department and len(keywords) >= 2:
        queries.append(f"{department} {' '.join(keywords[:2])}")

    return queries


def generate_cite_key(record: WorkRecord, used: set[str]) -> str:
    """``<first-author surname><year>``, suffixed a-z on collision."""
    first_author = record.authors[0] if record.authors else "unknown"
    surname = re.sub(r"[^a-z]", "", re.split(r"[\s,]+", first_author.strip())[0].lower()) or "unknown"
    base = f"{surname}{record.year or 'nd'}"
    if base not in used:
        return base
    for suffix in "abcdefghijklmnopqrstuvwxyz":
        candidate = f"{base}{suffix}"
        if candidate not in used:
            return candidate
    return f"{base}_{record.pmid}"


async def preseed_references(
    pubmed: PubMedClient,
    title: str,
    keywords: list[str],
    study_type: str | None = None,
    department: str | None = None,
    max_refs: int = DEFAULT_MAX_REFS,
    budget: float = TIME_BUDGET,
    clock: Callable[[], float] = time.monotonic,
) -> list[PreSeededReference]:
    """Search PubMed with several queries and convert the hits to BibTeX.

    Searches run concurrently under ``budget`` seconds; conversion stops at
    the same deadline, so a slow registry yields fewer references rather
    than a late answer.
    """
    queries = build_search_queries(title, keywords, study_type, department)
    if not queries:
        return []

    deadline = clock() + budget
    per_query = math.ceil(max_refs / len(queries)) + 5
    try:
        results = await asyncio.wait_for(
            asyncio.gather(*(pubmed.search_by_text(q, limit=per_query) for q in queries), return_exceptions=True),
            budget,
        )
    except asyncio.TimeoutError:
        logger.warning("PubMed pre-seeding timed out after %.1fs", budget)
        return []

    seen: set[str] = set()
    records: list[WorkRecord] = []
    for query, result in zip(queries, results):
        if isinstance(result, BaseException):
            logger.debug("Pre-seed query '%s' failed: %s", query, result)
            continue
        for record in result.items:
            if record.pmid and record.pmid not in seen:
                seen.add(record.pmid)
                records.append(record)

    refs: list[PreSeededReference] = []
    used: set[str] = set()
    for record in records[:max_refs]:
        if clock() > deadline:
            break
        cite_key = generate_cite_key(record, used)
        bibtex = await pubmed.to_bibtex_with_cascade(record, cite_key)
        used.add(cite_key)
        refs.append(PreSeededReference(pmid=record.pmid or "", cite_key=cite_key, bibtex=bibtex, record=record))
    return refs


def format_references_for_prompt(refs: list[PreSeededReference]) -> str:
    """Render pre-seeded references as a prompt block with a BibTeX appendix."""
    if not refs:
        return ""
    lines = []
    for r in refs:
        authors = ", ".join(r.record.authors[:3]) + (" et al." if len(r.record.authors) > 3 else "")
        lines.append(f"\\cite{{{r.cite_key}}} - {authors} ({r.record.year or 'n.d.'}). {r.record.title}")
    bibtex_block = "\n\n".join(r.bibtex for r in refs)
    return (
        "\n\n--- AVAILABLE REFERENCES ---\n"
        "Use these verified references where appropriate. You may also generate additional references, "
        "but prefer these.\n\n"
        + "\n".join(lines)
        + "\n\n--- PRE-SEEDED BIBTEX ---\n"
        "Include these entries in your ---BIBTEX--- section if you use the corresponding \\cite{key}.\n\n"
        + bibtex_block
        + "\n"
    )
