"""Citation integrity audit and reference-list helpers for document assembly.

Pure functions over persisted rows; no network access.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from bibtex_provenance.resolver import ProvenanceTier
from bibtex_provenance.store import PersistedCitation


@dataclass
class MissingCitation:
    cite_key: str
    used_in_sections: list[int]


@dataclass
class OrphanedCitation:
    cite_key: str
    tier: ProvenanceTier


@dataclass
class AuditResult:
    """Outcome of a bidirectional audit between sections and stored rows.

    Attributes:
        missing_citations: Keys cited in sections with no stored row
        orphaned_citations: Stored rows no section cites
        tier_d_blocking: Tier D rows that sections actively cite
        total_citations: Number of stored rows
        total_cite_commands: Keys cited, counted once per section list entry
        integrity_score: 0-100, share of (key, section) usages backed by a
            non-Tier-D row; 100 when nothing is cited
    """

    missing_citations: list[MissingCitation] = field(default_factory=list)
    orphaned_citations: list[OrphanedCitation] = field(default_factory=list)
    tier_d_blocking: list[MissingCitation] = field(default_factory=list)
    total_citations: int = 0
    total_cite_commands: int = 0
    integrity_score: int = 100


def audit_citations(
    section_keys: Mapping[int, Iterable[str]], rows: Iterable[PersistedCitation]
) -> AuditResult:
    """Audit cited keys per section against the stored rows.

    Args:
        section_keys: Section number -> cite keys used in that section
        rows: Stored rows of the project
    """
    rows = list(rows)
    used: dict[str, set[int]] = {}
    total_commands = 0
    for section, keys in section_keys.items():
        for key in keys:
            used.setdefault(key, set()).add(section)
            total_commands += 1

    by_key = {row.cite_key: row for row in rows}
    result = AuditResult(total_citations=len(rows), total_cite_commands=total_commands)

    usages = 0
    matched = 0
    for key, sections in used.items():
        row = by_key.get(key)
        usages += len(sections)
        if row is None:
            result.missing_citations.append(MissingCitation(key, sorted(sections)))
        elif row.provenance_tier is ProvenanceTier.D:
            result.tier_d_blocking.append(MissingCitation(key, sorted(sections)))
        else:
            matched += len(sections)

    result.orphaned_citations = [OrphanedCitation(r.cite_key, r.provenance_tier) for r in rows if r.cite_key not in used]
    result.integrity_score = round(matched / usages * 100) if usages else 100
    return result


def build_reference_list(rows: Iterable[PersistedCitation]) -> str:
    """Concatenate the BibTeX of every citable row.

    Tier D rows are left out of the reference list entirely. Rows sharing a
    key are deduplicated with the later row taking precedence.
    """
    entries: dict[str, str] = {}
    for row in rows:
        entries.pop(row.cite_key, None)
        if row.provenance_tier is not ProvenanceTier.D and row.bibtex.strip():
            entries[row.cite_key] = row.bibtex.strip()
    return "\n\n".join(entries.values())


def unresolved_marker_keys(rows: Iterable[PersistedCitation]) -> set[str]:
    """Keys whose in-text markers must be replaced by an "unresolved" note."""
    return {row.cite_key for row in rows if row.provenance_tier is ProvenanceTier.D}
