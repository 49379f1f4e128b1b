"""Re-verification checkpoint over persisted citations.

Deterministic registry checks, no generation. Three checks run in order:
  1) ref-doi-match: stored title vs the registry's current title for every
     Tier A/B row carrying a DOI,
  2) ref-tier-d: every Tier D row re-run through the resolver,
  3) ref-entry-integrity: required BibTeX fields present on every row.

Network phases share a total wall-clock budget checked before each chunk and
wrap every call in a shorter per-call timer. Upgrades found by check 2 are
returned to the caller, never written during the pass.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from bibtex_provenance.bibtex import extract_title
from bibtex_provenance.registries import RegistryClient
from bibtex_provenance.resolver import (
    CitationResolver,
    EvidenceType,
    ProvenanceTier,
    ResolvedCitation,
    run_in_chunks,
)
from bibtex_provenance.similarity import similarity
from bibtex_provenance.store import CitationStore, PersistedCitation, utc_now

T = TypeVar("T")

CHECKPOINT_CHUNK_SIZE = 5
CALL_TIMEOUT = 8.0
TOTAL_BUDGET = 60.0
DRIFT_THRESHOLD = 0.80
DRIFT_BLOCKING_COUNT = 3
TIER_D_BLOCKING_RATIO = 0.10

NOT_RECHECKED = "Not re-checked: verification time budget exhausted"
UNRESOLVED_MESSAGE = "Could not verify via DOI, PMID, or title search"

REQUIRED_FIELDS = (
    ("author", ("author",)),
    ("title", ("title",)),
    ("year", ("year",)),
    ("journal/publisher", ("journal", "publisher", "booktitle")),
)

logger = logging.getLogger(__name__)


# ------------- Report Types -------------


class CheckStatus(Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass
class CheckDetail:
    item: str
    message: str


@dataclass
class VerificationCheck:
    name: str
    status: CheckStatus
    blocking: bool
    message: str
    details: list[CheckDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "blocking": self.blocking,
            "message": self.message,
            "details": [asdict(d) for d in self.details],
        }


@dataclass
class VerificationReport:
    checks: list[VerificationCheck]
    overall_pass: bool
    blocking_count: int
    warning_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "checks": [c.to_dict() for c in self.checks],
            "overall_pass": self.overall_pass,
            "blocking_count": self.blocking_count,
            "warning_count": self.warning_count,
        }


def build_report(checks: list[VerificationCheck]) -> VerificationReport:
    """Summarize checks; the report passes iff no check is a blocking failure."""
    blocking = sum(1 for c in checks if c.blocking and c.status is CheckStatus.FAIL)
    warnings = sum(1 for c in checks if c.status is CheckStatus.WARN)
    return VerificationReport(
        checks=checks,
        overall_pass=blocking == 0,
        blocking_count=blocking,
        warning_count=warnings,
    )


@dataclass
class VerificationProgress:
    step: str
    current: int
    total: int


@dataclass
class UpgradedEntry:
    """A Tier D row that now resolves; pending until the caller persists it."""

    cite_key: str
    new_tier: ProvenanceTier
    new_bibtex: str
    evidence_type: EvidenceType | None = None
    evidence_value: str | None = None
    source_doi: str | None = None
    source_pmid: str | None = None

    @classmethod
    def from_resolved(cls, citation: ResolvedCitation) -> UpgradedEntry:
        return cls(
            cite_key=citation.cite_key,
            new_tier=citation.provenance_tier,
            new_bibtex=citation.bibtex,
            evidence_type=citation.evidence_type,
            evidence_value=citation.evidence_value,
            source_doi=citation.source_doi,
            source_pmid=citation.source_pmid,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UpgradedEntry:
        evidence = data.get("evidence_type")
        return cls(
            cite_key=data["cite_key"],
            new_tier=ProvenanceTier(data["new_tier"]),
            new_bibtex=data.get("new_bibtex") or "",
            evidence_type=EvidenceType(evidence) if evidence else None,
            evidence_value=data.get("evidence_value"),
            source_doi=data.get("source_doi"),
            source_pmid=data.get("source_pmid"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cite_key": self.cite_key,
            "new_tier": self.new_tier.value,
            "new_bibtex": self.new_bibtex,
            "evidence_type": self.evidence_type.value if self.evidence_type else None,
            "evidence_value": self.evidence_value,
            "source_doi": self.source_doi,
            "source_pmid": self.source_pmid,
        }


@dataclass
class VerificationResult:
    report: VerificationReport
    upgraded_entries: list[UpgradedEntry] = field(default_factory=list)
    still_unresolved: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # abandoned when the budget ran out

    @property
    def upgraded_count(self) -> int:
        return len(self.upgraded_entries)

    def to_dict(self) -> dict[str, Any]:
        return {
            "report": self.report.to_dict(),
            "upgraded_count": self.upgraded_count,
            "upgraded_entries": [u.to_dict() for u in self.upgraded_entries],
            "still_unresolved": list(self.still_unresolved),
            "skipped": list(self.skipped),
        }


# ------------- Helpers -------------


def tier_d_threshold(total: int, ratio: float = TIER_D_BLOCKING_RATIO) -> int:
    """Unresolved citations tolerated: ``ceil(ratio * total)``."""
    return math.ceil(round(total * ratio, 9))


def missing_required_fields(bibtex: str) -> list[str]:
    missing = []
    for label, names in REQUIRED_FIELDS:
        if not any(re.search(rf"(?<![\w-]){name}\s*=", bibtex or "", re.IGNORECASE) for name in names):
            missing.append(label)
    return missing


def _with_skipped(check: VerificationCheck, skipped: list[str]) -> VerificationCheck:
    """Report abandoned items; a pass that did not see everything is a warning."""
    if not skipped:
        return check
    details = check.details + [CheckDetail(item=key, message=NOT_RECHECKED) for key in skipped]
    if check.status is CheckStatus.PASS:
        return replace(
            check,
            status=CheckStatus.WARN,
            message=f"{len(skipped)} citation(s) not re-checked (time budget exhausted)",
            details=details,
        )
    return replace(check, message=f"{check.message}; {len(skipped)} not re-checked", details=details)


# ------------- Checkpoint -------------


class ReverificationCheckpoint:
    """User-triggered re-verification pass with progress reporting."""

    def __init__(
        self,
        resolver: CitationResolver,
        doi_registry: RegistryClient | None = None,
        logger: logging.Logger | None = None,
        chunk_size: int = CHECKPOINT_CHUNK_SIZE,
        call_timeout: float = CALL_TIMEOUT,
        budget: float = TOTAL_BUDGET,
        drift_threshold: float = DRIFT_THRESHOLD,
        drift_blocking_count: int = DRIFT_BLOCKING_COUNT,
        tier_d_blocking_ratio: float = TIER_D_BLOCKING_RATIO,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.resolver = resolver
        self.doi_registry = doi_registry or resolver.doi_registry
        self.logger = logger or logging.getLogger(__name__)
        self.chunk_size = chunk_size
        self.call_timeout = call_timeout
        self.budget = budget
        self.drift_threshold = drift_threshold
        self.drift_blocking_count = drift_blocking_count
        self.tier_d_blocking_ratio = tier_d_blocking_ratio
        self.clock = clock

    async def _timed(self, call: Awaitable[T], cite_key: str) -> T | None:
        """Race ``call`` against the per-call timer; a timeout means no answer."""
        try:
            return await asyncio.wait_for(call, self.call_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Registry call for %s timed out after %.1fs", cite_key, self.call_timeout)
            return None

    async def run(
        self,
        rows: list[PersistedCitation],
        on_progress: Callable[[VerificationProgress], None] | None = None,
    ) -> VerificationResult:
        """Run the three checks over one project's rows.

        Args:
            rows: Persisted citations of the project
            on_progress: Called once per processed item and once at the end

        Returns:
            VerificationResult with the report and pending upgrades
        """
        start = self.clock()

        def within_budget() -> bool:
            return self.clock() - start <= self.budget

        doi_rows = [
            r for r in rows if r.provenance_tier in (ProvenanceTier.A, ProvenanceTier.B) and r.source_doi
        ]
        tier_d_rows = [r for r in rows if r.provenance_tier is ProvenanceTier.D]
        total = len(doi_rows) + len(tier_d_rows) + len(rows)
        current = 0

        def progress(step: str) -> None:
            nonlocal current
            current += 1
            if on_progress is not None:
                on_progress(VerificationProgress(step=step, current=current, total=total))

        # Check 1: stored title vs registry title
        async def check_drift(row: PersistedCitation) -> CheckDetail | None:
            progress(f"Verifying {row.cite_key} (DOI match)")
            lookup = await self._timed(self.doi_registry.lookup_by_identifier(row.source_doi or ""), row.cite_key)
            if lookup is None or not lookup.record.title:
                return None
            local_title = extract_title(row.bibtex)
            if not local_title:
                return None
            score = similarity(local_title, lookup.record.title)
            if score >= self.drift_threshold:
                return None
            return CheckDetail(
                item=row.cite_key,
                message=(
                    f'Title mismatch (similarity: {score:.0%}): local="{local_title[:60]}" '
                    f'vs DOI="{lookup.record.title[:60]}"'
                ),
            )

        drift_outcomes = await run_in_chunks(doi_rows, self.chunk_size, check_drift, within_budget)
        mismatches: list[CheckDetail] = []
        for row, outcome in zip(doi_rows, drift_outcomes):
            if isinstance(outcome, BaseException):
                self.logger.warning("DOI match check failed for %s: %s", row.cite_key, outcome)
            elif outcome is not None:
                mismatches.append(outcome)
        drift_skipped = [r.cite_key for r in doi_rows[len(drift_outcomes) :]]

        # Check 2: Tier D re-resolution
        async def reresolve(row: PersistedCitation) -> ResolvedCitation | None:
            progress(f"Re-resolving {row.cite_key} via PubMed/CrossRef")
            return await self._timed(self.resolver.resolve_entry(row.cite_key, row.bibtex), row.cite_key)

        resolve_outcomes = await run_in_chunks(tier_d_rows, self.chunk_size, reresolve, within_budget)
        upgraded: list[UpgradedEntry] = []
        still_unresolved: list[str] = []
        for row, outcome in zip(tier_d_rows, resolve_outcomes):
            if isinstance(outcome, BaseException):
                self.logger.warning("Re-resolution failed for %s: %s", row.cite_key, outcome)
                still_unresolved.append(row.cite_key)
            elif outcome is not None and outcome.provenance_tier is not ProvenanceTier.D:
                upgraded.append(UpgradedEntry.from_resolved(outcome))
            else:
                still_unresolved.append(row.cite_key)
        resolve_skipped = [r.cite_key for r in tier_d_rows[len(resolve_outcomes) :]]

        # Check 3: entry integrity (local, always runs)
        integrity: list[CheckDetail] = []
        for row in rows:
            progress(f"Checking {row.cite_key} (entry integrity)")
            missing = missing_required_fields(row.bibtex)
            if missing:
                integrity.append(CheckDetail(item=row.cite_key, message=f"Missing fields: {', '.join(missing)}"))

        if on_progress is not None:
            on_progress(VerificationProgress(step="Verification complete", current=total, total=total))

        skipped = drift_skipped + resolve_skipped
        if skipped:
            self.logger.warning("Verification budget exhausted; %d citation(s) not re-checked", len(skipped))

        checks = [
            _with_skipped(self._drift_check(mismatches), drift_skipped),
            _with_skipped(self._tier_d_check(still_unresolved, len(upgraded), len(rows)), resolve_skipped),
            self._integrity_check(integrity),
        ]
        return VerificationResult(
            report=build_report(checks),
            upgraded_entries=upgraded,
            still_unresolved=still_unresolved,
            skipped=skipped,
        )

    def _drift_check(self, mismatches: list[CheckDetail]) -> VerificationCheck:
        if len(mismatches) >= self.drift_blocking_count:
            return VerificationCheck(
                name="ref-doi-match",
                status=CheckStatus.FAIL,
                blocking=True,
                message=f"{len(mismatches)} DOI→title mismatch(es) found",
                details=mismatches,
            )
        if mismatches:
            return VerificationCheck(
                name="ref-doi-match",
                status=CheckStatus.WARN,
                blocking=False,
                message=f"{len(mismatches)} DOI→title mismatch(es) (below blocking threshold)",
                details=mismatches,
            )
        return VerificationCheck(
            name="ref-doi-match", status=CheckStatus.PASS, blocking=False, message="All DOI→title matches verified"
        )

    def _tier_d_check(self, still_unresolved: list[str], upgraded_count: int, total: int) -> VerificationCheck:
        threshold = tier_d_threshold(total, self.tier_d_blocking_ratio)
        details = [CheckDetail(item=key, message=UNRESOLVED_MESSAGE) for key in still_unresolved]
        if len(still_unresolved) > threshold:
            return VerificationCheck(
                name="ref-tier-d",
                status=CheckStatus.FAIL,
                blocking=True,
                message=f"{len(still_unresolved)} Tier D citation(s) remain (>{threshold} threshold)",
                details=details,
            )
        if still_unresolved:
            return VerificationCheck(
                name="ref-tier-d",
                status=CheckStatus.WARN,
                blocking=False,
                message=f"{len(still_unresolved)} Tier D citation(s) remain (within threshold)",
                details=details,
            )
        return VerificationCheck(
            name="ref-tier-d",
            status=CheckStatus.PASS,
            blocking=False,
            message=f"All citations verified ({upgraded_count} upgraded)",
        )

    @staticmethod
    def _integrity_check(details: list[CheckDetail]) -> VerificationCheck:
        if details:
            return VerificationCheck(
                name="ref-entry-integrity",
                status=CheckStatus.WARN,
                blocking=False,
                message=f"{len(details)} BibTeX entry(ies) missing required fields",
                details=details,
            )
        return VerificationCheck(
            name="ref-entry-integrity",
            status=CheckStatus.PASS,
            blocking=False,
            message="All BibTeX entries have required fields",
        )


# ------------- Event Stream -------------


async def verification_events(
    checkpoint: ReverificationCheckpoint, rows: list[PersistedCitation]
) -> AsyncIterator[dict[str, Any]]:
    """Run the checkpoint and yield progress, then a final complete or error event."""
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def on_progress(p: VerificationProgress) -> None:
        queue.put_nowait({"type": "progress", **asdict(p)})

    task = asyncio.ensure_future(checkpoint.run(rows, on_progress))
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                yield getter.result()
                continue
            getter.cancel()
            break

        while not queue.empty():
            yield queue.get_nowait()

        try:
            result = task.result()
        except Exception as e:
            logger.error("Verification failed: %s", e)
            yield {"type": "error", "message": str(e) or type(e).__name__}
            return
        yield {"type": "complete", **result.to_dict()}
    finally:
        if not task.done():
            task.cancel()


def format_sse(event: dict[str, Any]) -> str:
    """Serialize an event as one server-sent-events ``data:`` frame."""
    return f"data: {json.dumps(event)}\n\n"


# ------------- Persistence Helpers -------------


def apply_upgrades(
    store: CitationStore,
    project_id: str,
    upgrades: Iterable[UpgradedEntry],
    now: datetime | None = None,
) -> int:
    """Persist reviewed upgrades; rows locked since the pass are left alone.

    Returns:
        Number of rows written
    """
    written = 0
    for upgrade in upgrades:
        existing = store.get(project_id, upgrade.cite_key)
        if existing is None:
            logger.debug("Upgrade for %s dropped: row no longer exists", upgrade.cite_key)
            continue
        if existing.is_locked:
            logger.debug("Upgrade for %s dropped: row is locked", upgrade.cite_key)
            continue
        stamp = now or utc_now()
        store.upsert(
            replace(
                existing,
                bibtex=upgrade.new_bibtex,
                provenance_tier=upgrade.new_tier,
                evidence_type=upgrade.evidence_type,
                evidence_value=upgrade.evidence_value,
                source_doi=upgrade.source_doi or existing.source_doi,
                source_pmid=upgrade.source_pmid or existing.source_pmid,
                verified_at=stamp if upgrade.new_tier is ProvenanceTier.A else None,
            )
        )
        written += 1
    return written


def quick_tier_d_check(
    rows: list[PersistedCitation], ratio: float = TIER_D_BLOCKING_RATIO
) -> VerificationReport:
    """Network-free Tier D gate for approving a project after a full pass."""
    tier_d = sum(1 for r in rows if r.provenance_tier is ProvenanceTier.D)
    threshold = tier_d_threshold(len(rows), ratio)
    if tier_d > threshold:
        check = VerificationCheck(
            name="ref-tier-d-quick",
            status=CheckStatus.FAIL,
            blocking=True,
            message=f"{tier_d} Tier D citation(s) remain (>{threshold} threshold)",
        )
    else:
        check = VerificationCheck(
            name="ref-tier-d-quick",
            status=CheckStatus.PASS,
            blocking=False,
            message=f"Tier D citations within threshold ({tier_d}/{threshold})",
        )
    return build_report([check])
