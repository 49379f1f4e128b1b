"""Tests for the re-verification checkpoint."""

from __future__ import annotations

import asyncio
import itertools

import pytest

from bibtex_provenance.checkpoint import (
    NOT_RECHECKED,
    CheckStatus,
    ReverificationCheckpoint,
    UpgradedEntry,
    VerificationCheck,
    apply_upgrades,
    build_report,
    format_sse,
    missing_required_fields,
    quick_tier_d_check,
    tier_d_threshold,
    verification_events,
)
from bibtex_provenance.resolver import CitationResolver, EvidenceType, ProvenanceTier
from bibtex_provenance.utils import WorkRecord
from conftest import FIXED_NOW, FakeRegistry, make_lookup


@pytest.fixture
def checkpoint(resolver, logger):
    return ReverificationCheckpoint(resolver, logger=logger)


def check_named(result, name: str) -> VerificationCheck:
    return next(c for c in result.report.checks if c.name == name)


def collect(agen):
    async def _collect():
        return [event async for event in agen]

    return asyncio.run(_collect())


class TestReportBuilding:
    def test_build_report_counts(self):
        checks = [
            VerificationCheck("a", CheckStatus.FAIL, True, "x"),
            VerificationCheck("b", CheckStatus.WARN, False, "y"),
            VerificationCheck("c", CheckStatus.FAIL, False, "z"),
        ]
        report = build_report(checks)
        assert report.blocking_count == 1
        assert report.warning_count == 1
        assert not report.overall_pass
        assert report.to_dict()["checks"][0]["status"] == "fail"

    def test_tier_d_threshold_rounds_up(self):
        assert tier_d_threshold(100) == 10
        assert tier_d_threshold(12) == 2
        assert tier_d_threshold(0) == 0

    def test_missing_required_fields(self):
        assert missing_required_fields("@a{k, author={X}, title={T}, year={2020}, booktitle={P}}") == []
        assert missing_required_fields("@a{k, booktitle={P}}") == ["author", "title", "year"]
        assert missing_required_fields("") == ["author", "title", "year", "journal/publisher"]


class TestTierDCheck:
    def test_twelve_of_hundred_unresolved_is_blocking(self, checkpoint, make_row):
        rows = [make_row(f"a{i}") for i in range(88)] + [make_row(f"d{i}", tier="D") for i in range(12)]
        result = asyncio.run(checkpoint.run(rows))

        check = check_named(result, "ref-tier-d")
        assert check.status is CheckStatus.FAIL
        assert check.blocking
        assert len(result.still_unresolved) == 12
        assert not result.report.overall_pass
        assert result.report.blocking_count == 1

    def test_within_threshold_is_warning(self, checkpoint, make_row):
        rows = [make_row(f"a{i}") for i in range(90)] + [make_row(f"d{i}", tier="D") for i in range(10)]
        result = asyncio.run(checkpoint.run(rows))

        check = check_named(result, "ref-tier-d")
        assert check.status is CheckStatus.WARN
        assert not check.blocking
        assert result.report.overall_pass

    def test_upgrades_are_collected_not_written(self, doi_registry, checkpoint, store, make_row):
        title = "Attention Is All You Need"
        row = make_row("vaswani2017", tier="D", bibtex=f"@article{{vaswani2017,\n  title = {{{title}}}\n}}")
        store.upsert(row)
        doi_registry.search_items = [WorkRecord(title=title, doi="10.5/att")]
        doi_registry.lookups["10.5/att"] = make_lookup(title, doi="10.5/att")

        result = asyncio.run(checkpoint.run([row]))

        assert result.upgraded_count == 1
        upgrade = result.upgraded_entries[0]
        assert upgrade.new_tier is ProvenanceTier.A
        assert upgrade.evidence_type is EvidenceType.DOI
        assert upgrade.new_bibtex.startswith("@article{vaswani2017,")
        assert check_named(result, "ref-tier-d").status is CheckStatus.PASS
        assert store.get("p1", "vaswani2017").provenance_tier is ProvenanceTier.D


class TestDriftCheck:
    def _rows(self, make_row, n):
        return [make_row(f"k{i}", source_doi=f"10.1/{i}") for i in range(n)]

    def _registry_titles(self, doi_registry, n, title):
        for i in range(n):
            doi_registry.lookups[f"10.1/{i}"] = make_lookup(title, doi=f"10.1/{i}")

    def test_three_mismatches_block(self, doi_registry, checkpoint, make_row):
        self._registry_titles(doi_registry, 3, "Completely unrelated words here")
        result = asyncio.run(checkpoint.run(self._rows(make_row, 3)))

        check = check_named(result, "ref-doi-match")
        assert check.status is CheckStatus.FAIL
        assert check.blocking
        assert {d.item for d in check.details} == {"k0", "k1", "k2"}
        assert "Title mismatch" in check.details[0].message

    def test_two_mismatches_warn(self, doi_registry, checkpoint, make_row):
        self._registry_titles(doi_registry, 2, "Completely unrelated words here")
        result = asyncio.run(checkpoint.run(self._rows(make_row, 2)))

        check = check_named(result, "ref-doi-match")
        assert check.status is CheckStatus.WARN
        assert not check.blocking

    def test_matching_titles_pass(self, doi_registry, checkpoint, make_row):
        rows = self._rows(make_row, 2)
        for i in range(2):
            doi_registry.lookups[f"10.1/{i}"] = make_lookup(f"Stored title for k{i}", doi=f"10.1/{i}")
        result = asyncio.run(checkpoint.run(rows))
        assert check_named(result, "ref-doi-match").status is CheckStatus.PASS

    def test_failed_lookup_is_not_a_mismatch(self, checkpoint, make_row):
        result = asyncio.run(checkpoint.run(self._rows(make_row, 4)))
        assert check_named(result, "ref-doi-match").status is CheckStatus.PASS

    def test_tier_d_rows_are_not_drift_checked(self, doi_registry, checkpoint, make_row):
        asyncio.run(checkpoint.run([make_row("d", tier="D", source_doi="10.1/d")]))
        assert "10.1/d" not in doi_registry.lookup_calls


class TestIntegrityCheck:
    def test_missing_fields_warn_only(self, checkpoint, make_row):
        row = make_row("noyear", bibtex="@article{noyear,\n  title = {T},\n  author = {A},\n  journal = {J}\n}")
        result = asyncio.run(checkpoint.run([row]))

        check = check_named(result, "ref-entry-integrity")
        assert check.status is CheckStatus.WARN
        assert not check.blocking
        assert check.details[0].message == "Missing fields: year"


class TestBudgetAndTimeouts:
    def test_exhausted_budget_reports_not_rechecked(self, resolver, logger, make_row):
        ticks = itertools.chain([0.0], itertools.repeat(1000.0))
        checkpoint = ReverificationCheckpoint(resolver, logger=logger, clock=lambda: next(ticks))
        rows = [make_row("a", source_doi="10.1/a"), make_row("d", tier="D")]
        result = asyncio.run(checkpoint.run(rows))

        assert result.skipped == ["a", "d"]
        drift = check_named(result, "ref-doi-match")
        assert drift.status is CheckStatus.WARN
        assert drift.details[0].message == NOT_RECHECKED
        tier_d = check_named(result, "ref-tier-d")
        assert tier_d.status is CheckStatus.WARN
        assert [d.item for d in tier_d.details] == ["d"]
        assert result.still_unresolved == []
        assert check_named(result, "ref-entry-integrity").status is CheckStatus.PASS
        assert result.report.warning_count == 2

    def test_stuck_call_counts_as_no_answer(self, make_row, logger):
        slow = FakeRegistry(
            lookups={"10.1/a": make_lookup("Something else entirely", doi="10.1/a")},
            delay=0.5,
        )
        checkpoint = ReverificationCheckpoint(CitationResolver(slow, FakeRegistry()), logger=logger, call_timeout=0.01)
        rows = [make_row("a", source_doi="10.1/a"), make_row("d", tier="D")]
        result = asyncio.run(checkpoint.run(rows))

        assert check_named(result, "ref-doi-match").status is CheckStatus.PASS
        assert result.still_unresolved == ["d"]

    def test_resolver_exception_counts_as_unresolved(self, make_row, logger):
        broken = FakeRegistry(errors={"Stored Title For d": RuntimeError("bug")})
        checkpoint = ReverificationCheckpoint(CitationResolver(broken, FakeRegistry()), logger=logger)
        result = asyncio.run(checkpoint.run([make_row("d", tier="D")]))
        assert result.still_unresolved == ["d"]


class TestProgress:
    def test_progress_counts_every_item(self, checkpoint, make_row):
        events = []
        rows = [make_row("a", source_doi="10.1/a"), make_row("b"), make_row("d", tier="D")]
        asyncio.run(checkpoint.run(rows, events.append))

        total = 1 + 1 + 3
        assert all(e.total == total for e in events)
        assert [e.current for e in events] == [1, 2, 3, 4, 5, 5]
        assert events[-1].step == "Verification complete"
        assert events[0].step == "Verifying a (DOI match)"


class TestEventStream:
    def test_progress_then_complete(self, checkpoint, make_row):
        events = collect(verification_events(checkpoint, [make_row("a"), make_row("d", tier="D")]))

        assert events[-1]["type"] == "complete"
        assert all(e["type"] == "progress" for e in events[:-1])
        assert events[-2]["step"] == "Verification complete"
        assert events[-1]["report"]["checks"][1]["name"] == "ref-tier-d"
        assert events[-1]["still_unresolved"] == ["d"]

    def test_failure_becomes_error_event(self, checkpoint):
        class Broken(ReverificationCheckpoint):
            async def run(self, rows, on_progress=None):
                raise RuntimeError("store went away")

        events = collect(verification_events(Broken(checkpoint.resolver), []))
        assert events == [{"type": "error", "message": "store went away"}]

    def test_format_sse(self):
        frame = format_sse({"type": "progress", "current": 1})
        assert frame == 'data: {"type": "progress", "current": 1}\n\n'


class TestApplyUpgrades:
    def test_writes_unlocked_rows_and_skips_locked(self, store, make_row):
        store.upsert(make_row("open", tier="D"))
        store.upsert(make_row("attested", tier="D", attested_at=FIXED_NOW, attested_by="supervisor"))
        upgrades = [
            UpgradedEntry("open", ProvenanceTier.A, "@article{open,\n}", EvidenceType.DOI, "10.1/o", "10.1/o"),
            UpgradedEntry("attested", ProvenanceTier.A, "@article{attested,\n}", EvidenceType.DOI, "10.1/t"),
            UpgradedEntry("deleted", ProvenanceTier.A, "@article{deleted,\n}"),
        ]
        written = apply_upgrades(store, "p1", upgrades, now=FIXED_NOW)

        assert written == 1
        row = store.get("p1", "open")
        assert row.provenance_tier is ProvenanceTier.A
        assert row.verified_at == FIXED_NOW
        assert row.evidence_value == "10.1/o"
        assert store.get("p1", "attested").provenance_tier is ProvenanceTier.D
        assert store.get("p1", "deleted") is None

    def test_round_trips_through_dict(self):
        upgrade = UpgradedEntry("k", ProvenanceTier.A, "@a{k,\n}", EvidenceType.PMID, "5", None, "5")
        assert UpgradedEntry.from_dict(upgrade.to_dict()) == upgrade


class TestQuickTierDCheck:
    def test_blocks_over_threshold(self, make_row):
        rows = [make_row(f"a{i}") for i in range(88)] + [make_row(f"d{i}", tier="D") for i in range(12)]
        report = quick_tier_d_check(rows)
        assert not report.overall_pass
        assert report.checks[0].name == "ref-tier-d-quick"

    def test_passes_within_threshold(self, make_row):
        rows = [make_row(f"a{i}") for i in range(9)] + [make_row("d", tier="D")]
        assert quick_tier_d_check(rows).overall_pass
