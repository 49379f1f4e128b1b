"""Tests for the ingestion pipeline."""

from __future__ import annotations

import asyncio

import pytest

from bibtex_provenance.bibtex import BIBTEX_SEPARATOR, extract_cite_keys, split_trailer
from bibtex_provenance.checkpoint import ReverificationCheckpoint, apply_upgrades
from bibtex_provenance.ingest import IngestionPipeline, orphan_search_query
from bibtex_provenance.resolver import CitationResolver, ProvenanceTier
from bibtex_provenance.utils import WorkRecord
from conftest import FIXED_NOW, FakeRegistry, make_lookup


@pytest.fixture
def pipeline(resolver, store, logger):
    return IngestionPipeline(resolver, store, logger=logger, clock=lambda: FIXED_NOW)


def fragment(body: str, *entries: str) -> str:
    return f"{body}\n{BIBTEX_SEPARATOR}\n" + "\n".join(entries)


class TestOrphanSearchQuery:
    def test_splits_name_and_year(self):
        assert orphan_search_query("smith2023") == "smith 2023"

    @pytest.mark.parametrize("key", ["vaswani-etal", "smith23", "2023smith", "smith_2023"])
    def test_other_shapes_have_no_query(self, key):
        assert orphan_search_query(key) is None


class TestTrailerResolution:
    def test_tier_a_is_verified_and_tier_d_is_not(self, doi_registry, pipeline, store, make_entry):
        doi_registry.lookups["10.1/a"] = make_lookup("A Resolved Paper", doi="10.1/a")
        text = fragment(
            r"See \cite{a2020,d2021}.",
            make_entry("a2020", doi="10.1/a"),
            make_entry("d2021", title="Unknown Work From Nowhere"),
        )
        summary = asyncio.run(pipeline.ingest("p1", text))

        assert (summary.total, summary.tier_a, summary.tier_d, summary.errors) == (2, 1, 1, 0)
        row_a = store.get("p1", "a2020")
        row_d = store.get("p1", "d2021")
        assert row_a.provenance_tier is ProvenanceTier.A
        assert row_a.verified_at == FIXED_NOW
        assert row_a.source_doi == "10.1/a"
        assert row_d.provenance_tier is ProvenanceTier.D
        assert row_d.verified_at is None
        assert "Unknown Work From Nowhere" in row_d.bibtex

    def test_unlocked_tier_d_row_is_upgraded(self, doi_registry, pipeline, store, make_row, make_entry):
        store.upsert(make_row("a2020", tier="D"))
        doi_registry.lookups["10.1/a"] = make_lookup("A Resolved Paper", doi="10.1/a")
        asyncio.run(pipeline.ingest("p1", fragment("", make_entry("a2020", doi="10.1/a"))))

        row = store.get("p1", "a2020")
        assert row.provenance_tier is ProvenanceTier.A
        assert row.created_at == FIXED_NOW
        assert row.verified_at == FIXED_NOW


class TestLockInvariant:
    @pytest.mark.parametrize(
        "lock",
        [
            {"verified_at": FIXED_NOW},
            {"attested_at": FIXED_NOW, "attested_by": "supervisor"},
        ],
    )
    def test_locked_row_is_left_byte_identical(self, pipeline, store, make_row, make_entry, lock):
        store.upsert(make_row("smith2024", bibtex="@article{smith2024,\n  title = {Original}\n}", **lock))
        before = store.get("p1", "smith2024").to_dict()

        conflicting = make_entry("smith2024", title="A Completely Different Paper Title")
        summary = asyncio.run(pipeline.ingest("p1", fragment(r"\cite{smith2024}", conflicting)))

        assert store.get("p1", "smith2024").to_dict() == before
        assert summary.skipped_locked == 1
        assert summary.total == 0
        assert summary.orphans_created == 0


class TestOrphans:
    def test_orphan_with_empty_trailer_gets_tier_d_row(self, doi_registry, pipeline, store):
        summary = asyncio.run(pipeline.ingest("p1", "...claim\\cite{orphan2024}...\n---BIBTEX---\n"))

        rows = store.list_project("p1")
        assert [(r.cite_key, r.provenance_tier) for r in rows] == [("orphan2024", ProvenanceTier.D)]
        assert (summary.total, summary.tier_d, summary.orphans_created) == (1, 1, 1)
        assert doi_registry.search_calls == [("orphan 2024", 1)]

    def test_orphan_search_hit_keeps_only_the_doi(self, doi_registry, pipeline, store):
        doi_registry.search_items = {"smith 2023": [WorkRecord(title="Smith's Paper", doi="10.1/s")]}
        doi_registry.lookups["10.1/s"] = make_lookup("Smith's Paper", doi="10.1/s")
        asyncio.run(pipeline.ingest("p1", r"As shown \cite{smith2023}."))

        row = store.get("p1", "smith2023")
        assert row.provenance_tier is ProvenanceTier.D
        assert row.source_doi == "10.1/s"
        assert row.bibtex == ""
        assert row.verified_at is None
        assert doi_registry.lookup_calls == []

    def test_guessed_orphan_is_not_upgraded_by_checkpoint(self, doi_registry, resolver, pipeline, store, logger):
        guess = "An Unrelated Paper By Some Smith In 2023"
        doi_registry.search_items = {"smith 2023": [WorkRecord(title=guess, doi="10.9/guess")]}
        doi_registry.lookups["10.9/guess"] = make_lookup(guess, doi="10.9/guess")
        asyncio.run(pipeline.ingest("p1", r"As shown \cite{smith2023}."))

        checkpoint = ReverificationCheckpoint(resolver, logger=logger)
        result = asyncio.run(checkpoint.run(store.list_project("p1")))

        assert result.upgraded_entries == []
        assert result.still_unresolved == ["smith2023"]
        assert apply_upgrades(store, "p1", result.upgraded_entries) == 0
        assert store.get("p1", "smith2023").provenance_tier is ProvenanceTier.D

    def test_unpatterned_orphan_skips_search(self, doi_registry, pipeline, store):
        asyncio.run(pipeline.ingest("p1", r"\cite{vaswani-etal}"))

        row = store.get("p1", "vaswani-etal")
        assert row.bibtex == ""
        assert row.provenance_tier is ProvenanceTier.D
        assert doi_registry.search_calls == []

    def test_existing_row_is_not_an_orphan(self, doi_registry, pipeline, store, make_row):
        store.upsert(make_row("known2020", tier="D"))
        summary = asyncio.run(pipeline.ingest("p1", r"\cite{known2020}"))

        assert summary.orphans_created == 0
        assert doi_registry.search_calls == []

    def test_orphan_lookup_failure_still_creates_placeholder(self, store, logger):
        failing = FakeRegistry(errors={"broken 2020": RuntimeError("search exploded")})
        pipeline = IngestionPipeline(CitationResolver(failing, FakeRegistry()), store, logger=logger)
        summary = asyncio.run(pipeline.ingest("p1", r"\cite{broken2020}"))

        assert summary.orphans_created == 1
        assert store.get("p1", "broken2020").provenance_tier is ProvenanceTier.D

    def test_errored_trailer_entry_becomes_placeholder(self, store, make_entry, logger):
        failing = FakeRegistry(errors={"10.1/bad": RuntimeError("unexpected")})
        pipeline = IngestionPipeline(CitationResolver(failing, FakeRegistry()), store, logger=logger)
        text = fragment(r"\cite{bad2020}", make_entry("bad2020", doi="10.1/bad"))
        summary = asyncio.run(pipeline.ingest("p1", text))

        assert summary.errors == 1
        assert summary.error_details[0].cite_key == "bad2020"
        assert store.get("p1", "bad2020").provenance_tier is ProvenanceTier.D


class TestOrphanCompleteness:
    @pytest.mark.parametrize(
        "text",
        [
            fragment(r"A \cite{a2020} B \citep{b2021,c2022}.", "@article{a2020,\n  title = {Entry A Title}\n}"),
            fragment(r"Only markers \cite{x2019} \citet[p.~2]{y2018}."),
            r"Inline \cite{a2020,z2017}. @article{a2020, title={Inline Entry Title}} trailing prose",
            r"No bibliography at all \parencite{q2015} \textcite{vaswani-etal}.",
        ],
    )
    def test_every_marker_has_a_row(self, pipeline, store, text):
        asyncio.run(pipeline.ingest("p1", text))

        markers = set(extract_cite_keys(split_trailer(text).body))
        assert markers
        assert markers <= store.keys("p1")


class TestSalvage:
    def test_inline_entries_are_resolved(self, doi_registry, pipeline, store):
        doi_registry.lookups["10.1/in"] = make_lookup("Inline Paper", doi="10.1/in")
        text = r"Claim \cite{in2020}. @article{in2020, title={Inline Paper}, doi={10.1/in}} Done."
        summary = asyncio.run(pipeline.ingest("p1", text))

        assert summary.salvaged
        assert summary.tier_a == 1
        assert summary.orphans_created == 0
        assert store.get("p1", "in2020").provenance_tier is ProvenanceTier.A
