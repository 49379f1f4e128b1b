"""Command-line interface for the provenance pipeline.

Subcommands:
  resolve  batch-resolve a .bib file and report tiers as JSONL
  ingest   ingest a generated fragment into a project's citation store
  verify   run the re-verification checkpoint, streaming SSE frames
  audit    audit LaTeX sections against a project's stored citations
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from typing import Any, TextIO

from bibtex_provenance._version import __version__
from bibtex_provenance.audit import audit_citations
from bibtex_provenance.bibtex import extract_cite_keys
from bibtex_provenance.checkpoint import (
    ReverificationCheckpoint,
    UpgradedEntry,
    apply_upgrades,
    format_sse,
    verification_events,
)
from bibtex_provenance.config import (
    ConfigError,
    ProvenanceConfig,
    ProvenanceError,
    build_clients,
    load_config_file,
)
from bibtex_provenance.ingest import IngestionPipeline
from bibtex_provenance.resolver import CitationResolver, ProvenanceTier
from bibtex_provenance.store import JsonCitationStore

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BLOCKING = 2


def init_logging(verbose: bool = False) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    return logging.getLogger("bibtex_provenance")


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    p = argparse.ArgumentParser(
        prog="bibtex-provenance",
        description="Resolve generated citations against Crossref and PubMed and track their provenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  bibtex-provenance resolve refs.bib --report tiers.jsonl
  bibtex-provenance ingest chapter2.tex --project thesis --store citations.json
  bibtex-provenance verify --project thesis --store citations.json --apply
  bibtex-provenance audit --project thesis --store citations.json ch1.tex ch2.tex
        """,
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", metavar="FILE", help="YAML configuration file")
    common.add_argument("--mailto", help="Contact email for the Crossref polite pool (env: CROSSREF_MAILTO)")
    common.add_argument("--pubmed-api-key", help="NCBI E-utilities API key (env: PUBMED_API_KEY)")
    common.add_argument("--timeout", type=float, help="HTTP timeout per request in seconds (default: 10)")
    common.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", parents=[common], help="Resolve every entry of a BibTeX file")
    resolve.add_argument("input", help="BibTeX file to resolve")
    resolve.add_argument("--report", metavar="FILE", help="Write JSONL results to FILE (default: stdout)")

    ingest = sub.add_parser("ingest", parents=[common], help="Ingest a generated fragment")
    ingest.add_argument("fragment", help="Fragment file ('-' for stdin)")
    ingest.add_argument("--project", required=True, help="Project identifier")
    ingest.add_argument("--store", required=True, metavar="FILE", help="JSON citation store")

    verify = sub.add_parser("verify", parents=[common], help="Re-verify a project's stored citations")
    verify.add_argument("--project", required=True, help="Project identifier")
    verify.add_argument("--store", required=True, metavar="FILE", help="JSON citation store")
    verify.add_argument("--apply", action="store_true", help="Persist Tier D upgrades after the pass")

    audit = sub.add_parser("audit", parents=[common], help="Audit LaTeX sections against stored citations")
    audit.add_argument("sections", nargs="+", help="LaTeX section files, numbered in the given order")
    audit.add_argument("--project", required=True, help="Project identifier")
    audit.add_argument("--store", required=True, metavar="FILE", help="JSON citation store")

    return p


def resolve_config(args: argparse.Namespace) -> ProvenanceConfig:
    """Defaults < YAML file < environment < command-line flags."""
    config = load_config_file(args.config) if args.config else ProvenanceConfig()
    return config.with_env().merge(
        crossref_mailto=args.mailto,
        pubmed_api_key=args.pubmed_api_key,
        lookup_timeout=args.timeout,
    )


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    try:
        with open(path, encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        raise ProvenanceError(f"Cannot read {path}: {e}") from e


def _write_jsonl(records: list[dict[str, Any]], out: TextIO) -> None:
    for record in records:
        out.write(json.dumps(record) + "\n")


async def _run(args: argparse.Namespace, config: ProvenanceConfig, logger: logging.Logger) -> int:
    if args.command == "audit":
        return _cmd_audit(args)

    http, crossref, pubmed = build_clients(config)
    try:
        resolver = CitationResolver(
            crossref,
            pubmed,
            logger=logger,
            title_threshold=config.title_threshold,
            chunk_size=config.resolve_chunk_size,
        )
        if args.command == "resolve":
            return await _cmd_resolve(args, resolver, logger)
        if args.command == "ingest":
            return await _cmd_ingest(args, resolver, logger)
        checkpoint = ReverificationCheckpoint(
            resolver,
            logger=logger,
            chunk_size=config.checkpoint_chunk_size,
            call_timeout=config.checkpoint_call_timeout,
            budget=config.checkpoint_budget,
            drift_threshold=config.drift_threshold,
            drift_blocking_count=config.drift_blocking_count,
            tier_d_blocking_ratio=config.tier_d_blocking_ratio,
        )
        return await _cmd_verify(args, checkpoint, logger)
    finally:
        await http.close()


async def _cmd_resolve(args: argparse.Namespace, resolver: CitationResolver, logger: logging.Logger) -> int:
    result = await resolver.resolve_all_entries(_read_text(args.input))
    records = [c.to_dict() for c in result.resolved]
    records += [{"cite_key": e.cite_key, "error": e.error} for e in result.errors]
    if args.report:
        with open(args.report, "w", encoding="utf-8") as f:
            _write_jsonl(records, f)
        logger.info("Wrote %d result(s) to %s", len(records), args.report)
    else:
        _write_jsonl(records, sys.stdout)

    tier_a = sum(1 for c in result.resolved if c.provenance_tier is ProvenanceTier.A)
    logger.info(
        "Resolved %d entr(ies): %d Tier A, %d Tier D, %d error(s)",
        len(result.resolved) + len(result.errors),
        tier_a,
        len(result.resolved) - tier_a,
        len(result.errors),
    )
    return EXIT_OK


async def _cmd_ingest(args: argparse.Namespace, resolver: CitationResolver, logger: logging.Logger) -> int:
    store = JsonCitationStore(args.store)
    pipeline = IngestionPipeline(resolver, store, logger=logger)
    summary = await pipeline.ingest(args.project, _read_text(args.fragment))
    print(json.dumps(asdict(summary), indent=2))
    return EXIT_OK


async def _cmd_verify(args: argparse.Namespace, checkpoint: ReverificationCheckpoint, logger: logging.Logger) -> int:
    store = JsonCitationStore(args.store)
    rows = store.list_project(args.project)
    if not rows:
        logger.warning("No citations stored for project %s", args.project)

    final: dict[str, Any] | None = None
    async for event in verification_events(checkpoint, rows):
        sys.stdout.write(format_sse(event))
        sys.stdout.flush()
        if event["type"] != "progress":
            final = event

    if final is None or final["type"] == "error":
        return EXIT_ERROR

    if args.apply and final["upgraded_entries"]:
        upgrades = [UpgradedEntry.from_dict(u) for u in final["upgraded_entries"]]
        written = apply_upgrades(store, args.project, upgrades)
        logger.info("Applied %d of %d upgrade(s)", written, len(upgrades))

    report = final["report"]
    if not report["overall_pass"]:
        logger.warning("Verification found %d blocking check(s)", report["blocking_count"])
        return EXIT_BLOCKING
    return EXIT_OK


def _cmd_audit(args: argparse.Namespace) -> int:
    store = JsonCitationStore(args.store)
    section_keys = {number: extract_cite_keys(_read_text(path)) for number, path in enumerate(args.sections, 1)}
    result = audit_citations(section_keys, store.list_project(args.project))
    data = asdict(result)
    for item in data["orphaned_citations"]:
        item["tier"] = item["tier"].value
    print(json.dumps(data, indent=2))
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_arg_parser().parse_args(argv)
    logger = init_logging(args.verbose)

    try:
        config = resolve_config(args)
        return asyncio.run(_run(args, config, logger))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_ERROR
    except ProvenanceError as e:
        logger.error("%s", e)
        return EXIT_ERROR
