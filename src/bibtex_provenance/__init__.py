"""BibTeX Provenance - Citation resolution with provenance tiers.

This package provides tools for:
- Resolving generated BibTeX entries against Crossref and PubMed
- Persisting citations without overwriting verified or attested rows
- Creating placeholders for in-text citations with no bibliography entry
- Re-verifying stored citations behind a pass/warn/fail approval gate

Example usage:
    from bibtex_provenance import CitationResolver, IngestionPipeline, build_clients

    http, crossref, pubmed = build_clients(ProvenanceConfig())
    resolver = CitationResolver(crossref, pubmed)
    citation = await resolver.resolve_entry("smith2024", raw_entry)

    # Ingest a generated fragment into a store
    pipeline = IngestionPipeline(resolver, InMemoryCitationStore())
    summary = await pipeline.ingest("thesis", fragment)
"""

from bibtex_provenance._version import __version__

# Reporting and audit
from bibtex_provenance.audit import AuditResult, audit_citations, build_reference_list, unresolved_marker_keys

# Tokenizer
from bibtex_provenance.bibtex import (
    BibliographicHint,
    extract_cite_keys,
    extract_hints,
    parse_bibtex_entries,
    split_trailer,
    strip_identifier_field,
)
from bibtex_provenance.checkpoint import (
    CheckStatus,
    ReverificationCheckpoint,
    UpgradedEntry,
    VerificationCheck,
    VerificationProgress,
    VerificationReport,
    VerificationResult,
    apply_upgrades,
    format_sse,
    quick_tier_d_check,
    verification_events,
)

# Configuration and errors
from bibtex_provenance.config import (
    ConfigError,
    ProvenanceConfig,
    ProvenanceError,
    StoreError,
    build_clients,
    load_config_file,
)
from bibtex_provenance.ingest import IngestionPipeline, IngestionSummary
from bibtex_provenance.preseed import build_search_queries, preseed_references

# Registries
from bibtex_provenance.registries import CrossrefClient, PubMedClient, RegistryClient, RegistryLookup, SearchResult

# Core resolution
from bibtex_provenance.resolver import (
    CitationResolver,
    EvidenceType,
    ProvenanceTier,
    ResolutionError,
    ResolutionResult,
    ResolvedCitation,
)
from bibtex_provenance.similarity import similarity

# Storage
from bibtex_provenance.store import CitationStore, InMemoryCitationStore, JsonCitationStore, PersistedCitation
from bibtex_provenance.utils import AsyncHttpClient, AsyncRateLimiterRegistry, WorkRecord

__all__ = [
    # Version
    "__version__",
    # Core resolution
    "CitationResolver",
    "EvidenceType",
    "ProvenanceTier",
    "ResolutionError",
    "ResolutionResult",
    "ResolvedCitation",
    "similarity",
    # Registries
    "AsyncHttpClient",
    "AsyncRateLimiterRegistry",
    "CrossrefClient",
    "PubMedClient",
    "RegistryClient",
    "RegistryLookup",
    "SearchResult",
    "WorkRecord",
    # Tokenizer
    "BibliographicHint",
    "extract_cite_keys",
    "extract_hints",
    "parse_bibtex_entries",
    "split_trailer",
    "strip_identifier_field",
    # Storage and ingestion
    "CitationStore",
    "InMemoryCitationStore",
    "JsonCitationStore",
    "PersistedCitation",
    "IngestionPipeline",
    "IngestionSummary",
    # Checkpoint
    "CheckStatus",
    "ReverificationCheckpoint",
    "UpgradedEntry",
    "VerificationCheck",
    "VerificationProgress",
    "VerificationReport",
    "VerificationResult",
    "apply_upgrades",
    "format_sse",
    "quick_tier_d_check",
    "verification_events",
    # Reporting and audit
    "AuditResult",
    "audit_citations",
    "build_reference_list",
    "unresolved_marker_keys",
    "build_search_queries",
    "preseed_references",
    # Configuration and errors
    "ConfigError",
    "ProvenanceConfig",
    "ProvenanceError",
    "StoreError",
    "build_clients",
    "load_config_file",
]
