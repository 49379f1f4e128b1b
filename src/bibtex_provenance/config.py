"""Configuration and package-level errors for the provenance pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any

import yaml

from bibtex_provenance.registries import CrossrefClient, PubMedClient
from bibtex_provenance.utils import AsyncHttpClient, AsyncRateLimiterRegistry

DEFAULT_USER_AGENT = "bibtex-provenance/1.0"


class ProvenanceError(Exception):
    """Base class for errors raised by this package."""


class StoreError(ProvenanceError):
    """The citation store could not be read or written."""


class ConfigError(ProvenanceError):
    """A configuration file is missing, unreadable or malformed."""


@dataclass
class ProvenanceConfig:
    """Settings for registry access, resolution and the checkpoint.

    Attributes:
        crossref_mailto: Contact address for the Crossref polite pool
        pubmed_api_key: NCBI E-utilities API key
        user_agent: Base User-Agent header value
        lookup_timeout: Per-request timeout of the HTTP layer (seconds)
        checkpoint_call_timeout: Timer around each checkpoint call (seconds)
        checkpoint_budget: Total wall-clock budget of a checkpoint run (seconds)
        max_retries: Retries for transport errors and 5xx responses
        backoff_base: First retry delay, doubled on each retry (seconds)
        resolve_chunk_size: Concurrent entries during ingestion
        checkpoint_chunk_size: Concurrent rows during the checkpoint
        title_threshold: Similarity needed to accept a title-search match
        drift_threshold: Similarity below which a stored title has drifted
        drift_blocking_count: Drift mismatches that make the checkpoint block
        tier_d_blocking_ratio: Share of unresolved citations tolerated
        rate_limits: Per-service requests per minute overrides
    """

    crossref_mailto: str | None = None
    pubmed_api_key: str | None = None
    user_agent: str = DEFAULT_USER_AGENT
    lookup_timeout: float = 10.0
    checkpoint_call_timeout: float = 8.0
    checkpoint_budget: float = 60.0
    max_retries: int = 3
    backoff_base: float = 1.0
    resolve_chunk_size: int = 3
    checkpoint_chunk_size: int = 5
    title_threshold: float = 0.85
    drift_threshold: float = 0.80
    drift_blocking_count: int = 3
    tier_d_blocking_ratio: float = 0.10
    rate_limits: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProvenanceConfig:
        """Create config from a dictionary (e.g., loaded from YAML)."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration key(s): {', '.join(unknown)}")
        return cls(**data)

    def merge(self, **overrides: Any) -> ProvenanceConfig:
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def with_env(self, environ: dict[str, str] | None = None) -> ProvenanceConfig:
        env = os.environ if environ is None else environ
        return self.merge(
            crossref_mailto=env.get("CROSSREF_MAILTO") or None,
            pubmed_api_key=env.get("PUBMED_API_KEY") or None,
        )

    @property
    def full_user_agent(self) -> str:
        if self.crossref_mailto:
            return f"{self.user_agent} (mailto:{self.crossref_mailto})"
        return self.user_agent


def load_config_file(path: str) -> ProvenanceConfig:
    """Load a YAML configuration file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    try:
        return ProvenanceConfig.from_dict(data)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e


def build_clients(
    config: ProvenanceConfig, transport: Any = None
) -> tuple[AsyncHttpClient, CrossrefClient, PubMedClient]:
    """Assemble the shared HTTP client and both registry clients."""
    http = AsyncHttpClient(
        rate_limiters=AsyncRateLimiterRegistry(config.rate_limits),
        timeout=config.lookup_timeout,
        user_agent=config.full_user_agent,
        max_retries=config.max_retries,
        backoff_base=config.backoff_base,
        transport=transport,
    )
    crossref = CrossrefClient(http)
    pubmed = PubMedClient(http, api_key=config.pubmed_api_key, doi_registry=crossref)
    return http, crossref, pubmed
