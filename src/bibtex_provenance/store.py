"""Persisted citation rows and the stores that hold them.

One row exists per ``(project_id, cite_key)``. A row whose ``verified_at`` or
``attested_at`` is set is locked: automated writers (ingestion, checkpoint
upgrades) must check :attr:`PersistedCitation.is_locked` and leave it alone.
The stores themselves do not enforce the lock; human attestation goes through
the same ``upsert``.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from bibtex_provenance.config import StoreError
from bibtex_provenance.resolver import EvidenceType, ProvenanceTier, ResolvedCitation

_DATETIME_FIELDS = ("verified_at", "attested_at", "created_at", "updated_at")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PersistedCitation:
    """Durable citation row: a resolved citation plus lock and audit timestamps."""

    project_id: str
    cite_key: str
    bibtex: str
    provenance_tier: ProvenanceTier
    evidence_type: EvidenceType | None = None
    evidence_value: str | None = None
    source_doi: str | None = None
    source_pmid: str | None = None
    verified_at: datetime | None = None
    attested_at: datetime | None = None
    attested_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_locked(self) -> bool:
        """True once a verification or a human attestation has been recorded."""
        return self.verified_at is not None or self.attested_at is not None

    @classmethod
    def from_resolved(
        cls, project_id: str, citation: ResolvedCitation, now: datetime | None = None
    ) -> PersistedCitation:
        """Build a row from a resolver result; Tier A rows are stamped verified."""
        now = now or utc_now()
        return cls(
            project_id=project_id,
            cite_key=citation.cite_key,
            bibtex=citation.bibtex,
            provenance_tier=citation.provenance_tier,
            evidence_type=citation.evidence_type,
            evidence_value=citation.evidence_value,
            source_doi=citation.source_doi,
            source_pmid=citation.source_pmid,
            verified_at=now if citation.provenance_tier is ProvenanceTier.A else None,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "project_id": self.project_id,
            "cite_key": self.cite_key,
            "bibtex": self.bibtex,
            "provenance_tier": self.provenance_tier.value,
            "evidence_type": self.evidence_type.value if self.evidence_type else None,
            "evidence_value": self.evidence_value,
            "source_doi": self.source_doi,
            "source_pmid": self.source_pmid,
            "attested_by": self.attested_by,
        }
        for name in _DATETIME_FIELDS:
            value = getattr(self, name)
            data[name] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PersistedCitation:
        evidence = data.get("evidence_type")
        stamps = {name: datetime.fromisoformat(data[name]) if data.get(name) else None for name in _DATETIME_FIELDS}
        return cls(
            project_id=data["project_id"],
            cite_key=data["cite_key"],
            bibtex=data.get("bibtex") or "",
            provenance_tier=ProvenanceTier(data.get("provenance_tier") or "D"),
            evidence_type=EvidenceType(evidence) if evidence else None,
            evidence_value=data.get("evidence_value"),
            source_doi=data.get("source_doi"),
            source_pmid=data.get("source_pmid"),
            attested_by=data.get("attested_by"),
            **stamps,
        )


class CitationStore(ABC):
    """Storage for citation rows, keyed by project and cite key."""

    @abstractmethod
    def get(self, project_id: str, cite_key: str) -> PersistedCitation | None:
        ...

    @abstractmethod
    def list_project(self, project_id: str) -> list[PersistedCitation]:
        ...

    @abstractmethod
    def upsert(self, row: PersistedCitation) -> PersistedCitation:
        """Insert or replace a row; ``created_at`` of an existing row survives."""

    def keys(self, project_id: str) -> set[str]:
        return {row.cite_key for row in self.list_project(project_id)}


def _merge_for_upsert(existing: PersistedCitation | None, row: PersistedCitation) -> PersistedCitation:
    now = utc_now()
    created = existing.created_at if existing and existing.created_at else (row.created_at or now)
    return replace(row, created_at=created, updated_at=now)


class InMemoryCitationStore(CitationStore):
    """Dict-backed store; rows are copied in and out so callers cannot alias them."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self._rows: dict[tuple[str, str], PersistedCitation] = {}

    def get(self, project_id: str, cite_key: str) -> PersistedCitation | None:
        with self.lock:
            row = self._rows.get((project_id, cite_key))
            return replace(row) if row else None

    def list_project(self, project_id: str) -> list[PersistedCitation]:
        with self.lock:
            return [replace(row) for (pid, _), row in self._rows.items() if pid == project_id]

    def upsert(self, row: PersistedCitation) -> PersistedCitation:
        with self.lock:
            key = (row.project_id, row.cite_key)
            merged = _merge_for_upsert(self._rows.get(key), row)
            self._rows[key] = merged
            return replace(merged)


class JsonCitationStore(CitationStore):
    """Thread-safe JSON file store.

    Layout: ``{"projects": {project_id: {cite_key: row_dict}}}``. Every write
    rewrites the file through a temporary file and an atomic rename.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.lock = threading.Lock()
        self.data: dict[str, dict[str, dict[str, Any]]] = {}
        if os.path.exists(path):
            try:
                with open(path, encoding="utf-8") as f:
                    self.data = json.load(f).get("projects") or {}
            except (OSError, ValueError, AttributeError) as e:
                raise StoreError(f"Cannot read citation store {path}: {e}") from e

    def get(self, project_id: str, cite_key: str) -> PersistedCitation | None:
        with self.lock:
            raw = self.data.get(project_id, {}).get(cite_key)
            return PersistedCitation.from_dict(raw) if raw else None

    def list_project(self, project_id: str) -> list[PersistedCitation]:
        with self.lock:
            return [PersistedCitation.from_dict(raw) for raw in self.data.get(project_id, {}).values()]

    def upsert(self, row: PersistedCitation) -> PersistedCitation:
        with self.lock:
            project = dict(self.data.get(row.project_id, {}))
            raw = project.get(row.cite_key)
            merged = _merge_for_upsert(PersistedCitation.from_dict(raw) if raw else None, row)
            project[row.cite_key] = merged.to_dict()
            data = {**self.data, row.project_id: project}
            self._flush(data)
            # Readers only see rows that reached the file
            self.data = data
            return merged

    def _flush(self, data: dict[str, dict[str, dict[str, Any]]]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_name: str | None = None
        try:
            try:
                with tempfile.NamedTemporaryFile(
                    "w", delete=False, encoding="utf-8", suffix=".json", prefix=".tmp_store_", dir=directory
                ) as tmp:
                    tmp_name = tmp.name
                    json.dump({"projects": data}, tmp, indent=2)
                    tmp.flush()
                    os.fsync(tmp.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                if tmp_name is not None and os.path.exists(tmp_name):
                    os.remove(tmp_name)
                raise
        except OSError as e:
            raise StoreError(f"Cannot write citation store {self.path}: {e}") from e
