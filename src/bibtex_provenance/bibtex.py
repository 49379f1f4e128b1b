"""BibTeX tokenizer for generated bibliographies.

The input is a constrained, machine-generated subset of BibTeX: every entry
starts on its own line with ``@type{key,``. Boundaries, identifier hints and a
handful of fields are recovered with regular expressions so that partial or
malformed text still yields whatever can be read from it; nothing here raises
on bad input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import bibtexparser
from bibtexparser.bibdatabase import BibDatabase
from bibtexparser.bwriter import BibTexWriter

from bibtex_provenance.utils import WorkRecord, doi_normalize, pmid_normalize

__all__ = [
    "BIBTEX_SEPARATOR",
    "BibWriter",
    "BibliographicHint",
    "TrailerSplit",
    "entry_to_bib",
    "extract_cite_keys",
    "extract_field",
    "extract_hints",
    "extract_title",
    "has_field",
    "parse_bibtex_entries",
    "record_to_bibtex",
    "rekey_entry",
    "salvage_entries",
    "split_trailer",
    "strip_identifier_field",
]

BIBTEX_SEPARATOR = "---BIBTEX---"

# Entry start at the beginning of a line: @type{key,
ENTRY_START_RE = re.compile(r"^@(\w+)\{([^,]+),")
# Entry start anywhere in free text (salvage mode)
INLINE_ENTRY_START_RE = re.compile(r"@(\w+)\s*\{\s*([^,\s{}]+)\s*,")
NON_ENTRY_TYPES = frozenset({"comment", "string", "preamble"})

DOI_HINT_RE = re.compile(r"(?<![\w-])doi\s*=\s*[{\"]\s*(10\.[^}\"]+?)\s*[}\"]", re.IGNORECASE)
PMID_FIELD_RE = re.compile(r"(?<![\w-])pmid\s*[:=]\s*[{\"]?\s*(\d+)", re.IGNORECASE)
PMID_NOTE_RE = re.compile(r"PMID:\s*(\d+)")

CITE_RE = re.compile(r"\\(?:cite|citep|citet|parencite|textcite|autocite)\*?(?:\s*\[[^\]]*\]){0,2}\s*\{([^}]*)\}")
REKEY_RE = re.compile(r"^(\s*@\w+\s*\{)\s*[^,]*,", re.MULTILINE)


# ------------- Entry Boundaries -------------


def parse_bibtex_entries(raw: str) -> dict[str, str]:
    """Split raw BibTeX into ``{cite_key: entry_text}``.

    Lines are accumulated from one entry start to the next. Text before the
    first entry is ignored; a repeated key keeps its first position but the
    text of its last occurrence.
    """
    entries: dict[str, str] = {}
    if not raw or not raw.strip():
        return entries

    current_key: str | None = None
    current_lines: list[str] = []

    def _flush() -> None:
        if current_key and current_lines:
            entries[current_key] = "\n".join(current_lines).strip()

    for line in raw.splitlines():
        m = ENTRY_START_RE.match(line)
        if m:
            _flush()
            if m.group(1).lower() in NON_ENTRY_TYPES:
                current_key, current_lines = None, []
                continue
            current_key = m.group(2).strip()
            current_lines = [line]
        elif current_key:
            current_lines.append(line)

    _flush()
    return entries


def _match_braces(text: str, open_idx: int) -> int:
    """Return the index of the brace closing ``text[open_idx]``, or -1."""
    depth = 0
    for i in range(open_idx, len(text)):
        ch = text[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1


def salvage_entries(text: str) -> list[tuple[int, int]]:
    """Locate BibTeX entries embedded anywhere in ``text``.

    Generators sometimes inline entries or forget the trailer marker. Returns
    ``(start, end)`` spans; an entry truncated before its closing brace runs
    to the end of the text.
    """
    spans: list[tuple[int, int]] = []
    pos = 0
    while True:
        m = INLINE_ENTRY_START_RE.search(text, pos)
        if not m:
            break
        if m.group(1).lower() in NON_ENTRY_TYPES:
            pos = m.end()
            continue
        open_idx = text.index("{", m.start())
        close_idx = _match_braces(text, open_idx)
        end = len(text) if close_idx == -1 else close_idx + 1
        spans.append((m.start(), end))
        pos = end
    return spans


@dataclass
class TrailerSplit:
    """A generated fragment split into prose and bibliography."""

    body: str
    bib: str
    salvaged: bool = False


def split_trailer(fragment: str) -> TrailerSplit:
    """Split a generated fragment at the ``---BIBTEX---`` marker.

    Without a marker, entries found anywhere in the text are cut out of the
    body and concatenated into the bibliography.
    """
    idx = fragment.find(BIBTEX_SEPARATOR)
    if idx != -1:
        return TrailerSplit(
            body=fragment[:idx].strip(),
            bib=fragment[idx + len(BIBTEX_SEPARATOR) :].strip(),
        )

    spans = salvage_entries(fragment)
    if not spans:
        return TrailerSplit(body=fragment.strip(), bib="")

    bib = "\n\n".join(fragment[start:end].strip() for start, end in spans)
    body_parts = []
    last = 0
    for start, end in spans:
        body_parts.append(fragment[last:start])
        last = end
    body_parts.append(fragment[last:])
    return TrailerSplit(body="".join(body_parts).strip(), bib=bib, salvaged=True)


# ------------- Field Extraction -------------


def extract_field(text: str, field_name: str) -> str | None:
    """Extract a field value, handling nested braces, quotes and bare values."""
    if not text:
        return None
    m = re.search(rf"(?<![\w-]){re.escape(field_name)}\s*=\s*", text, re.IGNORECASE)
    if not m:
        return None
    rest = text[m.end() :]
    if not rest:
        return None
    delim = rest[0]
    if delim == "{":
        close = _match_braces(rest, 0)
        if close == -1:
            return None
        val = rest[1:close]
    elif delim == '"':
        end = rest.find('"', 1)
        if end == -1:
            return None
        val = rest[1:end]
    else:
        bare = re.match(r"[^,}\n]+", rest)
        if not bare:
            return None
        val = bare.group(0)
    return re.sub(r"\s+", " ", val).strip()


def has_field(text: str, field_name: str) -> bool:
    """Check if a field is present and non-empty."""
    return bool(extract_field(text, field_name))


def extract_title(text: str) -> str:
    """Return the entry title with grouping braces removed."""
    title = extract_field(text, "title")
    if not title:
        return ""
    return re.sub(r"\s+", " ", title.replace("{", "").replace("}", "")).strip()


@dataclass(frozen=True)
class BibliographicHint:
    """Registry identifiers found in raw entry text."""

    doi: str | None = None
    pmid: str | None = None


def extract_hints(text: str) -> BibliographicHint:
    """Extract DOI and PMID hints from a BibTeX entry string.

    The PMID may appear as a ``pmid`` field or inside a note as ``PMID: 123``.
    """
    doi_m = DOI_HINT_RE.search(text or "")
    pmid_m = PMID_FIELD_RE.search(text or "") or PMID_NOTE_RE.search(text or "")
    return BibliographicHint(
        doi=doi_normalize(doi_m.group(1)) if doi_m else None,
        pmid=pmid_normalize(pmid_m.group(1)) if pmid_m else None,
    )


# ------------- Rewriting -------------


def strip_identifier_field(bibtex: str, field_name: str = "doi") -> str:
    """Remove ``field_name = {...}`` from BibTeX text.

    DOIs containing ``_`` break some bibliography styles when embedded
    unescaped, so identifiers travel as structured metadata instead.
    """
    if not bibtex:
        return ""
    field_re = rf"(?<![\w-]){re.escape(field_name)}\s*=\s*(?:\{{[^{{}}]*\}}|\"[^\"]*\"|[^,}}\s]+)"
    own_line = re.compile(rf"^[ \t]*{field_re}[ \t]*(,?)[ \t]*(?:\r?\n|$)", re.IGNORECASE | re.MULTILINE)
    inline = re.compile(rf"{field_re}[ \t]*(,?)[ \t]*", re.IGNORECASE)

    removed_last = False

    def _drop(m: re.Match[str]) -> str:
        nonlocal removed_last
        if not m.group(1):
            removed_last = True
        return ""

    # Only the field span goes; every other line is kept verbatim
    text = inline.sub(_drop, own_line.sub(_drop, bibtex))
    if removed_last:
        # The field now closing the entry is left with "value},\n}"
        text = re.sub(r",(\s*\}\s*)$", r"\1", text)
    return text.strip()


def rekey_entry(bibtex: str, cite_key: str) -> str:
    """Replace the key of the first entry in ``bibtex``."""
    return REKEY_RE.sub(lambda m: f"{m.group(1)}{cite_key},", bibtex, count=1)


# ------------- In-text Markers -------------


def extract_cite_keys(latex: str) -> list[str]:
    """Extract unique citation keys from LaTeX source in order of appearance.

    Handles multi-key citations like ``\\cite{a,b,c}`` and the common natbib and
    biblatex variants.
    """
    keys: dict[str, None] = {}
    for m in CITE_RE.finditer(latex or ""):
        for key in m.group(1).split(","):
            key = key.strip()
            if key:
                keys.setdefault(key, None)
    return list(keys)


# ------------- Writing -------------


class BibWriter:
    def __init__(self) -> None:
        self.writer = BibTexWriter()
        self.writer.indent = "  "
        self.writer.order_entries_by = None
        self.writer.display_order = ["title", "author", "journal", "booktitle", "year", "volume", "number", "pages"]
        self.writer.comma_first = False

    def dumps(self, db: BibDatabase) -> str:
        return bibtexparser.dumps(db, writer=self.writer)


def entry_to_bib(entry: dict[str, Any]) -> str:
    db = BibDatabase()
    db.entries = [entry]
    return BibWriter().dumps(db).strip()


def record_to_bibtex(record: WorkRecord, cite_key: str, entry_type: str | None = None) -> str:
    """Synthesise a BibTeX entry from structured registry fields.

    The DOI is deliberately never written; see :func:`strip_identifier_field`.
    """
    if entry_type is None:
        entry_type = "article" if record.work_type == "journal-article" else "misc"
    entry: dict[str, str] = {"ENTRYTYPE": entry_type, "ID": cite_key}
    if record.title:
        entry["title"] = record.title
    if record.authors:
        entry["author"] = " and ".join(record.authors)
    if record.venue:
        entry["journal" if entry_type == "article" else "howpublished"] = record.venue
    if record.year is not None:
        entry["year"] = str(record.year)
    if record.volume:
        entry["volume"] = str(record.volume)
    if record.issue:
        entry["number"] = str(record.issue)
    if record.pages:
        entry["pages"] = str(record.pages)
    if record.publisher and entry_type != "article":
        entry["publisher"] = record.publisher
    return entry_to_bib(entry)
