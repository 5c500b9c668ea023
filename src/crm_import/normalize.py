"""Normalization functions for CRM export ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import urllib.parse
from datetime import date
from typing import Mapping

_GERMAN_DATE_RE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")

_HEADER_FOLDS = {"ä": "ae", "ö": "oe", "ü": "ue", "ß": "ss"}


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: unquote_cell
# ---------------------------------------------------------------------------

def unquote_cell(value: str | None) -> str | None:
    """Trim and drop one layer of stray surrounding quotes.

    The csv module already handles well-formed quoting; this only removes
    quote characters left behind by exports that quote inconsistently.
    """
    v = trim(value)
    if v is None:
        return None
    if len(v) >= 2 and v[0] == v[-1] and v[0] in "\"'":
        v = v[1:-1]
    elif v[0] in "\"'":
        v = v[1:]
    elif v[-1] in "\"'":
        v = v[:-1]
    return trim(v)


# ---------------------------------------------------------------------------
# Rule 4: fold_header  (column-name matching)
# ---------------------------------------------------------------------------

def fold_header(value: str | None) -> str:
    """Lowercase, unquote, fold German umlauts and collapse spaces.

    "Nächster Schritt" → "naechster schritt"
    """
    v = normalize_space((value or "").replace('"', "").replace("'", "")) or ""
    v = v.lower()
    for src, dst in _HEADER_FOLDS.items():
        v = v.replace(src, dst)
    return v


# ---------------------------------------------------------------------------
# Rule 5: normalize_owner_name  (user directory matching)
# ---------------------------------------------------------------------------

def normalize_owner_name(value: str | None) -> str | None:
    """Lower-case and collapse whitespace for exact owner-name comparison.

    Accents and "ß" are preserved: "Hans Müller" and "Hans Muller", or
    "Jan Strauß" and "Jan Strauss", are different people as far as the
    directory lookup is concerned.
    """
    v = normalize_space(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 6: parse_export_date
# ---------------------------------------------------------------------------

def parse_export_date(value: str | None) -> date | None:
    """Parse DD.MM.YYYY (export locale) or ISO YYYY-MM-DD → date, else None."""
    v = trim(value)
    if v is None:
        return None
    # Datetime cells ("31.12.2024 14:05") keep only the date part.
    v = v.split(" ")[0]
    m = _GERMAN_DATE_RE.match(v)
    if m:
        day, month, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
    else:
        m = _ISO_DATE_RE.match(v)
        if not m:
            return None
        year, month, day = int(m.group(1)), int(m.group(2)), int(m.group(3))
    try:
        return date(year, month, day)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 7: map_stage
# ---------------------------------------------------------------------------

def map_stage(value: str | None, labels: Mapping[str, str]) -> str | None:
    """Map an export stage label onto the closed stage vocabulary.

    ``labels`` maps lower-cased export labels to stage codes.  Unknown labels
    are returned verbatim (whitespace-normalized) so they survive into
    staging and can be reviewed; they never count as terminal.
    """
    v = normalize_space(value)
    if v is None:
        return None
    return labels.get(v.lower(), v)


# ---------------------------------------------------------------------------
# Rule 8: extract_external_id
# ---------------------------------------------------------------------------

def extract_external_id(link: str | None, query_param: str = "sfid") -> str | None:
    """Derive the stable external id from the export's link column.

    Prefers the ``sfid=`` query parameter; otherwise the last non-empty path
    segment.  A bare value without any URL structure is taken as the id.

    "https://x.example/signup?sfid=OPP-9&lang=de" → "OPP-9"
    "https://crm.example/lightning/r/Opportunity/OPP-4/" → "OPP-4"
    """
    v = trim(link)
    if v is None:
        return None
    parsed = urllib.parse.urlsplit(v)
    params = urllib.parse.parse_qs(parsed.query)
    values = params.get(query_param)
    if values and trim(values[0]):
        return trim(values[0])
    segments = [s for s in parsed.path.split("/") if s.strip()]
    if segments:
        return trim(urllib.parse.unquote(segments[-1]))
    return None


# ---------------------------------------------------------------------------
# Rule 9: company_name_from_opportunity
# ---------------------------------------------------------------------------

def company_name_from_opportunity(opportunity_name: str | None) -> str | None:
    """Opportunity names are "<Company>-"; drop the trailing dash."""
    v = normalize_space(opportunity_name)
    if v is None:
        return None
    return trim(v.rstrip("-")) or v
