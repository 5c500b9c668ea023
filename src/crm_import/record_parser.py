"""crm_import.record_parser

Record Parser: raw export bytes → ordered, normalized rows.

Decoding policy:
    The CRM writes single-byte Western text (cp1252) even for umlauts.  The
    encodings of the export profile are tried in a fixed priority order and
    never merged; a cp1252 result is rejected when the same bytes form valid
    multi-byte UTF-8 (the text would be mojibake), in which case UTF-8 wins.
    A UTF-8 byte-order mark short-circuits straight to UTF-8.  An explicitly
    declared encoding is used alone.

Column mapping:
    Header cells are folded (case, quotes, umlauts) and looked up in the
    profile's alias table.  Headers that match no alias exactly may still
    fill a column no other header claimed if they contain one of its aliases.
    Missing required columns raise SchemaError before a single row is
    produced.  Optional columns that are absent are left out of
    ``ParsedRow.provided`` so the matcher never diffs against them; date cells
    that fail to parse are listed in ``ParsedRow.unparsed`` and are not
    diffed either.

Output:
    ParsedExport.rows is a tuple in input order; parsing the same bytes again
    yields an equal result.
"""

from __future__ import annotations

import codecs
import csv
import io
from dataclasses import dataclass, field
from datetime import date
from typing import Sequence

from crm_import.export_config import (
    LOGICAL_COLUMNS,
    REQUIRED_COLUMNS,
    ExportConfig,
    default_export_config,
)
from crm_import.normalize import (
    company_name_from_opportunity,
    extract_external_id,
    map_stage,
    normalize_space,
    parse_export_date,
    unquote_cell,
)
from crm_import.shared import (
    EmptyExportError,
    EncodingError,
    MalformedRowError,
    SchemaError,
)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParsedRow:
    row_number: int
    opportunity_name: str
    company_name: str
    stage: str | None
    close_date: date | None
    created_date: date | None
    owner_name: str | None
    rating: str | None
    next_step: str | None
    external_id: str | None
    provided: frozenset[str]
    # Provided columns whose non-blank cell could not be parsed.
    unparsed: frozenset[str] = frozenset()
    raw: dict[str, str] = field(compare=False, hash=False, repr=False, default_factory=dict)


@dataclass
class ParsedExport:
    rows: tuple[ParsedRow, ...]
    encoding: str
    delimiter: str
    headers: list[str]
    column_map: dict[str, int]
    rows_read: int = 0
    rows_skipped_blank: int = 0
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _is_utf8_codec(encoding: str) -> bool:
    return codecs.lookup(encoding).name == "utf-8"


def _looks_usable(raw: bytes, text: str, encoding: str) -> bool:
    if "\x00" in text:
        return False
    if _is_utf8_codec(encoding) or raw.isascii():
        return True
    try:
        raw.decode("utf-8")
    except UnicodeDecodeError:
        return True
    # Valid multi-byte UTF-8 read through a single-byte codec is mojibake.
    return False


def decode_export(
    raw: bytes,
    encoding: str | None = None,
    priority: Sequence[str] = ("cp1252", "utf-8"),
) -> tuple[str, str]:
    """Decode export bytes; return (text, encoding used).

    Raises:
        EncodingError: declared encoding fails, or no encoding in ``priority``
            yields usable text.
    """
    if encoding:
        try:
            if _is_utf8_codec(encoding):
                return raw.decode("utf-8-sig"), "utf-8"
            return raw.decode(encoding), encoding
        except LookupError:
            raise EncodingError(f"unknown encoding {encoding!r}", encoding=encoding)
        except UnicodeDecodeError as exc:
            raise EncodingError(
                f"export is not valid {encoding}: {exc.reason} at byte {exc.start}",
                encoding=encoding,
                byte_offset=exc.start,
            )

    if raw.startswith(codecs.BOM_UTF8):
        try:
            return raw.decode("utf-8-sig"), "utf-8"
        except UnicodeDecodeError as exc:
            raise EncodingError(
                f"export has a UTF-8 byte-order mark but is not valid UTF-8 "
                f"(byte {exc.start})",
                encoding="utf-8",
                byte_offset=exc.start,
            )

    failures: list[str] = []
    for enc in priority:
        try:
            text = raw.decode(enc)
        except UnicodeDecodeError as exc:
            failures.append(f"{enc}: {exc.reason} at byte {exc.start}")
            continue
        if _looks_usable(raw, text, enc):
            return text, enc
        failures.append(f"{enc}: decoded text is not usable")
    raise EncodingError(
        "export could not be decoded with any supported encoding",
        attempts=failures,
    )


# ---------------------------------------------------------------------------
# Header handling
# ---------------------------------------------------------------------------

def _detect_delimiter(text: str, preferred: str) -> str:
    for line in text.splitlines():
        if line.strip():
            if preferred not in line and "," in line:
                return ","
            return preferred
    return preferred


def _map_columns(
    headers: list[str],
    config: ExportConfig,
    warnings: list[str],
) -> dict[str, int]:
    column_map: dict[str, int] = {}
    unmatched: list[int] = []
    for idx, header in enumerate(headers):
        logical = config.column_for_header(header)
        if logical is None:
            unmatched.append(idx)
            continue
        if logical in column_map:
            warnings.append(
                f"duplicate {logical} column {header!r} at position {idx + 1} ignored"
            )
            continue
        column_map[logical] = idx
    # Decorated headers ("Opportunity-Inhaber: Vollständiger Name") only fill
    # columns no header named exactly.
    for idx in unmatched:
        logical = config.column_for_header(headers[idx], partial=True)
        if logical is not None and logical not in column_map:
            column_map[logical] = idx
    missing = [c for c in REQUIRED_COLUMNS if c not in column_map]
    if missing:
        raise SchemaError(missing, headers)
    return column_map


# ---------------------------------------------------------------------------
# Row handling
# ---------------------------------------------------------------------------

def _build_row(
    row_number: int,
    cells: list[str],
    headers: list[str],
    column_map: dict[str, int],
    config: ExportConfig,
    warnings: list[str],
) -> ParsedRow | None:
    def cell(logical: str) -> str | None:
        idx = column_map.get(logical)
        if idx is None:
            return None
        return unquote_cell(cells[idx])

    opportunity_name = normalize_space(cell("opportunity_name"))
    if opportunity_name is None:
        return None

    dates: dict[str, date | None] = {}
    unparsed: set[str] = set()
    for logical in ("close_date", "created_date"):
        value = cell(logical)
        dates[logical] = parse_export_date(value)
        if value is not None and dates[logical] is None:
            unparsed.add(logical)
            warnings.append(
                f"row {row_number}: unparseable {logical} {value!r} ignored"
            )

    raw = {
        (headers[i] or f"column_{i + 1}"): (cells[i] or "")
        for i in range(len(headers))
    }
    return ParsedRow(
        row_number=row_number,
        opportunity_name=opportunity_name,
        company_name=company_name_from_opportunity(opportunity_name) or opportunity_name,
        stage=map_stage(cell("stage"), config.stage_labels),
        close_date=dates["close_date"],
        created_date=dates["created_date"],
        owner_name=normalize_space(cell("owner_name")),
        rating=cell("rating"),
        next_step=normalize_space(cell("next_step")),
        external_id=extract_external_id(cell("link"), config.external_id_param),
        provided=frozenset(c for c in LOGICAL_COLUMNS if c in column_map),
        unparsed=frozenset(unparsed),
        raw=raw,
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

def parse_export(
    raw: bytes,
    encoding: str | None = None,
    config: ExportConfig | None = None,
) -> ParsedExport:
    """Parse a CRM export into normalized rows.

    Args:
        raw: Export file content.
        encoding: Declared encoding; None auto-detects via the profile's
            priority list.
        config: Export profile; defaults to the built-in profile.

    Returns:
        ParsedExport with rows in input order.

    Raises:
        EncodingError, SchemaError, MalformedRowError, EmptyExportError.
    """
    config = config or default_export_config()
    text, used_encoding = decode_export(raw, encoding, config.encodings)
    delimiter = _detect_delimiter(text, config.delimiter)
    warnings: list[str] = []

    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter, strict=True)
    headers: list[str] | None = None
    column_map: dict[str, int] = {}
    rows: list[ParsedRow] = []
    rows_read = 0
    skipped_blank = 0
    data_index = 0

    while True:
        try:
            cells = next(reader)
        except StopIteration:
            break
        except csv.Error as exc:
            raise MalformedRowError(
                data_index + 1 if headers is not None else 0,
                f"unreadable CSV: {exc}",
                line_number=reader.line_num,
            )

        if not any((c or "").strip() for c in cells):
            continue

        if headers is None:
            headers = [unquote_cell(h) or "" for h in cells]
            column_map = _map_columns(headers, config, warnings)
            continue

        data_index += 1
        rows_read += 1
        if len(cells) > len(headers):
            extra = cells[len(headers):]
            if any((c or "").strip() for c in extra):
                raise MalformedRowError(
                    data_index,
                    f"{len(cells)} cells but the header has {len(headers)} columns",
                    line_number=reader.line_num,
                )
            cells = cells[: len(headers)]
        elif len(cells) < len(headers):
            cells = cells + [""] * (len(headers) - len(cells))

        parsed = _build_row(data_index, cells, headers, column_map, config, warnings)
        if parsed is None:
            skipped_blank += 1
            warnings.append(f"row {data_index}: blank opportunity name, skipped")
            continue
        rows.append(parsed)

    if headers is None:
        raise EmptyExportError("export is empty (no header row)")
    if not rows:
        raise EmptyExportError(
            "export contains no data rows with an opportunity name",
            rows_read=rows_read,
        )

    return ParsedExport(
        rows=tuple(rows),
        encoding=used_encoding,
        delimiter=delimiter,
        headers=headers,
        column_map=column_map,
        rows_read=rows_read,
        rows_skipped_blank=skipped_blank,
        warnings=warnings,
    )
