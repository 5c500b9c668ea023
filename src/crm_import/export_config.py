"""crm_import.export_config

YAML-loadable export profile for the CRM opportunity export.

Responsibilities:
  - Provide the built-in profile (column aliases, stage vocabulary, encoding
    priority, delimiter) used when no file is given
  - Load and validate an override profile from YAML (config/crm_export.yml)
  - Hash YAML content for traceability in run reports

Usage:
    from pathlib import Path
    from crm_import.export_config import load_export_config

    config = load_export_config(Path("config/crm_export.yml"))
    config.column_aliases["owner_name"]   # ("opportunity-inhaber", ...)
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from crm_import.normalize import fold_header

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_COLUMNS = ("opportunity_name", "stage", "owner_name", "link")
OPTIONAL_COLUMNS = ("close_date", "created_date", "rating", "next_step")
LOGICAL_COLUMNS = REQUIRED_COLUMNS + OPTIONAL_COLUMNS

REQUIRED_YAML_KEYS = frozenset({"version", "delimiter", "encodings", "columns", "stages"})

STAGE_CODES = (
    "sql",
    "demo_booked",
    "demo_completed",
    "sent_quote",
    "close_won",
    "close_lost",
    "nurture",
)
TERMINAL_STAGES = frozenset({"close_won", "close_lost"})

_DEFAULT_COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "opportunity_name": ("opportunity-name", "opportunity name", "opp name"),
    "stage": ("phase", "stage"),
    "owner_name": ("opportunity-inhaber", "opportunity owner", "owner", "inhaber"),
    "link": ("unique sign up link", "signup link", "sign up link", "link"),
    "close_date": ("schlusstermin", "close date", "closedate"),
    "created_date": ("erstelldatum", "created date", "createddate"),
    "rating": ("rating",),
    "next_step": ("naechster schritt", "next step"),
}

_DEFAULT_STAGE_LABELS: dict[str, str] = {
    "sql": "sql",
    "demo booked": "demo_booked",
    "demo completed": "demo_completed",
    "demo cancelled/no-show": "nurture",
    "demo cancelled": "nurture",
    "no-show": "nurture",
    "sent quote": "sent_quote",
    "closed won": "close_won",
    "closed lost": "close_lost",
    "nurture": "nurture",
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ExportConfigValidationError(ValueError):
    """Raised when a YAML export profile fails schema validation."""


# ---------------------------------------------------------------------------
# ExportConfig dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExportConfig:
    """Parsed, validated export profile."""

    version: str
    delimiter: str
    encodings: tuple[str, ...]
    column_aliases: dict[str, tuple[str, ...]]
    stage_labels: dict[str, str]
    terminal_stages: frozenset[str]
    external_id_param: str = "sfid"
    yaml_hash: str | None = None
    raw_yaml: str = field(repr=False, default="")

    def column_for_header(self, header: str, partial: bool = False) -> str | None:
        """Return the logical column a raw header cell maps to, or None.

        With ``partial`` a header that merely contains an alias also maps
        ("Opportunity-Inhaber: Vollständiger Name" → owner_name); the longest
        contained alias wins.
        """
        folded = fold_header(header)
        if not folded:
            return None
        best: tuple[int, str] | None = None
        for logical, aliases in self.column_aliases.items():
            if folded in aliases:
                return logical
            if partial:
                for alias in aliases:
                    if alias and alias in folded and (best is None or len(alias) > best[0]):
                        best = (len(alias), logical)
        return best[1] if best else None


def default_export_config() -> ExportConfig:
    labels = dict(_DEFAULT_STAGE_LABELS)
    # Canonical codes are accepted as labels too ("close_won" → "close_won").
    for code in STAGE_CODES:
        labels.setdefault(code, code)
    return ExportConfig(
        version="builtin",
        delimiter=";",
        encodings=("cp1252", "utf-8"),
        column_aliases=dict(_DEFAULT_COLUMN_ALIASES),
        stage_labels=labels,
        terminal_stages=TERMINAL_STAGES,
    )


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_export_config(yaml_path: Path | None) -> ExportConfig:
    """Load, validate, and return an ExportConfig from a YAML file.

    Returns the built-in profile when ``yaml_path`` is None.

    Raises:
        ExportConfigValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return default_export_config()

    raw = yaml_path.read_text(encoding="utf-8")
    try:
        data: dict[str, Any] = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ExportConfigValidationError(f"{yaml_path}: not valid YAML: {exc}") from exc
    validate_export_config(data)

    labels = {
        str(k).strip().lower(): str(v) for k, v in (data["stages"]["labels"] or {}).items()
    }
    codes = [str(c) for c in data["stages"]["codes"]]
    for code in codes:
        labels.setdefault(code, code)

    return ExportConfig(
        version=str(data["version"]),
        delimiter=str(data["delimiter"]),
        encodings=tuple(str(e) for e in data["encodings"]),
        column_aliases={
            logical: tuple(fold_header(a) for a in aliases or [])
            for logical, aliases in data["columns"].items()
        },
        stage_labels=labels,
        terminal_stages=frozenset(str(s) for s in data["stages"]["terminal"]),
        external_id_param=str(data.get("external_id_param") or "sfid"),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        raw_yaml=raw,
    )


def validate_export_config(data: Any) -> None:
    """Raise ExportConfigValidationError if data does not match the profile schema.

    Validates:
      - Required top-level keys present
      - delimiter is a single character, encodings a non-empty list
      - every required logical column has at least one alias, no unknown columns
      - alias lists hold non-empty strings (an optional column may be left empty)
      - stage labels map onto declared codes; terminal stages are declared codes
    """
    if not isinstance(data, dict):
        raise ExportConfigValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise ExportConfigValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    delimiter = data.get("delimiter")
    if not isinstance(delimiter, str) or len(delimiter) != 1:
        raise ExportConfigValidationError(f"'delimiter' must be a single character, got {delimiter!r}.")

    encodings = data.get("encodings")
    if not isinstance(encodings, list) or not encodings:
        raise ExportConfigValidationError("'encodings' must be a non-empty list.")
    for enc in encodings:
        try:
            "".encode(str(enc))
        except LookupError:
            raise ExportConfigValidationError(f"Unknown encoding {enc!r}.")

    columns = data.get("columns")
    if not isinstance(columns, dict):
        raise ExportConfigValidationError("'columns' must be a mapping of column → aliases.")
    unknown = set(columns) - set(LOGICAL_COLUMNS)
    if unknown:
        raise ExportConfigValidationError(f"Unknown columns: {sorted(unknown)}")
    for logical in REQUIRED_COLUMNS:
        aliases = columns.get(logical)
        if not isinstance(aliases, list) or not aliases:
            raise ExportConfigValidationError(
                f"Required column '{logical}' needs at least one alias."
            )
    for logical, aliases in columns.items():
        # An optional column left empty is simply not read.
        if aliases is None:
            continue
        if not isinstance(aliases, list) or not all(
            isinstance(a, str) and a.strip() for a in aliases
        ):
            raise ExportConfigValidationError(
                f"Aliases of column '{logical}' must be a list of non-empty strings."
            )

    stages = data.get("stages")
    if not isinstance(stages, dict):
        raise ExportConfigValidationError("'stages' must be a mapping.")
    for key in ("codes", "labels", "terminal"):
        if key not in stages:
            raise ExportConfigValidationError(f"'stages' is missing '{key}'.")
    if stages["labels"] is not None and not isinstance(stages["labels"], dict):
        raise ExportConfigValidationError("'stages.labels' must be a mapping of label to code.")
    codes = set(str(c) for c in stages["codes"] or [])
    if not codes:
        raise ExportConfigValidationError("'stages.codes' must not be empty.")
    for label, code in (stages["labels"] or {}).items():
        if str(code) not in codes:
            raise ExportConfigValidationError(
                f"Stage label {label!r} maps to undeclared code {code!r}."
            )
    terminal = set(str(t) for t in stages["terminal"] or [])
    if not terminal:
        raise ExportConfigValidationError("'stages.terminal' must not be empty.")
    if not terminal <= codes:
        raise ExportConfigValidationError(
            f"Terminal stages {sorted(terminal - codes)} are not declared codes."
        )
