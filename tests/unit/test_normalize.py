"""Unit tests for crm_import.normalize."""

from datetime import date

from crm_import.export_config import default_export_config
from crm_import.normalize import (
    company_name_from_opportunity,
    extract_external_id,
    fold_header,
    map_stage,
    normalize_owner_name,
    normalize_space,
    parse_export_date,
    trim,
    unquote_cell,
)


# ---------------------------------------------------------------------------
# trim / normalize_space
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("hello   world") == "hello world"

    def test_collapses_tabs(self):
        assert normalize_space("hello\t\tworld") == "hello world"

    def test_none(self):
        assert normalize_space(None) is None


# ---------------------------------------------------------------------------
# unquote_cell
# ---------------------------------------------------------------------------

class TestUnquoteCell:
    def test_balanced_quotes_removed(self):
        assert unquote_cell('"Acme GmbH-"') == "Acme GmbH-"

    def test_stray_leading_quote_removed(self):
        assert unquote_cell('"Acme') == "Acme"

    def test_stray_trailing_quote_removed(self):
        assert unquote_cell("Acme'") == "Acme"

    def test_inner_quotes_kept(self):
        assert unquote_cell('Acme "Nord" AG') == 'Acme "Nord" AG'

    def test_quoted_blank_is_none(self):
        assert unquote_cell('"  "') is None


# ---------------------------------------------------------------------------
# fold_header
# ---------------------------------------------------------------------------

class TestFoldHeader:
    def test_umlauts_folded(self):
        assert fold_header("Nächster Schritt") == "naechster schritt"

    def test_quotes_and_case(self):
        assert fold_header('"Opportunity-Inhaber"') == "opportunity-inhaber"

    def test_spaces_collapsed(self):
        assert fold_header("  Close   Date ") == "close date"

    def test_none_is_empty(self):
        assert fold_header(None) == ""


# ---------------------------------------------------------------------------
# normalize_owner_name
# ---------------------------------------------------------------------------

class TestNormalizeOwnerName:
    def test_case_and_space_insensitive(self):
        assert normalize_owner_name("  Jane   DOE ") == normalize_owner_name("jane doe")

    def test_accents_significant(self):
        assert normalize_owner_name("Hans Müller") != normalize_owner_name("Hans Muller")

    def test_sharp_s_significant(self):
        assert normalize_owner_name("Jan Strauß") == "jan strauß"
        assert normalize_owner_name("Jan Strauß") != normalize_owner_name("Jan Strauss")

    def test_umlaut_case_folded(self):
        assert normalize_owner_name("HANS MÜLLER") == normalize_owner_name("Hans Müller")

    def test_blank_is_none(self):
        assert normalize_owner_name("   ") is None


# ---------------------------------------------------------------------------
# parse_export_date
# ---------------------------------------------------------------------------

class TestParseExportDate:
    def test_german_format(self):
        assert parse_export_date("31.12.2024") == date(2024, 12, 31)

    def test_single_digit_day_month(self):
        assert parse_export_date("1.2.2025") == date(2025, 2, 1)

    def test_iso_format(self):
        assert parse_export_date("2025-03-15") == date(2025, 3, 15)

    def test_time_part_dropped(self):
        assert parse_export_date("31.12.2024 14:05") == date(2024, 12, 31)

    def test_impossible_date_is_none(self):
        assert parse_export_date("31.02.2024") is None

    def test_free_text_is_none(self):
        assert parse_export_date("Q1 2025") is None

    def test_none(self):
        assert parse_export_date(None) is None


# ---------------------------------------------------------------------------
# map_stage
# ---------------------------------------------------------------------------

class TestMapStage:
    labels = default_export_config().stage_labels

    def test_known_label(self):
        assert map_stage("Closed Won", self.labels) == "close_won"

    def test_label_whitespace_and_case(self):
        assert map_stage("  CLOSED   lost ", self.labels) == "close_lost"

    def test_no_show_maps_to_nurture(self):
        assert map_stage("Demo cancelled/No-Show", self.labels) == "nurture"

    def test_canonical_code_accepted(self):
        assert map_stage("sent_quote", self.labels) == "sent_quote"

    def test_unknown_label_kept_verbatim(self):
        assert map_stage("Proposal", self.labels) == "Proposal"

    def test_blank_is_none(self):
        assert map_stage("", self.labels) is None


# ---------------------------------------------------------------------------
# extract_external_id
# ---------------------------------------------------------------------------

class TestExtractExternalId:
    def test_query_parameter(self):
        assert extract_external_id("https://x.example/signup?sfid=OPP-9&lang=de") == "OPP-9"

    def test_last_path_segment(self):
        assert extract_external_id("https://crm.example/lightning/r/Opportunity/OPP-4/") == "OPP-4"

    def test_bare_value(self):
        assert extract_external_id("OPP-7") == "OPP-7"

    def test_custom_parameter(self):
        assert extract_external_id("https://x.example/s?oid=A1", query_param="oid") == "A1"

    def test_no_path_is_none(self):
        assert extract_external_id("https://x.example/") is None

    def test_blank_is_none(self):
        assert extract_external_id("  ") is None


# ---------------------------------------------------------------------------
# company_name_from_opportunity
# ---------------------------------------------------------------------------

class TestCompanyName:
    def test_trailing_dash_removed(self):
        assert company_name_from_opportunity("Acme GmbH-") == "Acme GmbH"

    def test_dash_with_space(self):
        assert company_name_from_opportunity("Acme -") == "Acme"

    def test_no_dash(self):
        assert company_name_from_opportunity("Acme") == "Acme"

    def test_inner_dash_kept(self):
        assert company_name_from_opportunity("Müller-Lüdenscheidt KG-") == "Müller-Lüdenscheidt KG"
