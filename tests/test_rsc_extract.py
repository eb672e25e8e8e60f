"""Unit tests for rsc_extract.py: RSC flight payload extraction.

Tests cover: bracket balancing, one-level unescaping, the strict and
fallback listing paths, empty results, and pagination metadata.
"""

import json
import logging
from unittest.mock import patch

import pytest

from conftest import property_dict
from errors import MalformedInput
from rsc_extract import RscPayloadExtractor, extract_balanced, unescape_payload


# =========================================================================
# Helpers
# =========================================================================

def _escape(obj_json: str) -> str:
    """Escape a JSON document the way it sits inside a flight string."""
    return json.dumps(obj_json, ensure_ascii=False)[1:-1]


def _flight_html(properties_json: str, meta_json: str = None, padding: str = "") -> str:
    inner = '{"properties":' + properties_json
    if meta_json is not None:
        inner += ',"propertiesMeta":' + meta_json
    inner += "}"
    return (
        "<html><head><title>Rent</title></head><body>"
        '<script>self.__next_f.push([0])</script>'
        f'<script>self.__next_f.push([1,"{padding}{_escape(inner)}"])</script>'
        "</body></html>"
    )


# =========================================================================
# extract_balanced
# =========================================================================

class TestExtractBalanced:
    def test_simple_array(self):
        text = 'xx[1, [2, 3], {"a": 4}] trailing'
        assert extract_balanced(text, 2) == '[1, [2, 3], {"a": 4}]'

    def test_object(self):
        text = '{"a": {"b": [1]}}, {"c": 2}'
        assert extract_balanced(text, 0) == '{"a": {"b": [1]}}'

    def test_brackets_inside_strings_are_ignored(self):
        text = '[{"name": "Tower ]"}, {"name": "[B"}] rest'
        assert extract_balanced(text, 0) == '[{"name": "Tower ]"}, {"name": "[B"}]'

    def test_escaped_quote_does_not_end_string(self):
        text = r'["say \"]\" ok", 1] rest'
        assert extract_balanced(text, 0) == r'["say \"]\" ok", 1]'

    def test_unbalanced_raises(self):
        with pytest.raises(MalformedInput):
            extract_balanced("[1, [2, 3]", 0)

    def test_start_not_on_bracket_raises(self):
        with pytest.raises(MalformedInput):
            extract_balanced("abc[1]", 0)

    def test_start_out_of_range_raises(self):
        with pytest.raises(MalformedInput):
            extract_balanced("[1]", 10)

    def test_result_is_a_fixed_point(self):
        text = '[{"a": "]["}, [[]]] tail'
        first = extract_balanced(text, 0)
        assert extract_balanced(first, 0) == first


# =========================================================================
# unescape_payload
# =========================================================================

class TestUnescapePayload:
    def test_plain_escaped_quotes(self):
        assert unescape_payload('{\\"a\\":1}') == '{"a":1}'

    def test_escaped_quote_inside_value_survives(self):
        # \\\" in the flight string is \" in the decoded JSON
        assert unescape_payload('\\"x\\\\\\"y\\"') == '"x\\"y"'

    def test_escaped_backslash_survives(self):
        assert unescape_payload('\\"C:\\\\\\\\tmp\\"') == '"C:\\\\tmp"'

    def test_newlines_and_tabs(self):
        assert unescape_payload("a\\\\nb\\\\tc") == "a\\nb\\tc"
        assert unescape_payload("a\\nb") == "a\nb"

    def test_unicode_escape(self):
        assert unescape_payload("\\u30d1") == "パ"

    def test_trailing_backslash_left_alone(self):
        assert unescape_payload('\\"abc\\') == '"abc\\'

    def test_matches_real_embedding(self):
        doc = json.dumps({"name": 'The "Park" Residence\nA\\B'})
        embedded = json.dumps(doc)[1:-1]
        assert unescape_payload(embedded) == doc


# =========================================================================
# Listings
# =========================================================================

class TestParseListings:
    def test_strict_path(self):
        props = [property_dict(1), property_dict(2)]
        page = RscPayloadExtractor().extract(_flight_html(json.dumps(props)))

        assert [p.id for p in page.listings] == [1, 2]
        first = page.listings[0]
        assert first.name == "Residence 1"
        assert first.rent_amount == 250000
        assert first.nearest_station().name == "Azabu-juban"
        assert first.url == "https://e-housing.jp/rent/tokyo/minato/residence-1/301"

    def test_empty_array_short_circuits(self, caplog):
        extractor = RscPayloadExtractor()
        with caplog.at_level(logging.WARNING, logger="rsc_extract"), \
                patch.object(extractor, "_fallback_items") as mock_fallback:
            page = extractor.extract(_flight_html("[]"))

        assert page.listings == []
        mock_fallback.assert_not_called()
        assert "trying fallback window" not in caplog.text

    def test_quote_in_name_survives(self, caplog):
        props = [property_dict(1, name='The "Park" Residence'), property_dict(2)]
        with caplog.at_level(logging.WARNING, logger="rsc_extract"):
            page = RscPayloadExtractor().extract(_flight_html(json.dumps(props)))

        assert [p.id for p in page.listings] == [1, 2]
        assert page.listings[0].name == 'The "Park" Residence'
        assert "trying fallback window" not in caplog.text

    def test_newline_and_backslash_in_name_survive(self):
        props = [property_dict(1, name="Line one\nLine two \\ annex")]
        page = RscPayloadExtractor().extract(_flight_html(json.dumps(props)))
        assert page.listings[0].name == "Line one\nLine two \\ annex"

    def test_parsing_is_idempotent(self):
        props = [property_dict(1, name='Tower "A"'), property_dict(2), property_dict(3)]
        html = _flight_html(json.dumps(props))
        extractor = RscPayloadExtractor()

        first = extractor.extract(html)
        second = extractor.extract(html)
        assert first.listings == second.listings
        assert [p.id for p in second.listings] == [1, 2, 3]

    def test_no_flight_data_raises(self):
        with pytest.raises(MalformedInput, match="No RSC flight data"):
            RscPayloadExtractor().extract("<html><script>var x = 1;</script></html>")

    def test_missing_marker_raises(self):
        html = '<script>self.__next_f.push([1,"{\\"other\\":[]}"])</script>'
        with pytest.raises(MalformedInput):
            RscPayloadExtractor().extract(html)

    def test_unbalanced_bracket_in_name_uses_fallback(self, caplog):
        # A lone ']' inside a value confuses the escaped-text scan; the
        # fallback unescapes first and gets it right.
        props = [property_dict(7, name="Tower ]"), property_dict(8)]
        with caplog.at_level(logging.WARNING, logger="rsc_extract"):
            page = RscPayloadExtractor().extract(_flight_html(json.dumps(props)))

        assert [p.id for p in page.listings] == [7, 8]
        assert page.listings[0].name == "Tower ]"
        assert "trying fallback window" in caplog.text

    def test_truncated_window_returns_empty_and_logs(self, caplog):
        props = [property_dict(i, name=f"Tower ] {i}") for i in range(5)]
        extractor = RscPayloadExtractor(fallback_window=200)
        with caplog.at_level(logging.ERROR, logger="rsc_extract"):
            page = extractor.extract(_flight_html(json.dumps(props)))

        assert page.listings == []
        assert "exceeds fallback window" in caplog.text

    def test_entries_without_id_are_skipped(self):
        props = [property_dict(1), {"name": "no id"}, property_dict(3)]
        page = RscPayloadExtractor().extract(_flight_html(json.dumps(props)))
        assert [p.id for p in page.listings] == [1, 3]

    def test_japanese_text_round_trips(self):
        props = [property_dict(5, name="パークハウス南麻布")]
        page = RscPayloadExtractor().extract(
            _flight_html(json.dumps(props, ensure_ascii=False))
        )
        assert page.listings[0].name == "パークハウス南麻布"


# =========================================================================
# Pagination metadata
# =========================================================================

class TestParseMeta:
    def test_meta_parsed(self):
        meta = json.dumps({"total": 42, "per_page": 20, "current_page": 1, "last_page": 3})
        page = RscPayloadExtractor().extract(_flight_html("[]", meta_json=meta))
        assert page.meta.total == 42
        assert page.meta.last_page == 3

    def test_missing_meta_is_none(self):
        page = RscPayloadExtractor().extract(_flight_html("[]"))
        assert page.meta is None

    def test_unbalanced_meta_is_none(self):
        payload = '\\"properties\\":[],\\"propertiesMeta\\":{\\"total\\":3'
        assert RscPayloadExtractor.parse_meta(payload) is None
