"""Tests for notion_records module - codec, schema, extraction and resolution."""

import pytest
from notion_records import (
    BASE62_ALPHABET,
    MENTION_MARKER,
    SHORT_ID_PATTERN,
    RecordNotFoundError,
    ReferenceIds,
    UnresolvableIdentifierError,
    build_lookups,
    build_page_tree,
    collect_backlink_user_ids,
    collect_reference_ids,
    decode_mentions,
    decode_text,
    delete_property_args,
    encode_date,
    encode_relation_refs,
    encode_user_refs,
    enrich_rows,
    extract_property,
    extract_uuid_from_url,
    find_record,
    first_record,
    format_backlinks,
    format_block,
    format_block_children,
    format_block_record,
    format_collection,
    format_collection_summary,
    format_comment,
    format_discussions,
    format_notion_id,
    format_page,
    format_query_response,
    format_row,
    generate_short_id,
    lookup_requests,
    merge_schema,
    normalize_uuid,
    prepare_schema_properties,
    record_value,
    resolve_property_id,
    serialize_row_properties,
    serialize_value,
    simplify_schema,
    table_records,
    validate_schema,
)


def page_mention(page_id):
    return [MENTION_MARKER, [["p", page_id]]]


def user_mention(user_id):
    return [MENTION_MARKER, [["u", user_id]]]


class TestIdHelpers:
    """Tests for id generation and normalization."""

    def test_short_id_is_4_base62_chars(self):
        short_id = generate_short_id()
        assert SHORT_ID_PATTERN.match(short_id)
        assert all(c in BASE62_ALPHABET for c in short_id)

    def test_short_id_avoids_existing(self):
        existing = {generate_short_id() for _ in range(50)}
        assert generate_short_id(existing) not in existing

    def test_normalize_uuid_without_dashes(self):
        assert normalize_uuid("ABCDEF0123456789ABCDEF0123456789") == "abcdef01-2345-6789-abcd-ef0123456789"

    def test_normalize_uuid_invalid_length(self):
        with pytest.raises(ValueError):
            normalize_uuid("abc")

    def test_extract_uuid_from_url(self):
        url = "https://www.notion.so/team/My-Page-abcdef0123456789abcdef0123456789?pvs=4"
        assert extract_uuid_from_url(url) == "abcdef01-2345-6789-abcd-ef0123456789"

    def test_extract_uuid_from_non_notion_url(self):
        assert extract_uuid_from_url("https://example.com/abcdef0123456789abcdef0123456789") is None

    def test_format_notion_id_passes_unknown_through(self):
        assert format_notion_id(" page-abc ") == "page-abc"

    def test_format_notion_id_from_url(self):
        url = "https://notion.so/abcdef0123456789abcdef0123456789"
        assert format_notion_id(url) == "abcdef01-2345-6789-abcd-ef0123456789"


class TestDecodeText:
    """Tests for decorated-text decoding."""

    def test_concatenates_plain_segments(self):
        assert decode_text([["Hello "], ["world"]]) == "Hello world"

    def test_formatting_decorators_keep_literal_text(self):
        segments = [["bold", [["b"]]], [" and "], ["link", [["a", "https://x.y"]]]]
        assert decode_text(segments) == "bold and link"

    def test_page_mention_decodes_to_id(self):
        assert decode_text([["See "], page_mention("page-1")]) == "See page-1"

    def test_mention_resolved_with_names(self):
        assert decode_text([user_mention("u1")], {"u1": "Ada"}) == "Ada"

    def test_unresolved_mention_replacement(self):
        assert decode_text([user_mention("u1")], {}, MENTION_MARKER) == MENTION_MARKER

    def test_date_mention(self):
        segments = [[MENTION_MARKER, [["d", {"type": "date", "start_date": "2024-05-01"}]]]]
        assert decode_text(segments) == "2024-05-01"

    def test_date_range_mention(self):
        assert decode_text(encode_date("2024-05-01", "2024-05-03")) == "2024-05-01 → 2024-05-03"

    def test_marker_without_mention_decorator_is_dropped(self):
        assert decode_text([["a"], [MENTION_MARKER], [MENTION_MARKER, [["b"]]], ["c"]]) == "ac"

    @pytest.mark.parametrize("raw", [None, "text", 42, [None, 5, []], {"a": 1}])
    def test_malformed_payload(self, raw):
        assert decode_text(raw) == ""


class TestDecodeMentions:
    """Tests for mention collection."""

    def test_collects_pages_and_users_in_order(self):
        segments = [["Hi "], user_mention("u1"), [" see "], page_mention("p1")]
        assert decode_mentions(segments) == [
            {"id": "u1", "kind": "user"},
            {"id": "p1", "kind": "page"},
        ]

    def test_ignores_dates_and_formatting(self):
        segments = [["x", [["b"]]], *encode_date("2024-01-01")]
        assert decode_mentions(segments) == []


class TestRecordNavigator:
    """Tests for single- and double-wrapped record access."""

    def test_single_wrapped(self):
        assert record_value({"value": {"id": "b1"}}) == {"id": "b1"}

    def test_double_wrapped(self):
        wrapper = {"value": {"value": {"id": "b1"}, "role": "editor"}}
        assert record_value(wrapper) == {"id": "b1"}

    def test_value_field_without_role_is_not_unwrapped(self):
        fields = {"id": "b1", "value": "x"}
        assert record_value({"value": fields}) == fields

    @pytest.mark.parametrize("wrapper", [None, {}, {"value": None}, {"value": "x"}, "x"])
    def test_absent_returns_none(self, wrapper):
        assert record_value(wrapper) is None

    def test_find_record_by_key_then_id(self):
        record_map = {"block": {"key-1": {"value": {"id": "real-id"}}}}
        assert find_record(record_map, "block", "key-1") == {"id": "real-id"}
        assert find_record(record_map, "block", "real-id") == {"id": "real-id"}
        assert find_record(record_map, "block", "missing") is None

    def test_table_records_skips_empty_wrappers(self):
        record_map = {"block": {"a": {"value": {"id": "a"}}, "b": {}}}
        assert list(table_records(record_map, "block")) == ["a"]

    def test_first_record(self):
        assert first_record({"collection": {"c": {"value": {"id": "c"}}}}, "collection") == {"id": "c"}
        assert first_record({}, "collection") is None


class TestSimplifySchema:
    """Tests for name-keyed schema simplification."""

    def test_title_and_select(self):
        raw = {
            "title": {"name": "Name", "type": "title"},
            "p1": {"name": "Status", "type": "select", "options": [{"value": "Done"}]},
        }
        assert simplify_schema(raw) == {
            "Name": {"type": "title"},
            "Status": {"type": "select", "options": ["Done"]},
        }

    def test_dead_properties_never_appear(self):
        raw = {
            "a": {"name": "Old", "type": "text", "alive": False},
            "b": {"name": "New", "type": "text"},
        }
        assert list(simplify_schema(raw)) == ["New"]

    def test_duplicate_names_last_wins(self):
        raw = {
            "a": {"name": "Tag", "type": "text"},
            "b": {"name": "Tag", "type": "number"},
        }
        assert simplify_schema(raw) == {"Tag": {"type": "number"}}

    def test_dead_duplicate_does_not_shadow(self):
        raw = {
            "a": {"name": "Tag", "type": "text"},
            "b": {"name": "Tag", "type": "number", "alive": False},
        }
        assert simplify_schema(raw) == {"Tag": {"type": "text"}}

    def test_relation_and_rollup(self):
        raw = {
            "r": {"name": "Plan", "type": "relation", "collection_id": "coll-2"},
            "u": {
                "name": "Cost", "type": "rollup", "relation_property": "r",
                "target_property": "x", "rollup_type": "relation",
            },
        }
        simplified = simplify_schema(raw)
        assert simplified["Plan"] == {"type": "relation", "collection_id": "coll-2"}
        assert simplified["Cost"]["relation_property"] == "Plan"
        assert simplified["Cost"]["rollup_type"] == "relation"

    def test_auto_increment_prefix(self):
        raw = {"id": {"name": "ID", "type": "auto_increment_id", "prefix": "TASK"}}
        assert simplify_schema(raw) == {"ID": {"type": "auto_increment_id", "prefix": "TASK"}}

    def test_malformed_schema(self):
        assert simplify_schema(None) == {}
        assert simplify_schema({"a": "x", "b": {"type": "text"}}) == {}

    @pytest.mark.parametrize("relation_property", [["x"], {"a": 1}, 7])
    def test_rollup_with_non_string_relation_property(self, relation_property):
        raw = {"r1": {"name": "Total", "type": "rollup", "relation_property": relation_property, "rollup_type": "relation"}}
        assert simplify_schema(raw) == {"Total": {"type": "rollup", "rollup_type": "relation"}}


class TestValidateSchema:
    """Tests for schema diagnostic hints."""

    def test_healthy_schema_has_no_hints(self):
        raw = {
            "title": {"name": "Name", "type": "title"},
            "r": {"name": "Plan", "type": "relation", "collection_id": "c2"},
            "u": {"name": "Cost", "type": "rollup", "relation_property": "r", "rollup_type": "relation"},
        }
        assert validate_schema(raw, "c1") == []

    def test_rollup_missing_rollup_type(self):
        raw = {
            "r": {"name": "Plan", "type": "relation", "collection_id": "c2"},
            "u": {"name": "Cost", "type": "rollup", "relation_property": "r"},
        }
        hints = validate_schema(raw, "c1")
        assert len(hints) == 1
        assert "Cost" in hints[0]
        assert "rollup_type" in hints[0]
        assert "notion-internal database update c1 --properties" in hints[0]

    def test_rollup_with_aggregation_and_missing_type_gives_two_hints(self):
        raw = {
            "r": {"name": "Plan", "type": "relation", "collection_id": "c2"},
            "u": {"name": "Cost", "type": "rollup", "relation_property": "r", "aggregation": "sum"},
        }
        hints = validate_schema(raw)
        assert len(hints) == 2
        assert any("aggregation" in h for h in hints)
        assert any("rollup_type" in h for h in hints)

    def test_rollup_pointing_at_deleted_relation(self):
        raw = {
            "r": {"name": "Plan", "type": "relation", "collection_id": "c2", "alive": False},
            "u": {"name": "Cost", "type": "rollup", "relation_property": "r", "rollup_type": "relation"},
        }
        hints = validate_schema(raw)
        assert any("is deleted" in h and "Cost" in h for h in hints)
        assert any("soft-deleted" in h and "Plan" in h for h in hints)

    def test_rollup_pointing_at_missing_or_wrong_type(self):
        raw = {
            "t": {"name": "Notes", "type": "text"},
            "u": {"name": "A", "type": "rollup", "relation_property": "gone", "rollup_type": "relation"},
            "v": {"name": "B", "type": "rollup", "relation_property": "t", "rollup_type": "relation"},
            "w": {"name": "C", "type": "rollup", "rollup_type": "relation"},
        }
        hints = validate_schema(raw)
        assert any('"A"' in h and "does not exist" in h for h in hints)
        assert any('"B"' in h and "not a relation" in h for h in hints)
        assert any('"C"' in h and "has no relation_property" in h for h in hints)

    @pytest.mark.parametrize("relation_property", [["x"], {"a": 1}])
    def test_rollup_with_non_string_relation_property(self, relation_property):
        raw = {"r1": {"name": "Total", "type": "rollup", "relation_property": relation_property, "rollup_type": "relation"}}
        hints = validate_schema(raw)
        assert len(hints) == 1
        assert "Total" in hints[0]
        assert "does not exist" in hints[0]

    def test_dead_rollup_missing_rollup_type(self):
        raw = {
            "rel": {"name": "Plan", "type": "relation", "collection_id": "c2"},
            "r1": {"name": "Total", "type": "rollup", "relation_property": "rel", "alive": False},
        }
        hints = validate_schema(raw)
        assert len(hints) == 1
        assert "Total" in hints[0]
        assert "soft-deleted" in hints[0]
        assert "rollup_type" in hints[0]

    def test_dead_rollup_with_rollup_type(self):
        raw = {"r1": {"name": "Total", "type": "rollup", "relation_property": "x", "rollup_type": "relation", "alive": False}}
        hints = validate_schema(raw)
        assert len(hints) == 1
        assert "rollup_type" not in hints[0]

    def test_relation_without_collection_id(self):
        hints = validate_schema({"r": {"name": "Plan", "type": "relation"}})
        assert len(hints) == 1
        assert "has no collection_id" in hints[0]

    def test_duplicate_names_are_reported(self):
        raw = {
            "a": {"name": "Tag", "type": "text"},
            "b": {"name": "Tag", "type": "number"},
        }
        hints = validate_schema(raw)
        assert len(hints) == 1
        assert "duplicate name" in hints[0]
        assert 'Property "Tag" (text)' in hints[0]

    def test_non_dict_schema(self):
        assert validate_schema(None) == []


class TestExtractProperty:
    """Tests for typed property extraction."""

    def test_title_with_mentions(self):
        result = extract_property([["Ask "], user_mention("u1")], "title")
        assert result == {
            "type": "title",
            "value": "Ask u1",
            "mentions": [{"id": "u1", "kind": "user"}],
        }

    def test_text_without_mentions_has_no_mentions_key(self):
        assert extract_property([["plain"]], "text") == {"type": "text", "value": "plain"}

    def test_number(self):
        assert extract_property([["42"]], "number")["value"] == 42
        assert extract_property([["3.5"]], "number")["value"] == 3.5
        assert extract_property([["-7"]], "number")["value"] == -7
        assert extract_property([["1.5e3"]], "number")["value"] == 1500.0

    @pytest.mark.parametrize("raw", [
        [["abc"]], [["NaN"]], [["inf"]], [[""]], None,
        [["1_000"]], [["\u0661\u0662"]], [["1e999"]], [["1.2.3"]],
    ])
    def test_bad_number_is_none(self, raw):
        assert extract_property(raw, "number")["value"] is None

    def test_checkbox(self):
        assert extract_property([["Yes"]], "checkbox")["value"] is True
        assert extract_property([["No"]], "checkbox")["value"] is False
        assert extract_property(None, "checkbox")["value"] is False

    def test_select_empty_is_none(self):
        assert extract_property(None, "select") == {"type": "select", "value": None}

    def test_multi_select_splits_on_commas(self):
        assert extract_property([["a, b,c"]], "multi_select")["value"] == ["a", "b", "c"]

    def test_date(self):
        assert extract_property(encode_date("2024-01-01", "2024-01-05"), "date")["value"] == {
            "start": "2024-01-01", "end": "2024-01-05",
        }
        assert extract_property(None, "date")["value"] is None

    def test_relation_ignores_other_decorators(self):
        raw = [["x", [["b"]]], [MENTION_MARKER, [["p", "p1"], ["b"]]], ["y"], page_mention("p2")]
        assert extract_property(raw, "relation")["value"] == ["p1", "p2"]

    def test_relation_round_trip_preserves_order(self):
        ids = ["p3", "p1", "p2"]
        assert extract_property(encode_relation_refs(ids), "relation")["value"] == ids

    def test_person_round_trip(self):
        assert extract_property(encode_user_refs(["u1", "u2"]), "person")["value"] == ["u1", "u2"]

    def test_unknown_type_falls_back_to_text(self):
        assert extract_property([["hi"]], "button") == {"type": "button", "value": "hi"}

    def test_created_time_from_millis(self):
        assert extract_property(0, "created_time")["value"] == "1970-01-01T00:00:00.000Z"

    def test_created_by_from_block_field(self):
        assert extract_property("u1", "created_by")["value"] == ["u1"]

    def test_auto_increment_with_prefix(self):
        assert extract_property([["7"]], "auto_increment_id", "T") == {
            "type": "auto_increment_id", "value": 7, "prefix": "T",
        }

    def test_rollup_passed_through(self):
        raw = [["3"]]
        assert extract_property(raw, "rollup")["value"] is raw


class TestFormatRow:
    """Tests for row and query formatting."""

    SCHEMA = {
        "title": {"name": "Name", "type": "title"},
        "relKey": {"name": "Plan", "type": "relation"},
        "ct": {"name": "Created", "type": "created_time"},
        "old": {"name": "Gone", "type": "text", "alive": False},
    }

    def test_relation_scenario(self):
        row = format_row(
            {"id": "row-1", "properties": {"relKey": [["‣", [["p", "page-abc"]]]]}},
            {"relKey": {"name": "Plan", "type": "relation"}},
        )
        assert row["properties"] == {"Plan": {"type": "relation", "value": ["page-abc"]}}
        enrich_rows([row], {"page-abc": "Claude Max"}, {})
        assert row["properties"] == {
            "Plan": {"type": "relation", "value": [{"id": "page-abc", "title": "Claude Max"}]},
        }

    def test_block_fields_and_dead_columns(self):
        row = format_row({"id": "r", "created_time": 0, "properties": {"title": [["T"]]}}, self.SCHEMA)
        assert row["properties"]["Created"]["value"] == "1970-01-01T00:00:00.000Z"
        assert row["properties"]["Plan"] == {"type": "relation", "value": []}
        assert "Gone" not in row["properties"]

    def test_without_schema_only_title(self):
        row = format_row({"id": "r", "properties": {"title": [["T"]], "x": [["y"]]}})
        assert row == {"id": "r", "properties": {"title": {"type": "title", "value": "T"}}}

    def test_query_response_skips_missing_and_dead_rows(self):
        response = {
            "result": {"reducerResults": {"collection_group_results": {
                "blockIds": ["r1", "r2", "r3"], "hasMore": True,
            }}},
            "recordMap": {
                "collection": {"c": {"value": {"id": "c", "schema": self.SCHEMA}}},
                "block": {
                    "r1": {"value": {"id": "r1", "properties": {"title": [["One"]]}}},
                    "r3": {"value": {"id": "r3", "alive": False}},
                },
            },
        }
        result = format_query_response(response)
        assert [r["id"] for r in result["results"]] == ["r1"]
        assert result["results"][0]["properties"]["Name"]["value"] == "One"
        assert result["has_more"] is True
        assert result["next_cursor"] is None

    def test_query_response_malformed(self):
        assert format_query_response(None) == {"results": [], "has_more": False, "next_cursor": None}

    @pytest.mark.parametrize("block_ids", [None, "r1", {"r1": True}])
    def test_query_response_bad_block_ids(self, block_ids):
        response = {"result": {"reducerResults": {"collection_group_results": {"blockIds": block_ids}}}}
        assert format_query_response(response)["results"] == []


class TestReferenceResolver:
    """Tests for the collect / enrich passes."""

    def rows(self):
        return [
            {"id": "r1", "properties": {
                "Plan": {"type": "relation", "value": ["p1", "p2"]},
                "Owner": {"type": "person", "value": ["u1"]},
                "Name": {"type": "title", "value": "See p3", "mentions": [{"id": "p3", "kind": "page"}]},
            }},
            {"id": "r2", "properties": {
                "Plan": {"type": "relation", "value": ["p1"]},
                "By": {"type": "created_by", "value": ["u2"]},
            }},
        ]

    def test_collect_dedupes_by_kind(self):
        refs = collect_reference_ids(self.rows())
        assert refs.pages == {"p1", "p2", "p3"}
        assert refs.users == {"u1", "u2"}

    def test_empty_refs_are_falsy(self):
        assert not collect_reference_ids([{"id": "r", "properties": {"N": {"type": "title", "value": "x"}}}])
        assert ReferenceIds(pages={"p"})

    def test_lookup_requests(self):
        requests = lookup_requests(ReferenceIds(pages={"p2", "p1"}, users={"u1"}))
        assert [r["pointer"] for r in requests] == [
            {"table": "block", "id": "p1"},
            {"table": "block", "id": "p2"},
            {"table": "notion_user", "id": "u1"},
        ]

    def test_build_lookups(self):
        record_map = {
            "block": {"p1": {"value": {"id": "p1", "properties": {"title": [["Plan A"]]}}}},
            "notion_user": {"u1": {"value": {"value": {"id": "u1", "name": "Ada"}, "role": "reader"}}},
        }
        assert build_lookups(record_map) == ({"p1": "Plan A"}, {"u1": "Ada"})

    def test_enrich_falls_back_to_id(self):
        rows = self.rows()
        enrich_rows(rows, {"p1": "Plan A", "p3": "Roadmap"}, {"u1": "Ada"})
        props = rows[0]["properties"]
        assert props["Plan"]["value"] == [{"id": "p1", "title": "Plan A"}, {"id": "p2", "title": "p2"}]
        assert props["Owner"]["value"] == [{"id": "u1", "name": "Ada"}]
        assert props["Name"]["value"] == "See Roadmap"
        assert props["Name"]["mentions"] == [{"id": "p3", "kind": "page", "title": "Roadmap"}]
        assert rows[1]["properties"]["By"]["value"] == [{"id": "u2", "name": "u2"}]

    def test_enrich_unresolved_mention_keeps_text(self):
        rows = [{"id": "r", "properties": {
            "Name": {"type": "title", "value": "Ask u9", "mentions": [{"id": "u9", "kind": "user"}]},
        }}]
        enrich_rows(rows, {}, {})
        assert rows[0]["properties"]["Name"]["value"] == "Ask u9"
        assert rows[0]["properties"]["Name"]["mentions"][0]["name"] == "u9"


class TestPageTree:
    """Tests for page tree building."""

    def test_missing_child_is_skipped(self):
        blocks = {"c2": {"value": {"id": "c2", "type": "text", "properties": {"title": [["Two"]]}}}}
        assert build_page_tree(blocks, ["c1", "c2"]) == [{"id": "c2", "type": "text", "text": "Two"}]

    def test_nested_children_and_to_do(self):
        blocks = {
            "a": {"value": {"id": "a", "type": "toggle", "properties": {"title": [["A"]]}, "content": ["b"]}},
            "b": {"value": {"id": "b", "type": "to_do", "properties": {"title": [["B"]], "checked": [["Yes"]]}}},
            "dead": {"value": {"id": "dead", "type": "text", "alive": False}},
        }
        assert build_page_tree(blocks, ["a", "dead"]) == [{
            "id": "a", "type": "toggle", "text": "A",
            "children": [{"id": "b", "type": "to_do", "text": "B", "checked": True}],
        }]

    def test_cycle_does_not_recurse_forever(self):
        blocks = {"a": {"value": {"id": "a", "type": "text", "content": ["a"]}}}
        assert build_page_tree(blocks, ["a"]) == [{"id": "a", "type": "text", "text": ""}]

    def test_format_page(self):
        blocks = {
            "pg": {"value": {"id": "pg", "type": "page", "properties": {"title": [["Home"]]}, "content": ["x"]}},
            "x": {"value": {"id": "x", "type": "text", "properties": {"title": [["hi"]]}}},
        }
        assert format_page(blocks, "pg") == {
            "id": "pg", "title": "Home", "blocks": [{"id": "x", "type": "text", "text": "hi"}],
        }

    def test_format_page_missing_raises(self):
        with pytest.raises(RecordNotFoundError, match="Page not found: pg"):
            format_page({}, "pg")


class TestBacklinks:
    """Tests for backlink formatting."""

    RESPONSE = {
        "backlinks": [
            {"block_id": "target", "mentioned_from": {"type": "alias", "block_id": "src-1"}},
            {"block_id": "target", "mentioned_from": {"type": "alias", "block_id": "src-1"}},
            {"block_id": "target", "mentioned_from": {"type": "alias", "block_id": "src-2"}},
            {"mentioned_from": None},
        ],
        "recordMap": {"block": {
            "src-1": {"value": {"id": "src-1", "properties": {"title": [["Notes by "], user_mention("u1")]}}},
            "src-2": {"value": {"id": "src-2", "properties": {"title": [["Ping "], user_mention("u2")]}}},
        }},
    }

    def test_collects_user_ids(self):
        assert collect_backlink_user_ids(self.RESPONSE) == ["u1", "u2"]

    def test_dedupes_and_keeps_unresolved_marker(self):
        assert format_backlinks(self.RESPONSE, {"u1": "Ada"}) == [
            {"id": "src-1", "title": "Notes by Ada"},
            {"id": "src-2", "title": f"Ping {MENTION_MARKER}"},
        ]

    def test_missing_source_block_gets_empty_title(self):
        response = {"backlinks": [{"mentioned_from": {"block_id": "gone"}}], "recordMap": {}}
        assert format_backlinks(response, {}) == [{"id": "gone", "title": ""}]

    def test_malformed_response(self):
        assert format_backlinks(None, {}) == []


class TestRecordFormatters:
    """Tests for block, collection and comment formatters."""

    def test_format_block_collection_view(self):
        block = {
            "id": "b", "type": "collection_view_page", "parent_id": "p",
            "collection_id": "c", "view_ids": ["v"], "properties": {"title": [["DB"]]},
        }
        assert format_block(block) == {
            "id": "b", "type": "collection_view_page", "text": "DB",
            "parent_id": "p", "collection_id": "c", "view_ids": ["v"],
        }

    def test_format_block_children(self):
        assert format_block_children([{"id": "a", "type": "text"}], True) == {
            "results": [{"id": "a", "type": "text", "text": ""}], "has_more": True,
        }

    def test_format_block_record_double_wrapped(self):
        wrapper = {"value": {"role": "editor", "value": {"id": "b", "type": "page", "properties": {"title": [["T"]]}}}}
        assert format_block_record(wrapper) == {"id": "b", "title": "T", "type": "page"}

    def test_format_collection_with_hints(self):
        collection = {
            "id": "c1", "name": [["Tasks"]],
            "schema": {"r": {"name": "Plan", "type": "relation"}},
        }
        formatted = format_collection(collection)
        assert formatted["name"] == "Tasks"
        assert formatted["schema"] == {"Plan": {"type": "relation"}}
        assert len(formatted["hints"]) == 1

    def test_format_collection_healthy_has_no_hints_key(self):
        formatted = format_collection({"id": "c1", "schema": {"title": {"name": "Name", "type": "title"}}})
        assert "hints" not in formatted

    def test_format_collection_summary(self):
        summary = format_collection_summary({"id": "c", "name": [["X"]], "schema": {
            "title": {"name": "Name", "type": "title"}, "s": {"name": "Size", "type": "number"},
        }})
        assert summary == {"id": "c", "name": "X", "schema_properties": ["Name", "Size"]}

    def test_format_comment_from_content_blocks(self):
        comment = {"id": "cm", "parent_id": "d", "content": ["b1"], "created_by_id": "u1"}
        blocks = {"b1": {"value": {"id": "b1", "properties": {"title": [["Rich"]]}}}}
        assert format_comment(comment, blocks) == {
            "id": "cm", "discussion_id": "d", "text": "Rich", "created_by": "u1",
        }

    def test_format_discussions(self):
        record_map = {
            "block": {"pg": {"value": {"id": "pg"}}},
            "discussion": {
                "d1": {"value": {"id": "d1", "parent_id": "pg", "comments": ["c1", "c2"]}},
                "d2": {"value": {"id": "d2", "parent_id": "elsewhere", "comments": ["c3"]}},
            },
            "comment": {
                "c1": {"value": {"id": "c1", "parent_id": "d1", "text": [["First"]], "created_time": 0}},
                "c2": {"value": {"id": "c2", "parent_id": "d1", "text": [["x"]], "alive": False}},
                "c3": {"value": {"id": "c3", "parent_id": "d2", "text": [["Other"]]}},
            },
        }
        result = format_discussions(record_map, "pg")
        assert result["total"] == 1
        assert result["results"][0]["text"] == "First"
        assert result["results"][0]["discussion_id"] == "d1"
        assert result["results"][0]["created_time"] == "1970-01-01T00:00:00.000Z"


class TestWriteEncoders:
    """Tests for property write encoding."""

    SCHEMA = {
        "title": {"name": "Name", "type": "title"},
        "t": {"name": "Notes", "type": "text"},
        "n": {"name": "Count", "type": "number"},
        "c": {"name": "Done", "type": "checkbox"},
        "r": {"name": "Plan", "type": "relation", "collection_id": "c2"},
        "s": {"name": "Status", "type": "select", "options": [{"id": "aaaa", "value": "Open"}]},
        "m": {"name": "Tags", "type": "multi_select", "options": []},
    }

    def test_serialize_value(self):
        assert serialize_value("hello", "text") == [["hello"]]
        assert serialize_value(42, "number") == [["42"]]
        assert serialize_value(True, "checkbox") == [["Yes"]]
        assert serialize_value(False, "checkbox") == [["No"]]
        assert serialize_value("p1", "relation") == [["‣", [["p", "p1"]]]]
        assert serialize_value(["a", "b"], "multi_select") == [["a,b"]]
        assert serialize_value(None, "text") == []

    def test_resolve_property_id(self):
        assert resolve_property_id(self.SCHEMA, "Notes") == "t"
        assert resolve_property_id(self.SCHEMA, "n") == "n"

    def test_resolve_unknown_property(self):
        with pytest.raises(UnresolvableIdentifierError, match='Unknown property: "Nope"'):
            resolve_property_id(self.SCHEMA, "Nope")

    def test_serialize_row_adds_new_options(self):
        write = serialize_row_properties(
            {"Status": "Closed", "Tags": ["x", "y"], "Done": True},
            self.SCHEMA,
            option_id=lambda taken: f"id{len(taken)}",
        )
        assert write.properties == {"s": [["Closed"]], "m": [["x,y"]], "c": [["Yes"]]}
        assert write.schema_updates["s"]["options"] == [
            {"id": "aaaa", "value": "Open"},
            {"id": "id1", "color": "gray", "value": "Closed"},
        ]
        assert [o["value"] for o in write.schema_updates["m"]["options"]] == ["x", "y"]

    def test_existing_option_needs_no_schema_update(self):
        write = serialize_row_properties({"Status": "Open"}, self.SCHEMA)
        assert write.schema_updates == {}

    def test_merge_schema_removes_none(self):
        merged = merge_schema({"a": {"type": "text"}, "b": {"type": "text"}}, {"a": None, "c": {"type": "number"}})
        assert merged == {"b": {"type": "text"}, "c": {"type": "number"}}

    def test_prepare_relation_and_rollup(self):
        properties = {
            "rel": {"name": "Plan", "type": "relation", "collection_id": "c2"},
            "roll": {
                "name": "Price", "type": "rollup", "relation_property": "Plan",
                "target_property": "Cost", "aggregation": "sum",
            },
        }
        target = {"xyz": {"name": "Cost", "type": "number"}}
        prepared = prepare_schema_properties(properties, "space-1", {"c2": target})
        assert prepared["rel"]["collection_pointer"] == {"id": "c2", "table": "collection", "spaceId": "space-1"}
        assert prepared["rel"]["property"] == "rel"
        assert prepared["roll"]["relation_property"] == "rel"
        assert prepared["roll"]["target_property"] == "xyz"
        assert prepared["roll"]["target_property_type"] == "number"
        assert prepared["roll"]["rollup_type"] == "relation"
        assert "aggregation" not in prepared["roll"]

    def test_prepare_rollup_with_non_string_relation_property(self):
        properties = {"roll": {"name": "Price", "type": "rollup", "relation_property": ["rel"], "target_property": "Cost"}}
        prepared = prepare_schema_properties(properties, "space-1", {})
        assert prepared["roll"]["relation_property"] == ["rel"]
        assert prepared["roll"]["target_property"] == "Cost"
        assert prepared["roll"]["rollup_type"] == "relation"

    def test_delete_property_args(self):
        pid, args = delete_property_args(self.SCHEMA, "Notes", 1700000000000)
        assert pid == "t"
        assert args == {"alive": False, "name": "__deleted_t_1700000000000"}

    def test_cannot_delete_title(self):
        with pytest.raises(UnresolvableIdentifierError, match="title property"):
            delete_property_args(self.SCHEMA, "Name", 0)
