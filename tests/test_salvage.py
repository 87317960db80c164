"""Unit tests for recovering posts from unreliable model output."""

import json

from fakes import NOW, raw_post

from xcurator.salvage import salvage, strip_fences


class TestStripFences:
    def test_json_fence(self) -> None:
        assert strip_fences('```json\n[1, 2]\n```') == "[1, 2]"

    def test_bare_fence(self) -> None:
        assert strip_fences("```\n[]\n```") == "[]"

    def test_unfenced_text_untouched(self) -> None:
        assert strip_fences("  [1]  ") == "[1]"


class TestSalvage:
    def test_well_formed_array(self) -> None:
        text = json.dumps([raw_post("1", views=10), raw_post("2", likes=3)])
        items = salvage(text, search_name="ai", scraped_at=NOW)
        assert [i.id for i in items] == ["1", "2"]
        assert items[0].views == 10
        assert all(i.search_name == "ai" and i.scraped_at == NOW for i in items)

    def test_fenced_array(self) -> None:
        text = "```json\n" + json.dumps([raw_post("7")]) + "\n```"
        assert [i.id for i in salvage(text)] == ["7"]

    def test_truncated_last_object_is_dropped(self) -> None:
        full = json.dumps([raw_post("1"), raw_post("2"), raw_post("3")])
        truncated = full[: full.rindex("}")]
        assert [i.id for i in salvage(truncated)] == ["1", "2"]

    def test_prose_yields_nothing(self) -> None:
        assert salvage("I could not find any tweets matching that.") == []

    def test_empty_text(self) -> None:
        assert salvage("") == []

    def test_top_level_object_yields_nothing(self) -> None:
        assert salvage(json.dumps(raw_post("9"))) == []

    def test_top_level_scalar_yields_nothing(self) -> None:
        assert salvage("42") == []

    def test_invalid_records_are_skipped(self) -> None:
        bad = {**raw_post("2"), "url": "not-a-url"}
        text = json.dumps([raw_post("1"), bad, "junk", raw_post("3")])
        assert [i.id for i in salvage(text)] == ["1", "3"]

    def test_missing_counts_default_to_zero(self) -> None:
        record = raw_post("1")
        del record["replies"]
        record["likes"] = None
        (item,) = salvage(json.dumps([record]))
        assert item.replies == 0 and item.likes == 0

    def test_numeric_id_and_strings_are_coerced(self) -> None:
        record = {**raw_post("1"), "id": 123, "views": "4500"}
        (item,) = salvage(json.dumps([record]))
        assert item.id == "123"
        assert item.views == 4500

    def test_source_provenance_is_stamped(self) -> None:
        (item,) = salvage(
            json.dumps([raw_post("1")]), source_type="handle", source_value="alice"
        )
        assert item.source_type == "handle"
        assert item.source_value == "alice"

    def test_backend_rank_is_ignored(self) -> None:
        (item,) = salvage(json.dumps([{**raw_post("1"), "rank": 99}]))
        assert item.rank is None

    def test_objects_embedded_in_prose(self) -> None:
        text = (
            "Here you go: "
            + json.dumps(raw_post("1"))
            + " and also "
            + json.dumps(raw_post("2"))
        )
        assert [i.id for i in salvage(text)] == ["1", "2"]
