"""Tests for mapping between Notion properties and payloads."""

from src.notiontasks.sync.mapping import (
    TEXT_LIMIT,
    decode_property,
    encode_property,
    infer_property_type,
    page_to_record,
    payload_to_properties,
)


class TestDecodeProperty:
    """Tests for decoding single property values."""

    def test_title(self):
        prop = {"type": "title", "title": [{"plain_text": "Hello "}, {"plain_text": "world"}]}
        assert decode_property(prop) == "Hello world"

    def test_status_and_select(self):
        assert decode_property({"type": "status", "status": {"name": "Done"}}) == "Done"
        assert decode_property({"type": "select", "select": None}) is None

    def test_multi_select(self):
        prop = {"type": "multi_select", "multi_select": [{"name": "a"}, {"name": "b"}]}
        assert decode_property(prop) == ["a", "b"]

    def test_date(self):
        assert decode_property({"type": "date", "date": {"start": "2025-02-01"}}) == "2025-02-01"

    def test_relation(self):
        prop = {"type": "relation", "relation": [{"id": "p1"}, {"id": "p2"}]}
        assert decode_property(prop) == ["p1", "p2"]

    def test_formula(self):
        prop = {"type": "formula", "formula": {"type": "number", "number": 42}}
        assert decode_property(prop) == 42

    def test_unique_id(self):
        prop = {"type": "unique_id", "unique_id": {"prefix": "TASK", "number": 7}}
        assert decode_property(prop) == "TASK-7"

    def test_missing_type_is_guessed(self):
        """Test properties without an explicit type are still decoded."""
        assert decode_property({"select": {"name": "High"}}) == "High"

    def test_plain_values(self):
        assert decode_property({"type": "number", "number": 3.5}) == 3.5
        assert decode_property({"type": "checkbox", "checkbox": True}) is True


class TestPageToRecord:
    """Tests for converting whole pages."""

    def test_canonical_fields(self, make_page, task_settings):
        """Test mapped properties land under canonical names."""
        page = make_page(
            "page-1",
            "Write report",
            status="Doing",
            due="2025-02-01",
            extra={"Priority": {"type": "select", "select": {"name": "High"}}},
        )

        record = page_to_record(page, task_settings)

        assert record.notion_id == "page-1"
        assert record.payload == {
            "title": "Write report",
            "status": "Doing",
            "date": "2025-02-01",
            "Priority": "High",
        }
        assert record.property_types["Priority"] == "select"
        assert record.property_types["status"] == "status"
        assert record.last_edited == 1736942400000
        assert not record.archived

    def test_archived(self, make_page, task_settings):
        record = page_to_record(make_page("page-1", "Old", archived=True), task_settings)
        assert record.archived


class TestEncoding:
    """Tests for encoding payloads as Notion properties."""

    def test_infer_property_type(self):
        assert infer_property_type(True) == "checkbox"
        assert infer_property_type(3) == "number"
        assert infer_property_type(["a"]) == "multi_select"
        assert infer_property_type("text") == "rich_text"

    def test_encode_read_only(self):
        """Test computed properties are never written."""
        assert encode_property("formula", 1) is None
        assert encode_property("last_edited_time", "2025-01-01") is None

    def test_encode_long_text_truncated(self):
        encoded = encode_property("rich_text", "x" * (TEXT_LIMIT + 50))
        assert len(encoded["rich_text"][0]["text"]["content"]) == TEXT_LIMIT

    def test_encode_clears_empty_values(self):
        assert encode_property("status", None) == {"status": None}
        assert encode_property("date", "") == {"date": None}
        assert encode_property("title", "") == {"title": []}

    def test_payload_to_properties(self, task_settings):
        """Test canonical names map back to Notion names and types."""
        props = payload_to_properties(
            {"title": "Buy milk", "status": "Todo", "date": "2025-02-01"}, task_settings
        )

        assert props == {
            "Name": {"title": [{"text": {"content": "Buy milk"}}]},
            "Status": {"status": {"name": "Todo"}},
            "Due": {"date": {"start": "2025-02-01"}},
        }

    def test_known_types_used_for_extras(self, task_settings):
        """Test property types remembered from pulls are used for unmapped fields."""
        props = payload_to_properties(
            {"Priority": "High", "Estimate": 3, "Score": 9},
            task_settings,
            known_types={"Priority": "select", "Score": "formula"},
        )

        assert props == {
            "Priority": {"select": {"name": "High"}},
            "Estimate": {"number": 3},
        }
