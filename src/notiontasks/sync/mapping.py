"""Mapping between Notion page properties and plain payload dicts.

Payloads store decoded, JSON-friendly values. Properties named in the
entity's settings (title, status, date) are stored under those canonical
names; every other property keeps its Notion name, so remote fields the
application does not interpret still round-trip.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from ..config import EntitySettings
from ..utils import iso_to_ms

# Notion's limit for a single rich text object
TEXT_LIMIT = 2000

# Computed by Notion, never written back
READ_ONLY_TYPES = {
    "formula",
    "rollup",
    "created_time",
    "created_by",
    "last_edited_time",
    "last_edited_by",
    "unique_id",
    "files",
    "button",
    "verification",
}


@dataclass
class RemoteRecord:
    """A Notion page decoded into a payload."""

    notion_id: str
    payload: dict[str, Any]
    last_edited: int  # ms
    created: Optional[int] = None  # ms
    archived: bool = False
    property_types: dict[str, str] = field(default_factory=dict)  # payload field -> type


# ============================================================================
# Decoding (Notion -> payload)
# ============================================================================


def _plain_text(items: Optional[list]) -> str:
    return "".join(t.get("plain_text", "") for t in items or [])


def decode_property(prop: dict[str, Any]) -> Any:
    """Decode a single Notion property value to a plain value."""
    prop_type = prop.get("type")
    if prop_type is None:
        # Older responses / test fixtures without an explicit type
        for candidate in ("title", "rich_text", "select", "status", "number", "date"):
            if candidate in prop:
                prop_type = candidate
                break
    value = prop.get(prop_type) if prop_type else None

    if prop_type in ("title", "rich_text"):
        return _plain_text(value)
    if prop_type in ("select", "status"):
        return value.get("name") if value else None
    if prop_type == "multi_select":
        return [item.get("name", "") for item in value or []]
    if prop_type == "date":
        return value.get("start") if value else None
    if prop_type in ("relation", "people"):
        return [item.get("id") for item in value or []]
    if prop_type in ("created_by", "last_edited_by"):
        return value.get("id") if value else None
    if prop_type == "files":
        return [item.get("name", "") for item in value or []]
    if prop_type == "formula":
        return value.get(value.get("type")) if value else None
    if prop_type == "rollup":
        if not value:
            return None
        inner = value.get(value.get("type"))
        return inner if not isinstance(inner, list) else len(inner)
    if prop_type == "unique_id":
        if not value:
            return None
        prefix = value.get("prefix")
        return f"{prefix}-{value.get('number')}" if prefix else value.get("number")
    # number, checkbox, url, email, phone_number, created_time, last_edited_time
    return value


def page_to_record(page: dict[str, Any], settings: EntitySettings) -> RemoteRecord:
    """Convert a Notion page API response to a RemoteRecord.

    Args:
        page: Page object from the Notion API
        settings: Entity settings naming the canonical properties

    Returns:
        RemoteRecord with decoded payload
    """
    canonical = {notion: name for name, notion in settings.property_map.items()}
    payload: dict[str, Any] = {}
    types: dict[str, str] = {}

    for prop_name, prop in (page.get("properties") or {}).items():
        key = canonical.get(prop_name, prop_name)
        payload[key] = decode_property(prop)
        if prop.get("type"):
            types[key] = prop["type"]

    return RemoteRecord(
        notion_id=page["id"],
        payload=payload,
        last_edited=iso_to_ms(page.get("last_edited_time")) or 0,
        created=iso_to_ms(page.get("created_time")),
        archived=bool(page.get("archived") or page.get("in_trash")),
        property_types=types,
    )


# ============================================================================
# Encoding (payload -> Notion)
# ============================================================================


def _text(value: Any) -> list[dict[str, Any]]:
    if value is None or value == "":
        return []
    return [{"text": {"content": str(value)[:TEXT_LIMIT]}}]


def infer_property_type(value: Any) -> str:
    """Guess a Notion property type from a plain value."""
    if isinstance(value, bool):
        return "checkbox"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, list):
        return "multi_select"
    return "rich_text"


def encode_property(prop_type: str, value: Any) -> Optional[dict[str, Any]]:
    """Encode a plain value as a Notion property value.

    Returns None for read-only property types.
    """
    if prop_type in READ_ONLY_TYPES:
        return None
    if prop_type in ("title", "rich_text"):
        return {prop_type: _text(value)}
    if prop_type in ("select", "status"):
        return {prop_type: {"name": value} if value else None}
    if prop_type == "multi_select":
        return {"multi_select": [{"name": name} for name in value or []]}
    if prop_type == "date":
        return {"date": {"start": value} if value else None}
    if prop_type in ("relation", "people"):
        return {prop_type: [{"id": item} for item in value or []]}
    if prop_type == "checkbox":
        return {"checkbox": bool(value)}
    # number, url, email, phone_number
    return {prop_type: value if value != "" else None}


def payload_to_properties(
    payload: dict[str, Any],
    settings: EntitySettings,
    known_types: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    """Convert payload fields to a Notion ``properties`` object.

    Args:
        payload: Fields to send (all fields for a create, changed ones for an update)
        settings: Entity settings naming the canonical properties
        known_types: Property types seen on earlier pulls, by payload field

    Returns:
        Properties dict suitable for pages.create / pages.update
    """
    names = settings.property_map
    declared = settings.property_types
    known = known_types or {}
    props: dict[str, Any] = {}

    for key, value in payload.items():
        prop_name = names.get(key, key)
        prop_type = declared.get(key) or known.get(key) or infer_property_type(value)
        encoded = encode_property(prop_type, value)
        if encoded is not None:
            props[prop_name] = encoded

    return props
