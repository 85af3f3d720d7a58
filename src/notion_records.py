"""Record codec and reference resolution for Notion's internal (v3) API.

The internal API speaks in record maps: ``{table: {id: wrapper}}`` where every
human-readable string is a list of decorated-text segments
(``[text, [[tag, arg], ...]]``). This module turns that wire format into
plain typed JSON and back again:

- Decorated-text codec (decode text, mentions, dates; encode writes)
- Record-map navigator (single- and double-wrapped records)
- Schema simplifier and validator (name-keyed schema + diagnostic hints)
- Property value extractor (typed row values)
- Reference resolver (collect ids, enrich after one batched lookup)
- Page tree and backlink formatting

Everything here is synchronous and side-effect free. Network access lives in
notion_client; command wiring lives in notion_cli.
"""

import json
import logging
import math
import random
import re
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger("notion-internal")


class NotionRecordError(Exception):
    """Base class for errors raised while interpreting record data."""


class RecordNotFoundError(NotionRecordError):
    """A requested record is absent (or soft-deleted) in the record map."""


class UnresolvableIdentifierError(NotionRecordError):
    """A name or id given by the user does not match anything in the record."""


# =============================================================================
# ID Helpers
# =============================================================================

# Base62 alphabet: a-z, A-Z, 0-9 (case-sensitive)
BASE62_ALPHABET = string.ascii_lowercase + string.ascii_uppercase + string.digits

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
SHORT_ID_PATTERN = re.compile(r'^[A-Za-z0-9]{4}$')
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def generate_id() -> str:
    """Fresh record id for new blocks, collections, views, comments and discussions."""
    return str(uuid.uuid4())


def generate_short_id(existing_ids: set[str] | None = None) -> str:
    """Generate a random 4-character base62 id (used for select options).

    Args:
        existing_ids: Ids already in use.

    Returns:
        A 4-character id not in ``existing_ids``.
    """
    existing = existing_ids or set()
    for _ in range(100):
        short_id = ''.join(random.choices(BASE62_ALPHABET, k=4))
        if short_id not in existing:
            return short_id
    raise RuntimeError("Failed to generate unique short ID after 100 attempts")


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to the dashed lowercase form.

    Raises:
        ValueError: If input is not a 32-digit hex UUID.
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract a page id from a notion.so / notion.site URL, or None."""
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def format_notion_id(raw: str) -> str:
    """Accept a dashed/undashed UUID or a Notion URL; pass anything else through."""
    raw = raw.strip()
    if UUID_PATTERN.match(raw):
        return normalize_uuid(raw)
    from_url = extract_uuid_from_url(raw)
    if from_url:
        return from_url
    return raw


# =============================================================================
# Decorated-Text Codec
# =============================================================================

MENTION_MARKER = "‣"

# Decorator tags whose argument carries a mention's identity
USER_TAG = "u"
PAGE_TAG = "p"
DATE_TAG = "d"
_MENTION_TAGS = (USER_TAG, PAGE_TAG, DATE_TAG)


def _segments(raw: Any) -> list[list]:
    """Return the well-formed segments of a decorated-text payload."""
    if not isinstance(raw, list):
        return []
    return [seg for seg in raw if isinstance(seg, list) and seg and isinstance(seg[0], str)]


def _decorators(segment: list) -> list[list]:
    if len(segment) < 2 or not isinstance(segment[1], list):
        return []
    return [deco for deco in segment[1] if isinstance(deco, list) and deco]


def _format_date(value: Any) -> Optional[str]:
    """Render a ``d`` decorator payload as ``start`` or ``start → end``."""
    if not isinstance(value, dict):
        return None
    start = value.get("start_date")
    if not isinstance(start, str) or not start:
        return None
    end = value.get("end_date")
    if isinstance(end, str) and end:
        return f"{start} → {end}"
    return start


def _mention_display(
    segment: list,
    names: Optional[dict[str, str]],
    unresolved: Optional[str],
) -> Optional[str]:
    for deco in _decorators(segment):
        tag = deco[0]
        arg = deco[1] if len(deco) > 1 else None
        if tag in (USER_TAG, PAGE_TAG) and isinstance(arg, str):
            if names is None:
                return arg
            if arg in names:
                return names[arg]
            return unresolved if unresolved is not None else arg
        if tag == DATE_TAG:
            return _format_date(arg)
    return None


def decode_text(
    segments: Any,
    names: Optional[dict[str, str]] = None,
    unresolved: Optional[str] = None,
) -> str:
    """Decode a decorated-text payload to a plain string.

    Segment texts are concatenated in order. A mention-marker segment is
    replaced by its user/page id (or ``names[id]`` when a lookup is given) or
    by its date; marker segments with no usable decorator are dropped.

    Args:
        segments: Raw ``[[text, decorators?], ...]`` payload.
        names: Optional id -> display name lookup for user/page mentions.
        unresolved: Replacement for mentions missing from ``names``. Defaults
            to the bare id.

    Returns:
        The decoded string ("" for anything malformed).
    """
    parts = []
    for segment in _segments(segments):
        text = segment[0]
        if text != MENTION_MARKER:
            parts.append(text)
            continue
        display = _mention_display(segment, names, unresolved)
        if display is not None:
            parts.append(display)
    return "".join(parts)


def decode_mentions(segments: Any) -> list[dict]:
    """Every page/user mention in a payload, as ``{"id", "kind"}`` in order."""
    mentions = []
    for segment in _segments(segments):
        for deco in _decorators(segment):
            if len(deco) < 2 or not isinstance(deco[1], str):
                continue
            if deco[0] == PAGE_TAG:
                mentions.append({"id": deco[1], "kind": "page"})
            elif deco[0] == USER_TAG:
                mentions.append({"id": deco[1], "kind": "user"})
    return mentions


def _tagged_ids(segments: Any, tag: str) -> list[str]:
    """Bare ids of every ``tag`` decorator, ignoring the segment text."""
    ids = []
    for segment in _segments(segments):
        for deco in _decorators(segment):
            if deco[0] == tag and len(deco) > 1 and isinstance(deco[1], str):
                ids.append(deco[1])
    return ids


def _first_date(segments: Any) -> Optional[dict]:
    for segment in _segments(segments):
        for deco in _decorators(segment):
            if deco[0] == DATE_TAG and len(deco) > 1 and isinstance(deco[1], dict):
                start = deco[1].get("start_date")
                if not isinstance(start, str) or not start:
                    continue
                date = {"start": start}
                end = deco[1].get("end_date")
                if isinstance(end, str) and end:
                    date["end"] = end
                return date
    return None


def encode_text(text: str) -> list[list]:
    return [[text]]


def encode_relation_refs(ids: list[str]) -> list[list]:
    """One page-mention segment per id, order preserved."""
    return [[MENTION_MARKER, [[PAGE_TAG, page_id]]] for page_id in ids]


def encode_user_refs(ids: list[str]) -> list[list]:
    """One user-mention segment per id, order preserved."""
    return [[MENTION_MARKER, [[USER_TAG, user_id]]] for user_id in ids]


def encode_date(start: str, end: str | None = None) -> list[list]:
    """Encode a date (or date range) mention segment."""
    value = {"type": "daterange" if end else "date", "start_date": start}
    if end:
        value["end_date"] = end
    return [[MENTION_MARKER, [[DATE_TAG, value]]]]


# =============================================================================
# Record-Map Navigator
# =============================================================================


def record_value(wrapper: Any) -> Optional[dict]:
    """Return a record's fields from either wrapper shape.

    Some endpoints return ``{"value": fields}``; others wrap once more as
    ``{"value": {"value": fields, "role": "editor"}}``. The extra layer is
    recognised by its string ``role`` sibling. Returns None when the record is
    absent so callers can decide what "not found" means.
    """
    if not isinstance(wrapper, dict):
        return None
    value = wrapper.get("value")
    if not isinstance(value, dict):
        return None
    if isinstance(value.get("role"), str) and "value" in value:
        inner = value["value"]
        return inner if isinstance(inner, dict) else None
    return value


def is_alive(fields: Optional[dict]) -> bool:
    return fields is not None and fields.get("alive") is not False


def table_records(record_map: Any, table: str) -> dict[str, dict]:
    """All resolvable records of one table, keyed by record-map key."""
    if not isinstance(record_map, dict):
        return {}
    table_map = record_map.get(table)
    if not isinstance(table_map, dict):
        return {}
    records = {}
    for key, wrapper in table_map.items():
        fields = record_value(wrapper)
        if fields is not None:
            records[key] = fields
    return records


def find_record(record_map: Any, table: str, record_id: str) -> Optional[dict]:
    """Find one record by id: record-map key first, then the record's own ``id``."""
    if isinstance(record_map, dict) and isinstance(record_map.get(table), dict):
        fields = record_value(record_map[table].get(record_id))
        if fields is not None:
            return fields
    for fields in table_records(record_map, table).values():
        if fields.get("id") == record_id:
            return fields
    return None


def first_record(record_map: Any, table: str) -> Optional[dict]:
    """The first record of a table (single-pointer syncRecordValues responses)."""
    for fields in table_records(record_map, table).values():
        return fields
    return None


def block_title(block: Optional[dict], names: Optional[dict[str, str]] = None) -> str:
    if not block:
        return ""
    properties = block.get("properties")
    if not isinstance(properties, dict):
        return ""
    return decode_text(properties.get("title"), names)


# =============================================================================
# Schema Simplifier & Validator
# =============================================================================

OPTION_TYPES = {"select", "multi_select", "status"}


def _live_properties(raw_schema: Any) -> dict[str, dict]:
    if not isinstance(raw_schema, dict):
        return {}
    return {
        pid: prop for pid, prop in raw_schema.items()
        if isinstance(prop, dict) and prop.get("alive") is not False
    }


def _option_values(prop: dict) -> Optional[list[str]]:
    options = prop.get("options")
    if not isinstance(options, list):
        return None
    return [opt["value"] for opt in options if isinstance(opt, dict) and isinstance(opt.get("value"), str)]


def simplify_schema(raw_schema: Any) -> dict[str, dict]:
    """Convert a property-id keyed schema into a display-name keyed one.

    Dead properties are skipped before the name index is built. When two live
    properties share a display name the later one wins; ``validate_schema``
    reports every such collision.
    """
    live = _live_properties(raw_schema)
    simplified: dict[str, dict] = {}
    for pid, prop in live.items():
        name = prop.get("name")
        prop_type = prop.get("type")
        if not isinstance(name, str) or not isinstance(prop_type, str):
            continue

        descriptor: dict[str, Any] = {"type": prop_type}
        if prop_type in OPTION_TYPES:
            values = _option_values(prop)
            if values is not None:
                descriptor["options"] = values
        elif prop_type == "relation":
            if isinstance(prop.get("collection_id"), str):
                descriptor["collection_id"] = prop["collection_id"]
        elif prop_type == "rollup":
            relation_pid = prop.get("relation_property")
            relation = live.get(relation_pid) if isinstance(relation_pid, str) else None
            if relation and isinstance(relation.get("name"), str):
                descriptor["relation_property"] = relation["name"]
            for key in ("target_property", "target_property_type", "rollup_type"):
                if isinstance(prop.get(key), str):
                    descriptor[key] = prop[key]
        elif prop_type == "auto_increment_id":
            if isinstance(prop.get("prefix"), str) and prop["prefix"]:
                descriptor["prefix"] = prop["prefix"]

        if name in simplified:
            logger.debug(f"Schema property {pid!r} shadows earlier property named {name!r}")
        simplified[name] = descriptor
    return simplified


def _remedy(collection_id: str, pid: str, definition: Any) -> str:
    payload = json.dumps({pid: definition}, ensure_ascii=False)
    return f"notion-internal database update {collection_id} --properties '{payload}'"


def validate_schema(raw_schema: Any, collection_id: str | None = None) -> list[str]:
    """Report structurally broken schema properties as human-readable hints.

    Each hint names the property and its type, states the defect, and gives a
    command that repairs it. Hints are advisory and never raise.
    """
    if not isinstance(raw_schema, dict):
        return []
    cid = collection_id or "<collection_id>"
    hints: list[str] = []
    seen_names: dict[str, list[str]] = {}

    for pid, prop in raw_schema.items():
        if not isinstance(prop, dict):
            continue
        name = prop.get("name") if isinstance(prop.get("name"), str) else pid
        prop_type = prop.get("type") if isinstance(prop.get("type"), str) else "unknown"
        label = f'Property "{name}" ({prop_type})'

        if prop.get("alive") is False:
            missing = ""
            if prop_type == "rollup" and not prop.get("rollup_type"):
                missing = " and is missing rollup_type"
            hints.append(
                f"{label} is soft-deleted (alive: false){missing} but still present in the schema. "
                f"Remove it with: {_remedy(cid, pid, None)}"
            )
            continue

        seen_names.setdefault(name, []).append(pid)

        if prop_type == "relation" and not prop.get("collection_id"):
            fixed = {**prop, "collection_id": "<target_collection_id>"}
            hints.append(
                f"{label} has no collection_id, so it does not point at any database. "
                f"Set one with: {_remedy(cid, pid, fixed)}"
            )

        if prop_type != "rollup":
            continue

        relation_pid = prop.get("relation_property")
        if not relation_pid:
            fixed = {**prop, "relation_property": "<relation_property_id>"}
            hints.append(
                f"{label} has no relation_property, so it cannot aggregate anything. "
                f"Point it at a relation with: {_remedy(cid, pid, fixed)}"
            )
        else:
            relation = raw_schema.get(relation_pid) if isinstance(relation_pid, str) else None
            defect = None
            if not isinstance(relation, dict):
                defect = f'references relation_property "{relation_pid}", which does not exist'
            elif relation.get("alive") is False:
                defect = f'references relation_property "{relation_pid}", which is deleted'
            elif relation.get("type") != "relation":
                defect = (
                    f'references relation_property "{relation_pid}", '
                    f'which is a {relation.get("type")} property, not a relation'
                )
            if defect:
                fixed = {**prop, "relation_property": "<relation_property_id>"}
                hints.append(f"{label} {defect}. Repoint it with: {_remedy(cid, pid, fixed)}")

        if not prop.get("rollup_type"):
            fixed = {**prop, "rollup_type": "relation"}
            fixed.pop("aggregation", None)
            hints.append(
                f"{label} is missing rollup_type, which the Notion app requires. "
                f"Set it with: {_remedy(cid, pid, fixed)}"
            )

        if "aggregation" in prop:
            fixed = {k: v for k, v in prop.items() if k != "aggregation"}
            hints.append(
                f'{label} carries an "aggregation" field, which breaks the Notion app. '
                f"Rewrite it without aggregation: {_remedy(cid, pid, fixed)}"
            )

    for name, pids in seen_names.items():
        if len(pids) < 2:
            continue
        for pid in pids[:-1]:
            prop = raw_schema[pid]
            others = ", ".join(p for p in pids if p != pid)
            renamed = {**prop, "name": f"{name} ({pid})"}
            hints.append(
                f'Property "{name}" ({prop.get("type", "unknown")}) has a duplicate name, shared with {others}, '
                f"and is hidden by the later property. Rename it with: {_remedy(cid, pid, renamed)}"
            )

    return hints


def merge_schema(current: Any, updates: dict) -> dict:
    """Overlay property definitions on a raw schema; a None value removes the key."""
    merged = dict(current) if isinstance(current, dict) else {}
    for pid, definition in updates.items():
        if definition is None:
            merged.pop(pid, None)
        else:
            merged[pid] = definition
    return merged


# =============================================================================
# Property Value Extractor
# =============================================================================

# Property types whose value lives on the block itself, not in properties
BLOCK_FIELD_TYPES = {
    "created_time": "created_time",
    "last_edited_time": "last_edited_time",
    "created_by": "created_by_id",
    "last_edited_by": "last_edited_by_id",
}

PERSON_TYPES = {"person", "created_by", "last_edited_by"}


# Plain decimal text as the service writes it (no underscores, no non-ASCII digits)
NUMBER_PATTERN = re.compile(r'[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?', re.ASCII)


def _parse_number(text: str) -> int | float | None:
    text = text.strip()
    if not NUMBER_PATTERN.fullmatch(text):
        if text:
            logger.debug(f"Unparsable number value: {text!r}")
        return None
    try:
        return int(text)
    except ValueError:
        pass
    number = float(text)
    if math.isinf(number):
        return None
    return number


def _iso_from_millis(raw: Any) -> Optional[str]:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    moment = datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def extract_property(raw: Any, schema_type: str, prefix: str | None = None) -> dict:
    """Decode one raw property payload into a typed ``{"type", "value"}`` dict.

    Total over ``schema_type``: unknown types fall back to decoded text, and
    malformed payloads fall back to None/empty values instead of raising.

    Args:
        raw: Wire payload (decorated text, or a block field for the
            created/edited types).
        schema_type: The property's schema type.
        prefix: auto_increment_id prefix, if the schema defines one.
    """
    if schema_type in ("title", "text"):
        result = {"type": schema_type, "value": decode_text(raw)}
        mentions = decode_mentions(raw)
        if mentions:
            result["mentions"] = mentions
        return result

    elif schema_type == "number":
        return {"type": "number", "value": _parse_number(decode_text(raw))}

    elif schema_type in ("select", "status"):
        return {"type": schema_type, "value": decode_text(raw) or None}

    elif schema_type == "multi_select":
        values = [part.strip() for part in decode_text(raw).split(",")]
        return {"type": "multi_select", "value": [v for v in values if v]}

    elif schema_type == "date":
        return {"type": "date", "value": _first_date(raw)}

    elif schema_type == "relation":
        return {"type": "relation", "value": _tagged_ids(raw, PAGE_TAG)}

    elif schema_type == "person":
        return {"type": "person", "value": _tagged_ids(raw, USER_TAG)}

    elif schema_type in ("rollup", "formula"):
        return {"type": schema_type, "value": raw}

    elif schema_type == "checkbox":
        return {"type": "checkbox", "value": decode_text(raw) == "Yes"}

    elif schema_type in ("url", "email", "phone_number"):
        return {"type": schema_type, "value": decode_text(raw)}

    elif schema_type == "auto_increment_id":
        result = {"type": "auto_increment_id", "value": _parse_number(decode_text(raw))}
        if prefix:
            result["prefix"] = prefix
        return result

    elif schema_type in ("created_time", "last_edited_time"):
        if isinstance(raw, list):
            return {"type": schema_type, "value": decode_text(raw) or None}
        return {"type": schema_type, "value": _iso_from_millis(raw)}

    elif schema_type in ("created_by", "last_edited_by"):
        if isinstance(raw, list):
            return {"type": schema_type, "value": _tagged_ids(raw, USER_TAG)}
        return {"type": schema_type, "value": [raw] if isinstance(raw, str) and raw else []}

    return {"type": schema_type, "value": decode_text(raw)}


def _row_columns(raw_schema: Any) -> dict[str, dict]:
    """Live schema properties that have a display name and a type, by id."""
    return {
        pid: prop for pid, prop in _live_properties(raw_schema).items()
        if isinstance(prop.get("name"), str) and isinstance(prop.get("type"), str)
    }


def format_row(block: dict, raw_schema: Any = None) -> dict:
    """``{"id", "properties": {name: typed value}}`` for one collection row."""
    properties = block.get("properties")
    if not isinstance(properties, dict):
        properties = {}
    columns = _row_columns(raw_schema)

    formatted: dict[str, dict] = {}
    if not columns:
        if "title" in properties:
            formatted["title"] = extract_property(properties["title"], "title")
        return {"id": block.get("id", ""), "properties": formatted}

    for pid, prop in columns.items():
        prop_type = prop["type"]
        if prop_type in BLOCK_FIELD_TYPES:
            raw = properties.get(pid, block.get(BLOCK_FIELD_TYPES[prop_type]))
        else:
            raw = properties.get(pid)
        formatted[prop["name"]] = extract_property(raw, prop_type, prop.get("prefix"))
    return {"id": block.get("id", ""), "properties": formatted}


def format_query_response(response: Any, raw_schema: Any = None) -> dict:
    """Format a ``queryCollection`` response into rows.

    The schema defaults to the first collection in the response's record map.
    Row ids missing from the record map, or soft-deleted, are skipped.
    """
    if not isinstance(response, dict):
        response = {}
    result = response.get("result") if isinstance(response.get("result"), dict) else {}
    reducers = result.get("reducerResults") if isinstance(result.get("reducerResults"), dict) else {}
    group = reducers.get("collection_group_results")
    group = group if isinstance(group, dict) else {}
    raw_ids = group.get("blockIds")
    block_ids = [bid for bid in raw_ids if isinstance(bid, str)] if isinstance(raw_ids, list) else []

    record_map = response.get("recordMap")
    if raw_schema is None:
        collection = first_record(record_map, "collection")
        raw_schema = collection.get("schema") if collection else None

    rows = []
    for block_id in block_ids:
        block = find_record(record_map, "block", block_id)
        if not is_alive(block):
            continue
        rows.append(format_row(block, raw_schema))

    return {"results": rows, "has_more": group.get("hasMore") is True, "next_cursor": None}


# =============================================================================
# Reference Resolver
# =============================================================================


@dataclass
class ReferenceIds:
    """Ids found in formatted rows that need a lookup to become readable."""
    pages: set[str] = field(default_factory=set)
    users: set[str] = field(default_factory=set)

    def __bool__(self) -> bool:
        return bool(self.pages or self.users)


def collect_reference_ids(rows: list[dict]) -> ReferenceIds:
    """Collect relation, person and in-text mention ids from formatted rows."""
    refs = ReferenceIds()
    for row in rows:
        for prop in row.get("properties", {}).values():
            prop_type = prop.get("type")
            if prop_type == "relation":
                refs.pages.update(v for v in prop.get("value") or [] if isinstance(v, str))
            elif prop_type in PERSON_TYPES:
                refs.users.update(v for v in prop.get("value") or [] if isinstance(v, str))
            for mention in prop.get("mentions", []):
                if mention["kind"] == "page":
                    refs.pages.add(mention["id"])
                else:
                    refs.users.add(mention["id"])
    return refs


def lookup_requests(refs: ReferenceIds) -> list[dict]:
    """``syncRecordValues`` request entries for one batched lookup."""
    requests = [
        {"pointer": {"table": "block", "id": page_id}, "version": -1}
        for page_id in sorted(refs.pages)
    ]
    requests.extend(
        {"pointer": {"table": "notion_user", "id": user_id}, "version": -1}
        for user_id in sorted(refs.users)
    )
    return requests


def build_lookups(record_map: Any) -> tuple[dict[str, str], dict[str, str]]:
    """Page titles and user names from a lookup response's record map."""
    pages: dict[str, str] = {}
    for key, block in table_records(record_map, "block").items():
        title = block_title(block)
        pages[block.get("id", key)] = title
        pages.setdefault(key, title)

    users: dict[str, str] = {}
    for key, user in table_records(record_map, "notion_user").items():
        name = user.get("name")
        if isinstance(name, str) and name:
            users[user.get("id", key)] = name
            users.setdefault(key, name)
    return pages, users


def enrich_rows(
    rows: list[dict],
    page_lookup: dict[str, str],
    user_lookup: dict[str, str],
) -> list[dict]:
    """Rewrite bare reference ids in rows into readable pairs, in place.

    Relation values become ``{"id", "title"}`` and person values
    ``{"id", "name"}``; a lookup miss keeps the bare id as the display value.
    Title/text mentions get their id replaced inside the decoded text.
    """
    for row in rows:
        for prop in row.get("properties", {}).values():
            prop_type = prop.get("type")
            if prop_type == "relation":
                prop["value"] = [
                    {"id": v, "title": page_lookup.get(v, v)} if isinstance(v, str) else v
                    for v in prop.get("value") or []
                ]
            elif prop_type in PERSON_TYPES:
                prop["value"] = [
                    {"id": v, "name": user_lookup.get(v, v)} if isinstance(v, str) else v
                    for v in prop.get("value") or []
                ]

            for mention in prop.get("mentions", []):
                if mention["kind"] == "page":
                    display = page_lookup.get(mention["id"])
                    mention["title"] = display if display is not None else mention["id"]
                else:
                    display = user_lookup.get(mention["id"])
                    mention["name"] = display if display is not None else mention["id"]
                if display is not None and isinstance(prop.get("value"), str):
                    prop["value"] = prop["value"].replace(mention["id"], display)
    return rows


# =============================================================================
# Page Tree & Backlinks
# =============================================================================


def _content_ids(block: dict) -> list[str]:
    content = block.get("content")
    if not isinstance(content, list):
        return []
    return [cid for cid in content if isinstance(cid, str)]


def build_page_tree(
    blocks: dict,
    child_ids: list[str],
    _path: frozenset = frozenset(),
) -> list[dict]:
    """Nest child blocks into ``{id, type, text, checked?, children?}`` nodes.

    ``blocks`` is the record map's block table (raw wrappers). Ids missing
    from it, or soft-deleted, are skipped; document order is preserved.
    """
    nodes = []
    for child_id in child_ids:
        if child_id in _path:
            continue
        block = record_value(blocks.get(child_id))
        if not is_alive(block):
            continue

        block_type = block.get("type", "")
        node: dict[str, Any] = {
            "id": block.get("id", child_id),
            "type": block_type,
            "text": block_title(block),
        }
        if block_type == "to_do":
            properties = block.get("properties") if isinstance(block.get("properties"), dict) else {}
            node["checked"] = decode_text(properties.get("checked")) == "Yes"

        nested = _content_ids(block)
        children = build_page_tree(blocks, nested, _path | {child_id}) if nested else []
        if children:
            node["children"] = children
        nodes.append(node)
    return nodes


def format_page(blocks: dict, page_id: str) -> dict:
    """``{"id", "title", "blocks"}`` for a page loaded via loadPageChunk."""
    page = record_value(blocks.get(page_id))
    if page is None:
        page = find_record({"block": blocks}, "block", page_id)
    if not is_alive(page):
        raise RecordNotFoundError(f"Page not found: {page_id}")
    return {
        "id": page.get("id", page_id),
        "title": block_title(page),
        "blocks": build_page_tree(blocks, _content_ids(page), frozenset({page_id})),
    }


def _backlink_sources(response: Any) -> list[str]:
    if not isinstance(response, dict) or not isinstance(response.get("backlinks"), list):
        return []
    sources: list[str] = []
    for entry in response["backlinks"]:
        if not isinstance(entry, dict):
            continue
        mentioned_from = entry.get("mentioned_from")
        if not isinstance(mentioned_from, dict):
            continue
        source_id = mentioned_from.get("block_id")
        if isinstance(source_id, str) and source_id not in sources:
            sources.append(source_id)
    return sources


def collect_backlink_user_ids(response: Any) -> list[str]:
    """User ids mentioned in the titles of backlink source blocks."""
    record_map = response.get("recordMap") if isinstance(response, dict) else None
    user_ids: list[str] = []
    for source_id in _backlink_sources(response):
        block = find_record(record_map, "block", source_id)
        if not block or not isinstance(block.get("properties"), dict):
            continue
        for user_id in _tagged_ids(block["properties"].get("title"), USER_TAG):
            if user_id not in user_ids:
                user_ids.append(user_id)
    return user_ids


def format_backlinks(response: Any, user_lookup: dict[str, str]) -> list[dict]:
    """``[{"id", "title"}]`` per distinct source block of a getBacklinksForBlock response.

    User mentions in titles are replaced with names from ``user_lookup``;
    unknown ones keep the mention marker. A source block missing from the
    record map gets an empty title.
    """
    record_map = response.get("recordMap") if isinstance(response, dict) else None
    backlinks = []
    for source_id in _backlink_sources(response):
        block = find_record(record_map, "block", source_id)
        title = ""
        if block and isinstance(block.get("properties"), dict):
            title = decode_text(block["properties"].get("title"), user_lookup, MENTION_MARKER)
        backlinks.append({"id": source_id, "title": title})
    return backlinks


# =============================================================================
# Record Formatters
# =============================================================================

COLLECTION_BLOCK_TYPES = {"collection_view", "collection_view_page"}


def format_block(block: dict) -> dict:
    block_type = block.get("type", "")
    formatted: dict[str, Any] = {
        "id": block.get("id", ""),
        "type": block_type,
        "text": block_title(block),
    }
    content = _content_ids(block)
    if content:
        formatted["content"] = content
    if isinstance(block.get("parent_id"), str):
        formatted["parent_id"] = block["parent_id"]
    if block_type in COLLECTION_BLOCK_TYPES:
        if isinstance(block.get("collection_id"), str):
            formatted["collection_id"] = block["collection_id"]
        view_ids = [v for v in block.get("view_ids") or [] if isinstance(v, str)]
        if view_ids:
            formatted["view_ids"] = view_ids
    return formatted


def format_block_children(blocks: list[dict], has_more: bool) -> dict:
    return {
        "results": [
            {"id": b.get("id", ""), "type": b.get("type", ""), "text": block_title(b)}
            for b in blocks
        ],
        "has_more": has_more,
    }


def format_block_record(wrapper: Any) -> dict:
    """``{"id", "title", "type"}`` for a raw block wrapper."""
    block = record_value(wrapper) or {}
    return {"id": block.get("id", ""), "title": block_title(block), "type": block.get("type", "")}


def format_collection(collection: dict, with_hints: bool = True) -> dict:
    """``{"id", "name", "schema", "hints"?}`` for a collection record."""
    collection_id = collection.get("id", "")
    formatted = {
        "id": collection_id,
        "name": decode_text(collection.get("name")),
        "schema": simplify_schema(collection.get("schema")),
    }
    if with_hints:
        hints = validate_schema(collection.get("schema"), collection_id or None)
        if hints:
            formatted["hints"] = hints
    return formatted


def format_collection_summary(collection: dict) -> dict:
    schema = collection.get("schema") if isinstance(collection.get("schema"), dict) else {}
    return {
        "id": collection.get("id", ""),
        "name": decode_text(collection.get("name")),
        "schema_properties": list(simplify_schema(schema)),
    }


def format_user(user: dict) -> dict:
    return {
        "id": user.get("id", ""),
        "name": user.get("name"),
        "email": user.get("email"),
    }


def format_comment(comment: dict, blocks: Any = None) -> dict:
    """Format a comment; rich comments keep their text in child blocks."""
    text = decode_text(comment.get("text"))
    content_ids = _content_ids(comment)
    if not text and content_ids and isinstance(blocks, dict):
        text = "\n".join(block_title(record_value(blocks.get(bid))) for bid in content_ids)
    formatted = {
        "id": comment.get("id", ""),
        "discussion_id": comment.get("parent_id", ""),
        "text": text,
        "created_by": comment.get("created_by_id"),
    }
    created = _iso_from_millis(comment.get("created_time"))
    if created:
        formatted["created_time"] = created
    return formatted


def format_discussions(record_map: Any, page_id: str) -> dict:
    """All live comments in discussions attached to a page or its blocks."""
    block_ids = set(table_records(record_map, "block")) | {page_id}
    blocks = record_map.get("block") if isinstance(record_map, dict) else None
    results = []
    for discussion in table_records(record_map, "discussion").values():
        if discussion.get("parent_id") not in block_ids:
            continue
        for comment_id in discussion.get("comments") or []:
            comment = find_record(record_map, "comment", comment_id)
            if not is_alive(comment):
                continue
            formatted = format_comment(comment, blocks)
            formatted["discussion_id"] = discussion.get("id", formatted["discussion_id"])
            results.append(formatted)
    return {"results": results, "total": len(results)}


# =============================================================================
# Write Encoders
# =============================================================================


def serialize_value(value: Any, prop_type: str) -> list[list]:
    """Encode a user-supplied value for a property of ``prop_type``."""
    if value is None:
        return []
    if prop_type == "checkbox":
        return encode_text("Yes" if value is True or value == "Yes" else "No")
    if prop_type == "relation":
        return encode_relation_refs([value] if isinstance(value, str) else list(value))
    if prop_type == "person":
        return encode_user_refs([value] if isinstance(value, str) else list(value))
    if prop_type == "date":
        if isinstance(value, dict):
            return encode_date(value["start"], value.get("end"))
        return encode_date(str(value))
    if prop_type == "multi_select" and isinstance(value, list):
        return encode_text(",".join(str(v) for v in value))
    return encode_text(str(value))


def _split_options(value: Any, prop_type: str) -> list[str]:
    if prop_type == "multi_select":
        items = value if isinstance(value, list) else str(value).split(",")
        return [str(v).strip() for v in items if str(v).strip()]
    return [str(value)] if value not in (None, "") else []


@dataclass
class RowWrite:
    """Encoded property writes for one row plus any schema option additions."""
    properties: dict[str, list] = field(default_factory=dict)
    schema_updates: dict[str, dict] = field(default_factory=dict)


def resolve_property_id(raw_schema: Any, name: str) -> str:
    """Map a display name (or property id) to the live property id.

    Raises:
        UnresolvableIdentifierError: If no live property matches.
    """
    live = _row_columns(raw_schema)
    matches = [pid for pid, prop in live.items() if prop["name"] == name]
    if matches:
        return matches[-1]
    if name in live:
        return name
    available = ", ".join(prop["name"] for prop in live.values())
    raise UnresolvableIdentifierError(f'Unknown property: "{name}". Available: {available}')


def serialize_row_properties(
    values: dict[str, Any],
    raw_schema: Any,
    option_id: Callable[[set[str]], str] = generate_short_id,
) -> RowWrite:
    """Encode ``{display name: value}`` into property payloads keyed by id.

    Select and multi-select values not yet in the schema are registered as new
    gray options in ``schema_updates``.
    """
    write = RowWrite()
    for name, value in values.items():
        pid = resolve_property_id(raw_schema, name)
        prop = raw_schema[pid]
        prop_type = prop["type"]
        write.properties[pid] = serialize_value(value, prop_type)

        if prop_type not in ("select", "multi_select"):
            continue
        options = list(prop.get("options") or [])
        known = {opt.get("value") for opt in options if isinstance(opt, dict)}
        taken = {opt.get("id") for opt in options if isinstance(opt, dict)}
        added = False
        for option in _split_options(value, prop_type):
            if option in known:
                continue
            new_id = option_id(taken)
            taken.add(new_id)
            known.add(option)
            options.append({"id": new_id, "color": "gray", "value": option})
            added = True
        if added:
            write.schema_updates[pid] = {**prop, "options": options}
    return write


def prepare_schema_properties(
    properties: dict[str, dict],
    space_id: str,
    target_schemas: dict[str, Any],
) -> dict[str, dict]:
    """Fill in the fields Notion needs for relation and rollup definitions.

    Relations gain the v2 two-way fields. Rollups get ``target_property``
    resolved from a display name to a property id of the related collection,
    plus ``target_property_type`` and ``rollup_type``; ``aggregation`` is
    dropped.

    Args:
        properties: Property definitions keyed by property id.
        space_id: Workspace the collection lives in.
        target_schemas: Raw schemas of related collections, by collection id.
    """
    prepared: dict[str, dict] = {}
    for pid, prop in properties.items():
        if not isinstance(prop, dict):
            prepared[pid] = prop
            continue
        prop = dict(prop)
        if prop.get("type") == "relation" and prop.get("collection_id"):
            target = prop["collection_id"]
            prop.update({
                "version": "v2",
                "property": pid,
                "autoRelate": {"enabled": False},
                "collection_pointer": {"id": target, "table": "collection", "spaceId": space_id},
            })
        elif prop.get("type") == "rollup":
            prop.pop("aggregation", None)
            prop["rollup_type"] = "relation"
            relation_pid = prop.get("relation_property")
            relation = properties.get(relation_pid) if isinstance(relation_pid, str) else None
            if not isinstance(relation, dict):
                by_name = [k for k, v in properties.items()
                           if isinstance(v, dict) and v.get("name") == relation_pid]
                if by_name:
                    prop["relation_property"] = by_name[0]
                    relation = properties[by_name[0]]
            target_id = relation.get("collection_id") if isinstance(relation, dict) else None
            target_schema = target_schemas.get(target_id) if isinstance(target_id, str) else None
            target_name = prop.get("target_property")
            if target_schema and isinstance(target_name, str):
                for target_pid, target_prop in _live_properties(target_schema).items():
                    if target_pid == target_name or target_prop.get("name") == target_name:
                        prop["target_property"] = target_pid
                        prop["target_property_type"] = target_prop.get("type")
                        break
        prepared[pid] = prop
    return prepared


def delete_property_args(raw_schema: Any, name: str, now_ms: int) -> tuple[str, dict]:
    """Soft-delete update for one property: ``(property id, update args)``.

    The property is renamed so its display name is free for reuse.

    Raises:
        UnresolvableIdentifierError: Unknown name, or the title property.
    """
    pid = resolve_property_id(raw_schema, name)
    if raw_schema[pid].get("type") == "title":
        raise UnresolvableIdentifierError(f'Cannot delete the title property: "{name}"')
    return pid, {"alive": False, "name": f"__deleted_{pid}_{now_ms}"}
