"""notion-internal: command-line client for Notion's internal v3 API.

Commands print one JSON document to stdout. Failures print
``{"error": ..., "hint"?: ...}`` to stderr and exit with status 1.

Usage:
    notion-internal auth set --token <token_v2>
    notion-internal workspace list
    notion-internal page get <page_id> --workspace-id <id> --backlinks
    notion-internal database query <collection_id> --workspace-id <id>
    notion-internal batch '[{"action": "page.create", ...}]' --workspace-id <id>
"""

import argparse
import json
import logging
import re
import sys
import time
from pathlib import Path
from typing import Any, Callable, Optional

from notion_client import (
    CredentialManager,
    NotAuthenticatedError,
    NotionAPIError,
    internal_request,
    mask_token,
    resolve_token,
    set_active_user_id,
)
from notion_markdown import markdown_to_blocks, read_markdown_input
from notion_records import (
    NotionRecordError,
    RecordNotFoundError,
    UnresolvableIdentifierError,
    block_title,
    build_lookups,
    collect_backlink_user_ids,
    collect_reference_ids,
    delete_property_args,
    enrich_rows,
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
    format_user,
    generate_id,
    is_alive,
    lookup_requests,
    merge_schema,
    prepare_schema_properties,
    serialize_row_properties,
    table_records,
)

logger = logging.getLogger("notion-internal")

PAGE_CHUNK_LIMIT = 100
PAGE_BLOCK_TYPES = {"page", "collection_view_page", "collection_view"}


class CommandError(Exception):
    """User-facing failure with an optional hint."""

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.hint = hint


# =============================================================================
# Self-Healing Error Messages
# =============================================================================

HINTS = {
    "not_authenticated": (
        "Run: notion-internal auth set --token <token_v2>, "
        "or set NOTION_TOKEN_V2, or pass --token-file <path>."
    ),
    "not_found": (
        "The record may be deleted or not visible to this account. "
        "Find it with: notion-internal search <query> --workspace-id <id>"
    ),
    "unknown_property": "List property names with: notion-internal database get <collection_id>",
    "rate_limited": "Too many requests. Wait a moment and try again.",
    "invalid_token": "token_v2 is invalid or expired. Copy a fresh one from the browser and run auth set.",
    "bad_json": "Arguments such as --content, --properties, --filter and batch operations must be valid JSON.",
}


def _error(message: str, hint: str | None = None) -> dict:
    """Error document printed to stderr."""
    payload = {"error": message}
    if hint:
        payload["hint"] = hint
    return payload


def _hint_for(exc: Exception) -> Optional[str]:
    if isinstance(exc, CommandError):
        return exc.hint
    if isinstance(exc, NotAuthenticatedError):
        return HINTS["not_authenticated"]
    if isinstance(exc, RecordNotFoundError):
        return HINTS["not_found"]
    if isinstance(exc, UnresolvableIdentifierError):
        return HINTS["unknown_property"]
    if isinstance(exc, NotionAPIError):
        if exc.status_code == 429:
            return HINTS["rate_limited"]
        if exc.status_code in (401, 403):
            return HINTS["invalid_token"]
    if isinstance(exc, json.JSONDecodeError):
        return HINTS["bad_json"]
    return None


# =============================================================================
# Request Helpers
# =============================================================================


def _arg(args: dict, name: str) -> Any:
    value = args.get(name)
    if value is None or value == "":
        raise CommandError(f"Missing required argument: {name}")
    return value


def _parse_json(raw: Any, what: str, expected: type) -> Any:
    parsed = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(parsed, expected):
        kind = "array" if expected is list else "object"
        raise CommandError(f"{what} must be a JSON {kind}")
    return parsed


def _sync(token: str, pointers: list[tuple[str, str]]) -> dict:
    """syncRecordValues for ``(table, id)`` pointers; returns the record map."""
    response = internal_request(token, "syncRecordValues", {
        "requests": [
            {"pointer": {"table": table, "id": record_id}, "version": -1}
            for table, record_id in pointers
        ],
    })
    return response.get("recordMap") or {}


def _op(table: str, record_id: str, space_id: str, command: str, path: list, args: Any) -> dict:
    return {
        "pointer": {"table": table, "id": record_id, "spaceId": space_id},
        "command": command,
        "path": path,
        "args": args,
    }


def _save(token: str, space_id: str, operations: list[dict]) -> None:
    if not operations:
        return
    logger.debug(f"saveTransactions: {len(operations)} operation(s) in space {space_id}")
    internal_request(token, "saveTransactions", {
        "requestId": generate_id(),
        "transactions": [{"id": generate_id(), "spaceId": space_id, "operations": operations}],
    })


def fetch_block(token: str, block_id: str) -> dict:
    block = find_record(_sync(token, [("block", block_id)]), "block", block_id)
    if block is None:
        raise RecordNotFoundError(f"Block not found: {block_id}")
    return block


def fetch_collection(token: str, collection_id: str) -> dict:
    collection = find_record(_sync(token, [("collection", collection_id)]), "collection", collection_id)
    if collection is None:
        raise RecordNotFoundError(f"Collection not found: {collection_id}")
    return collection


def resolve_space_id(token: str, block_id: str) -> str:
    block = find_record(_sync(token, [("block", block_id)]), "block", block_id)
    if not block or not block.get("space_id"):
        raise RecordNotFoundError(f"Could not resolve space ID for block: {block_id}")
    return block["space_id"]


def resolve_active_user(token: str, workspace_id: str | None) -> None:
    """Pick the logged-in user that belongs to ``workspace_id``."""
    if not workspace_id:
        return
    response = internal_request(token, "getSpaces", {})
    for user_id, entry in response.items():
        spaces = entry.get("space") if isinstance(entry, dict) else None
        if isinstance(spaces, dict) and workspace_id in spaces:
            logger.debug(f"Active user for workspace {workspace_id}: {user_id}")
            set_active_user_id(user_id)
            return


def resolve_collection_view_id(token: str, collection_id: str) -> str:
    collection = find_record(_sync(token, [("collection", collection_id)]), "collection", collection_id)
    if not collection or not collection.get("parent_id"):
        raise RecordNotFoundError(f"Collection not found: {collection_id}")
    parent = find_record(_sync(token, [("block", collection["parent_id"])]), "block", collection["parent_id"])
    view_ids = (parent or {}).get("view_ids") or []
    if not view_ids:
        raise RecordNotFoundError(f"No views found for collection: {collection_id}")
    return view_ids[0]


def _load_chunk(token: str, page_id: str, limit: int, cursor: dict, chunk_number: int) -> dict:
    return internal_request(token, "loadPageChunk", {
        "pageId": page_id,
        "limit": limit,
        "cursor": cursor,
        "chunkNumber": chunk_number,
        "verticalColumns": False,
    })


def load_page_blocks(token: str, page_id: str, limit: int = PAGE_CHUNK_LIMIT) -> dict:
    """Every block wrapper of a page, following loadPageChunk cursors."""
    blocks: dict = {}
    cursor: dict = {"stack": []}
    chunk_number = 0
    while True:
        chunk = _load_chunk(token, page_id, limit, cursor, chunk_number)
        blocks.update((chunk.get("recordMap") or {}).get("block") or {})
        cursor = chunk.get("cursor") or {"stack": []}
        chunk_number += 1
        if not cursor.get("stack"):
            return blocks


def _block_ops(definitions: list[dict], parent_id: str, space_id: str) -> tuple[list[dict], list[str]]:
    """set + listAfter operations that append new child blocks."""
    operations, new_ids = [], []
    for definition in definitions:
        block_id = generate_id()
        new_ids.append(block_id)
        operations.append(_op("block", block_id, space_id, "set", [], {
            "type": definition["type"],
            "id": block_id,
            "version": 1,
            "parent_id": parent_id,
            "parent_table": "block",
            "alive": True,
            "properties": definition.get("properties") or {},
            "space_id": space_id,
        }))
        operations.append(_op("block", parent_id, space_id, "listAfter", ["content"], {"id": block_id}))
    return operations, new_ids


def _parse_block_definitions(raw: Any) -> list[dict]:
    parsed = _parse_json(raw, "Content", list)
    definitions = []
    for item in parsed:
        if not isinstance(item, dict):
            raise CommandError("Each block definition must be an object")
        if not isinstance(item.get("type"), str) or not item["type"].strip():
            raise CommandError("Each block definition must include a non-empty string type")
        if item.get("properties") is not None and not isinstance(item["properties"], dict):
            raise CommandError("Block definition properties must be an object when provided")
        definitions.append({"type": item["type"], "properties": item.get("properties")})
    return definitions


def _markdown_blocks(args: dict) -> list[dict]:
    try:
        markdown = read_markdown_input(args.get("markdown"), args.get("markdown_file"))
    except ValueError as e:
        raise CommandError(str(e)) from e
    return markdown_to_blocks(markdown)


# =============================================================================
# Auth, Workspace, User, Search
# =============================================================================


def auth_set(token: Optional[str], args: dict) -> dict:
    token_v2 = _arg(args, "token").strip()
    spaces = internal_request(token_v2, "getSpaces", {})
    user_id = next(iter(spaces), None)
    CredentialManager().set_credentials(token_v2, user_id)
    logger.info(f"Stored credentials for user {user_id}")
    return {"authenticated": True, "user_id": user_id, "token_v2": mask_token(token_v2)}


def auth_status(token: Optional[str], args: dict) -> dict:
    credentials = CredentialManager().get_credentials()
    if not credentials:
        return {"authenticated": False}
    return {
        "authenticated": True,
        "user_id": credentials.get("user_id"),
        "token_v2": mask_token(credentials["token_v2"]),
    }


def auth_logout(token: Optional[str], args: dict) -> dict:
    removed = CredentialManager().remove()
    return {"logged_out": removed}


def _spaces_by_user(token: str) -> dict[str, dict]:
    response = internal_request(token, "getSpaces", {})
    return {user_id: entry for user_id, entry in response.items() if isinstance(entry, dict)}


def workspace_list(token: str, args: dict) -> list[dict]:
    seen: set[str] = set()
    workspaces = []
    for entry in _spaces_by_user(token).values():
        for space in table_records(entry, "space").values():
            if space.get("id") in seen:
                continue
            seen.add(space.get("id"))
            workspaces.append({
                "id": space.get("id"),
                "name": space.get("name"),
                "icon": space.get("icon"),
                "plan_type": space.get("plan_type"),
            })
    return workspaces


def user_me(token: str, args: dict) -> dict | list:
    accounts = []
    for user_id, entry in _spaces_by_user(token).items():
        user = find_record(entry, "notion_user", user_id) or first_record(entry, "notion_user") or {}
        accounts.append({
            "id": user_id,
            "name": user.get("name"),
            "email": user.get("email"),
            "spaces": [
                {"id": space.get("id"), "name": space.get("name")}
                for space in table_records(entry, "space").values()
            ],
        })
    return accounts[0] if len(accounts) == 1 else accounts


def user_get(token: str, args: dict) -> dict:
    user_id = _arg(args, "user_id")
    user = find_record(_sync(token, [("notion_user", user_id)]), "notion_user", user_id)
    if user is None:
        raise RecordNotFoundError(f"User not found: {user_id}")
    return format_user(user)


def search(token: str, args: dict) -> dict:
    space_id = args.get("workspace_id")
    if not space_id:
        raise CommandError(
            "--workspace-id is required",
            hint="Find your workspace id with: notion-internal workspace list",
        )
    data = internal_request(token, "search", {
        "type": "BlocksInSpace",
        "query": _arg(args, "query"),
        "spaceId": space_id,
        "limit": int(args.get("limit") or 20),
        "filters": {
            "isDeletedOnly": False,
            "excludeTemplates": False,
            "navigableBlockContentOnly": not args.get("include_content", False),
            "requireEditPermissions": False,
            "ancestors": [],
            "createdBy": [],
            "editedBy": [],
            "lastEditedTime": {},
            "createdTime": {},
        },
        "sort": {"field": "relevance"},
        "source": "quick_find",
    })
    results = [
        {
            "id": r.get("id"),
            "title": (r.get("highlight") or {}).get("title") or "",
            "score": r.get("score"),
            "spaceId": r.get("spaceId"),
        }
        for r in data.get("results") or []
    ]
    return {"results": results, "total": data.get("total", len(results))}


# =============================================================================
# Pages
# =============================================================================


def _walk_pages(token: str, page_ids: list[str], max_depth: int, depth: int) -> list[dict]:
    if not page_ids:
        return []
    record_map = _sync(token, [("block", pid) for pid in page_ids])
    entries = []
    for page_id in page_ids:
        block = find_record(record_map, "block", page_id)
        if not is_alive(block) or block.get("type") not in PAGE_BLOCK_TYPES:
            continue
        entry = {"id": page_id, "title": block_title(block), "type": block["type"]}
        if depth < max_depth:
            children = _walk_pages(token, block.get("content") or [], max_depth, depth + 1)
            if children:
                entry["children"] = children
        entries.append(entry)
    return entries


def page_list(token: str, args: dict) -> dict:
    workspace_id = args.get("workspace_id")
    if not workspace_id:
        raise CommandError("--workspace-id is required", hint="Find it with: notion-internal workspace list")
    space = None
    for entry in _spaces_by_user(token).values():
        space = find_record(entry, "space", workspace_id)
        if space:
            break
    if space is None:
        raise RecordNotFoundError(f"Space not found: {workspace_id}")
    pages = _walk_pages(token, space.get("pages") or [], int(args.get("depth") or 1), 0)
    return {"pages": pages, "total": len(pages)}


def page_get(token: str, args: dict) -> dict:
    page_id = format_notion_id(_arg(args, "page_id"))
    blocks = load_page_blocks(token, page_id, int(args.get("limit") or PAGE_CHUNK_LIMIT))
    result = format_page(blocks, page_id)

    if args.get("backlinks"):
        response = internal_request(token, "getBacklinksForBlock", {"blockId": page_id})
        user_ids = collect_backlink_user_ids(response)
        user_lookup: dict[str, str] = {}
        if user_ids:
            _, user_lookup = build_lookups(_sync(token, [("notion_user", uid) for uid in user_ids]))
        result["backlinks"] = format_backlinks(response, user_lookup)
    return result


def page_create(token: str, args: dict) -> dict:
    parent_id = format_notion_id(_arg(args, "parent"))
    title = _arg(args, "title")
    definitions = _markdown_blocks(args) if args.get("markdown") or args.get("markdown_file") else []

    space_id = resolve_space_id(token, parent_id)
    page_id = generate_id()
    _save(token, space_id, [
        _op("block", page_id, space_id, "set", [], {
            "type": "page",
            "id": page_id,
            "version": 1,
            "parent_id": parent_id,
            "parent_table": "block",
            "alive": True,
            "properties": {"title": [[title]]},
            "space_id": space_id,
        }),
        _op("block", parent_id, space_id, "listAfter", ["content"], {"id": page_id}),
    ])
    if definitions:
        operations, _ = _block_ops(definitions, page_id, space_id)
        _save(token, space_id, operations)

    return format_block_record({"value": fetch_block(token, page_id)})


def page_update(token: str, args: dict) -> dict:
    page_id = format_notion_id(_arg(args, "page_id"))
    replace_content = bool(args.get("replace_content"))
    if not args.get("title") and not args.get("icon") and not replace_content:
        raise CommandError("No updates provided. Use --title, --icon, or --replace-content with --markdown")
    if replace_content and not args.get("markdown") and not args.get("markdown_file"):
        raise CommandError("--replace-content requires --markdown or --markdown-file")
    definitions = _markdown_blocks(args) if replace_content else []

    space_id = resolve_space_id(token, page_id)
    operations = []
    if args.get("title"):
        operations.append(_op("block", page_id, space_id, "set", ["properties", "title"], [[args["title"]]]))
    if args.get("icon"):
        block = fetch_block(token, page_id)
        if block.get("type") == "collection_view_page" and block.get("collection_id"):
            # database pages keep their icon on the collection record
            operations.append(_op("collection", block["collection_id"], space_id, "set", ["icon"], args["icon"]))
        else:
            operations.append(_op("block", page_id, space_id, "set", ["format", "page_icon"], args["icon"]))
    _save(token, space_id, operations)

    if replace_content:
        chunk = _load_chunk(token, page_id, PAGE_CHUNK_LIMIT, {"stack": []}, 0)
        page = find_record(chunk.get("recordMap"), "block", page_id) or {}
        removals = []
        for child_id in page.get("content") or []:
            removals.append(_op("block", child_id, space_id, "update", [], {"alive": False}))
            removals.append(_op("block", page_id, space_id, "listRemove", ["content"], {"id": child_id}))
        _save(token, space_id, removals)

        additions, _ = _block_ops(definitions, page_id, space_id)
        try:
            _save(token, space_id, additions)
        except NotionAPIError as e:
            raise CommandError(f"Page content cleared but new content failed to append: {e}") from e

    return format_block_record({"value": fetch_block(token, page_id)})


def page_archive(token: str, args: dict) -> dict:
    page_id = format_notion_id(_arg(args, "page_id"))
    page = fetch_block(token, page_id)
    parent_id, space_id = page.get("parent_id"), page.get("space_id")
    if not parent_id or not space_id:
        raise CommandError(f"Could not determine parent_id or space_id for page: {page_id}")
    _save(token, space_id, [
        _op("block", page_id, space_id, "update", [], {"alive": False}),
        _op("block", parent_id, space_id, "listRemove", ["content"], {"id": page_id}),
    ])
    return {"archived": True, "id": page_id}


# =============================================================================
# Blocks
# =============================================================================


def block_get(token: str, args: dict) -> dict:
    return format_block(fetch_block(token, format_notion_id(_arg(args, "block_id"))))


def block_children(token: str, args: dict) -> dict:
    block_id = format_notion_id(_arg(args, "block_id"))
    chunk = _load_chunk(token, block_id, int(args.get("limit") or PAGE_CHUNK_LIMIT), {"stack": []}, 0)
    record_map = chunk.get("recordMap")
    parent = find_record(record_map, "block", block_id)
    if parent is None:
        raise RecordNotFoundError(f"Block not found: {block_id}")
    children = [find_record(record_map, "block", cid) for cid in parent.get("content") or []]
    has_more = bool((chunk.get("cursor") or {}).get("stack"))
    return format_block_children([c for c in children if is_alive(c)], has_more)


def block_append(token: str, args: dict) -> dict:
    parent_id = format_notion_id(_arg(args, "parent_id"))
    if args.get("content"):
        definitions = _parse_block_definitions(args["content"])
    else:
        definitions = _markdown_blocks(args)
    if not definitions:
        raise CommandError("Content must include at least one block definition")

    space_id = resolve_space_id(token, parent_id)
    operations, new_ids = _block_ops(definitions, parent_id, space_id)
    _save(token, space_id, operations)
    return {"created": new_ids}


def block_update(token: str, args: dict) -> dict:
    block_id = format_notion_id(_arg(args, "block_id"))
    content = _parse_json(_arg(args, "content"), "Content", dict)
    space_id = resolve_space_id(token, block_id)
    _save(token, space_id, [_op("block", block_id, space_id, "update", [], content)])
    return format_block(fetch_block(token, block_id))


def block_delete(token: str, args: dict) -> dict:
    block_id = format_notion_id(_arg(args, "block_id"))
    block = fetch_block(token, block_id)
    if not block.get("parent_id"):
        raise CommandError(f"Block has no parent_id: {block_id}")
    space_id = block.get("space_id") or resolve_space_id(token, block_id)
    _save(token, space_id, [
        _op("block", block_id, space_id, "update", [], {"alive": False}),
        _op("block", block["parent_id"], space_id, "listRemove", ["content"], {"id": block_id}),
    ])
    return {"deleted": True, "id": block_id}


# =============================================================================
# Databases
# =============================================================================


def _collection_space_id(token: str, collection: dict) -> str:
    if collection.get("space_id"):
        return collection["space_id"]
    if not collection.get("parent_id"):
        raise CommandError(f"Could not resolve parent block for collection: {collection.get('id')}")
    return resolve_space_id(token, collection["parent_id"])


def _target_schemas(token: str, properties: dict) -> dict[str, Any]:
    """Schemas of collections that rollups in ``properties`` aggregate over."""
    targets: dict[str, Any] = {}
    for prop in properties.values():
        if not isinstance(prop, dict) or prop.get("type") != "rollup":
            continue
        relation_pid = prop.get("relation_property")
        relation = properties.get(relation_pid) if isinstance(relation_pid, str) else None
        if not isinstance(relation, dict):
            relation = next(
                (p for p in properties.values()
                 if isinstance(p, dict) and p.get("name") == relation_pid),
                None,
            )
        target_id = (relation or {}).get("collection_id")
        if isinstance(target_id, str) and target_id not in targets:
            targets[target_id] = fetch_collection(token, target_id).get("schema") or {}
    return targets


def _enrich_query_rows(token: str, rows: list[dict]) -> None:
    refs = collect_reference_ids(rows)
    if not refs:
        return
    response = internal_request(token, "syncRecordValues", {"requests": lookup_requests(refs)})
    page_lookup, user_lookup = build_lookups(response.get("recordMap"))
    enrich_rows(rows, page_lookup, user_lookup)


def database_get(token: str, args: dict) -> dict:
    return format_collection(fetch_collection(token, format_notion_id(_arg(args, "collection_id"))))


def database_list(token: str, args: dict) -> list[dict]:
    response = internal_request(token, "loadUserContent", {})
    return [
        format_collection_summary(collection)
        for collection in table_records(response.get("recordMap"), "collection").values()
    ]


def database_query(token: str, args: dict) -> dict:
    collection_id = format_notion_id(_arg(args, "collection_id"))
    view_id = args.get("view_id") or resolve_collection_view_id(token, collection_id)
    loader: dict[str, Any] = {
        "type": "reducer",
        "reducers": {
            "collection_group_results": {"type": "results", "limit": int(args.get("limit") or 50)},
        },
        "searchQuery": args.get("search_query") or "",
        "userTimeZone": args.get("timezone") or "UTC",
    }
    if args.get("filter"):
        loader["filter"] = _parse_json(args["filter"], "Filter", dict)
    if args.get("sort"):
        loader["sort"] = _parse_json(args["sort"], "Sort", list)

    response = internal_request(token, "queryCollection", {
        "collectionId": collection_id,
        "collectionViewId": view_id,
        "loader": loader,
    })
    schema = None
    if first_record(response.get("recordMap"), "collection") is None:
        schema = fetch_collection(token, collection_id).get("schema")
    result = format_query_response(response, schema)
    _enrich_query_rows(token, result["results"])
    return result


def database_create(token: str, args: dict) -> dict:
    parent_id = format_notion_id(_arg(args, "parent"))
    title = _arg(args, "title")
    properties = _parse_json(args.get("properties") or "{}", "properties", dict)

    space_id = resolve_space_id(token, parent_id)
    collection_id, view_id, block_id = generate_id(), generate_id(), generate_id()
    prepared = prepare_schema_properties(properties, space_id, _target_schemas(token, properties))

    _save(token, space_id, [
        _op("collection", collection_id, space_id, "set", [], {
            "id": collection_id,
            "name": [[title]],
            "schema": {"title": {"name": "Name", "type": "title"}, **prepared},
            "parent_id": block_id,
            "parent_table": "block",
            "alive": True,
            "space_id": space_id,
        }),
        _op("collection_view", view_id, space_id, "set", [], {
            "id": view_id,
            "type": "table",
            "name": "Default view",
            "parent_id": block_id,
            "parent_table": "block",
            "alive": True,
            "version": 1,
        }),
        _op("block", block_id, space_id, "set", [], {
            "type": "collection_view_page",
            "id": block_id,
            "collection_id": collection_id,
            "view_ids": [view_id],
            "parent_id": parent_id,
            "parent_table": "block",
            "alive": True,
            "space_id": space_id,
            "version": 1,
        }),
        _op("block", parent_id, space_id, "listAfter", ["content"], {"id": block_id}),
    ])
    return format_collection(fetch_collection(token, collection_id))


def database_update(token: str, args: dict) -> dict:
    collection_id = format_notion_id(_arg(args, "collection_id"))
    current = fetch_collection(token, collection_id)
    if not args.get("title") and not args.get("properties"):
        return format_collection(current)

    space_id = _collection_space_id(token, current)
    update: dict[str, Any] = {}
    if args.get("title"):
        update["name"] = [[args["title"]]]
    if args.get("properties"):
        properties = _parse_json(args["properties"], "properties", dict)
        prepared = prepare_schema_properties(properties, space_id, _target_schemas(token, properties))
        update["schema"] = merge_schema(current.get("schema"), prepared)

    _save(token, space_id, [_op("collection", collection_id, space_id, "update", [], update)])
    return format_collection(fetch_collection(token, collection_id))


def database_delete_property(token: str, args: dict) -> dict:
    collection_id = format_notion_id(_arg(args, "collection_id"))
    current = fetch_collection(token, collection_id)
    pid, update = delete_property_args(current.get("schema"), _arg(args, "property"), int(time.time() * 1000))
    space_id = _collection_space_id(token, current)
    _save(token, space_id, [_op("collection", collection_id, space_id, "update", ["schema", pid], update)])
    return format_collection(fetch_collection(token, collection_id))


def _schema_option_ops(collection_id: str, space_id: str, schema_updates: dict) -> list[dict]:
    return [
        _op("collection", collection_id, space_id, "update", ["schema", pid], definition)
        for pid, definition in schema_updates.items()
    ]


def database_add_row(token: str, args: dict) -> dict:
    collection_id = format_notion_id(_arg(args, "collection_id"))
    values = _parse_json(args.get("properties") or "{}", "properties", dict)
    collection = fetch_collection(token, collection_id)
    schema = collection.get("schema") or {}
    write = serialize_row_properties(values, schema)
    space_id = _collection_space_id(token, collection)

    row_id = generate_id()
    properties = {"title": [[args.get("title") or ""]], **write.properties}
    operations = _schema_option_ops(collection_id, space_id, write.schema_updates)
    operations.append(_op("block", row_id, space_id, "set", [], {
        "type": "page",
        "id": row_id,
        "version": 1,
        "parent_id": collection_id,
        "parent_table": "collection",
        "alive": True,
        "properties": properties,
        "space_id": space_id,
    }))
    _save(token, space_id, operations)
    return format_row(fetch_block(token, row_id), merge_schema(schema, write.schema_updates))


def database_update_row(token: str, args: dict) -> dict:
    row_id = format_notion_id(_arg(args, "row_id"))
    values = _parse_json(args.get("properties") or "{}", "properties", dict)
    if not values:
        raise CommandError("No properties to update")

    row = fetch_block(token, row_id)
    if row.get("parent_table") != "collection" or not row.get("parent_id"):
        raise CommandError(f"Block {row_id} is not a database row")
    collection = fetch_collection(token, row["parent_id"])
    schema = collection.get("schema") or {}
    write = serialize_row_properties(values, schema)
    space_id = row.get("space_id") or _collection_space_id(token, collection)

    operations = _schema_option_ops(row["parent_id"], space_id, write.schema_updates)
    operations.extend(
        _op("block", row_id, space_id, "set", ["properties", pid], payload)
        for pid, payload in write.properties.items()
    )
    _save(token, space_id, operations)
    return format_row(fetch_block(token, row_id), merge_schema(schema, write.schema_updates))


# =============================================================================
# Comments
# =============================================================================


def comment_list(token: str, args: dict) -> dict:
    page_id = format_notion_id(_arg(args, "page"))
    chunk = _load_chunk(token, page_id, PAGE_CHUNK_LIMIT, {"stack": []}, 0)
    return format_discussions(chunk.get("recordMap") or {}, page_id)


def comment_create(token: str, args: dict) -> dict:
    text = _arg(args, "text")
    if not args.get("page") and not args.get("discussion"):
        raise CommandError("Either --page or --discussion is required")
    if args.get("page") and args.get("discussion"):
        raise CommandError("Cannot specify both --page and --discussion")

    comment_id = generate_id()

    def comment_op(discussion_id: str, space_id: str) -> dict:
        return _op("comment", comment_id, space_id, "set", [], {
            "id": comment_id,
            "version": 1,
            "parent_id": discussion_id,
            "parent_table": "discussion",
            "text": [[text]],
            "alive": True,
            "space_id": space_id,
        })

    if args.get("page"):
        page_id = format_notion_id(args["page"])
        space_id = resolve_space_id(token, page_id)
        discussion_id = generate_id()
        _save(token, space_id, [
            _op("discussion", discussion_id, space_id, "set", [], {
                "id": discussion_id,
                "version": 1,
                "parent_id": page_id,
                "parent_table": "block",
                "comments": [comment_id],
                "resolved": False,
                "space_id": space_id,
            }),
            comment_op(discussion_id, space_id),
            _op("block", page_id, space_id, "listAfter", ["discussions"], {"id": discussion_id}),
        ])
    else:
        discussion_id = format_notion_id(args["discussion"])
        discussion = find_record(_sync(token, [("discussion", discussion_id)]), "discussion", discussion_id)
        if discussion is None:
            raise RecordNotFoundError(f"Discussion not found: {discussion_id}")
        space_id = discussion.get("space_id")
        if not space_id:
            raise CommandError(f"Could not resolve space ID for discussion: {discussion_id}")
        _save(token, space_id, [
            comment_op(discussion_id, space_id),
            _op("discussion", discussion_id, space_id, "listAfter", ["comments"], {"id": comment_id}),
        ])

    return {"id": comment_id, "discussion_id": discussion_id, "text": text}


def comment_get(token: str, args: dict) -> dict:
    comment_id = format_notion_id(_arg(args, "comment_id"))
    comment = find_record(_sync(token, [("comment", comment_id)]), "comment", comment_id)
    if comment is None:
        raise RecordNotFoundError("Comment not found")
    blocks = None
    content_ids = [cid for cid in comment.get("content") or [] if isinstance(cid, str)]
    if content_ids:
        blocks = _sync(token, [("block", cid) for cid in content_ids]).get("block")
    return format_comment(comment, blocks)


# =============================================================================
# Batch
# =============================================================================

Handler = Callable[[str, dict], Any]

ACTION_REGISTRY: dict[str, Handler] = {
    "page.create": page_create,
    "page.update": page_update,
    "page.archive": page_archive,
    "block.append": block_append,
    "block.update": block_update,
    "block.delete": block_delete,
    "comment.create": comment_create,
    "database.create": database_create,
    "database.update": database_update,
    "database.delete-property": database_delete_property,
    "database.add-row": database_add_row,
    "database.update-row": database_update_row,
}

_CAMEL_BOUNDARY = re.compile(r'(?<=[a-z0-9])([A-Z])')


def _normalize_key(key: str) -> str:
    """``markdownFile`` / ``markdown-file`` -> ``markdown_file``."""
    return _CAMEL_BOUNDARY.sub(r'_\1', key).replace("-", "_").lower()


def validate_operations(operations: Any, valid_actions: list[str]) -> list[dict]:
    """Check a batch before anything runs.

    Raises:
        CommandError: Describing the first malformed operation.
    """
    if not isinstance(operations, list):
        raise CommandError("Operations must be an array")
    if not operations:
        raise CommandError("Operations array cannot be empty")
    for index, operation in enumerate(operations):
        if not isinstance(operation, dict):
            raise CommandError(f"Operation at index {index} must be an object")
        if "action" not in operation:
            raise CommandError(f'Operation at index {index} is missing "action"')
        action = operation["action"]
        if not isinstance(action, str):
            raise CommandError(f"Operation at index {index} has a non-string action")
        if action not in valid_actions:
            raise CommandError(
                f'Invalid action "{action}" at index {index}. Valid actions: {", ".join(valid_actions)}'
            )
    return operations


def run_batch(token: str, operations: list[dict], workspace_id: str | None = None) -> dict:
    """Run operations in order, stopping at the first failure."""
    results = []
    for index, operation in enumerate(operations):
        action = operation["action"]
        params = {_normalize_key(k): v for k, v in operation.items() if k != "action"}
        params.setdefault("workspace_id", workspace_id)
        try:
            data = ACTION_REGISTRY[action](token, params)
        except (CommandError, NotionRecordError, NotionAPIError, ValueError, OSError) as e:
            logger.warning(f"Batch operation {index} ({action}) failed: {e}")
            results.append({"index": index, "action": action, "success": False, "error": str(e)})
            break
        results.append({"index": index, "action": action, "success": True, "data": data})

    succeeded = sum(1 for r in results if r["success"])
    return {
        "results": results,
        "total": len(operations),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
    }


def batch(token: str, args: dict) -> dict:
    if args.get("file"):
        raw = Path(args["file"]).expanduser().read_text(encoding="utf-8")
    else:
        raw = _arg(args, "operations")
    operations = validate_operations(json.loads(raw), list(ACTION_REGISTRY))
    return run_batch(token, operations, args.get("workspace_id"))


# =============================================================================
# Main Entry Point
# =============================================================================


def _add(subparsers, name: str, handler: Handler, common, help_text: str, needs_token: bool = True):
    parser = subparsers.add_parser(name, parents=[common], help=help_text, description=help_text)
    parser.set_defaults(handler=handler, needs_token=needs_token)
    return parser


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--workspace-id", help="Workspace ID (use `workspace list` to find it)")
    common.add_argument("--pretty", action="store_true", help="Pretty print JSON output")

    parser = argparse.ArgumentParser(
        prog="notion-internal",
        description="Command-line client for Notion's internal API",
    )
    parser.add_argument("--token-file", help="Path to file containing token_v2")
    parser.add_argument("--debug", action="store_true", help="Log requests to stderr")
    groups = parser.add_subparsers(dest="group", required=True)

    # auth
    auth = groups.add_parser("auth", help="Manage stored credentials").add_subparsers(dest="command", required=True)
    p = _add(auth, "set", auth_set, common, "Validate and store a token_v2", needs_token=False)
    p.add_argument("--token", required=True, help="token_v2 cookie value")
    _add(auth, "status", auth_status, common, "Show stored credentials", needs_token=False)
    _add(auth, "logout", auth_logout, common, "Remove stored credentials", needs_token=False)

    # workspace / user / search
    workspace = groups.add_parser("workspace", help="Workspace commands").add_subparsers(dest="command", required=True)
    _add(workspace, "list", workspace_list, common, "List workspaces")

    user = groups.add_parser("user", help="User commands").add_subparsers(dest="command", required=True)
    p = _add(user, "get", user_get, common, "Retrieve a user")
    p.add_argument("user_id")
    _add(user, "me", user_me, common, "Show the logged-in account(s)")

    p = _add(groups, "search", search, common, "Search pages in a workspace")
    p.add_argument("query")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--include-content", action="store_true", help="Also match non-navigable blocks")

    # page
    page = groups.add_parser("page", help="Page commands").add_subparsers(dest="command", required=True)
    p = _add(page, "list", page_list, common, "List pages in a workspace")
    p.add_argument("--depth", type=int, default=1, help="Recursion depth (default: 1)")
    p = _add(page, "get", page_get, common, "Retrieve a page and its content")
    p.add_argument("page_id")
    p.add_argument("--limit", type=int, default=PAGE_CHUNK_LIMIT, help="Blocks per chunk")
    p.add_argument("--backlinks", action="store_true", help="Include pages that link to this page")
    p = _add(page, "create", page_create, common, "Create a page")
    p.add_argument("--parent", required=True, help="Parent page or block ID")
    p.add_argument("--title", required=True)
    p.add_argument("--markdown", help="Markdown content for the page body")
    p.add_argument("--markdown-file", help="Path to a markdown file for the page body")
    p = _add(page, "update", page_update, common, "Update a page")
    p.add_argument("page_id")
    p.add_argument("--title")
    p.add_argument("--icon", help="Page icon emoji")
    p.add_argument("--replace-content", action="store_true", help="Replace all page content")
    p.add_argument("--markdown")
    p.add_argument("--markdown-file")
    p = _add(page, "archive", page_archive, common, "Archive a page")
    p.add_argument("page_id")

    # block
    block = groups.add_parser("block", help="Block commands").add_subparsers(dest="command", required=True)
    p = _add(block, "get", block_get, common, "Retrieve a block")
    p.add_argument("block_id")
    p = _add(block, "children", block_children, common, "List block children")
    p.add_argument("block_id")
    p.add_argument("--limit", type=int, default=PAGE_CHUNK_LIMIT)
    p = _add(block, "append", block_append, common, "Append child blocks")
    p.add_argument("parent_id")
    p.add_argument("--content", help="Block definitions as a JSON array")
    p.add_argument("--markdown")
    p.add_argument("--markdown-file")
    p = _add(block, "update", block_update, common, "Update a block")
    p.add_argument("block_id")
    p.add_argument("--content", required=True, help="Block update as a JSON object")
    p = _add(block, "delete", block_delete, common, "Delete (archive) a block")
    p.add_argument("block_id")

    # database
    database = groups.add_parser("database", help="Database commands").add_subparsers(dest="command", required=True)
    p = _add(database, "get", database_get, common, "Retrieve a database schema")
    p.add_argument("collection_id")
    _add(database, "list", database_list, common, "List databases")
    p = _add(database, "query", database_query, common, "Query a database")
    p.add_argument("collection_id")
    p.add_argument("--view-id", help="Collection view ID (auto-resolved if omitted)")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--search-query")
    p.add_argument("--timezone", default="UTC")
    p.add_argument("--filter", help="Filter as a JSON object")
    p.add_argument("--sort", help="Sort as a JSON array")
    p = _add(database, "create", database_create, common, "Create a database")
    p.add_argument("--parent", required=True, help="Parent page ID")
    p.add_argument("--title", required=True)
    p.add_argument("--properties", help="Schema properties as JSON, keyed by property id")
    p = _add(database, "update", database_update, common, "Update a database")
    p.add_argument("collection_id")
    p.add_argument("--title")
    p.add_argument("--properties", help="Schema properties as JSON; null removes a property")
    p = _add(database, "delete-property", database_delete_property, common, "Delete a database property")
    p.add_argument("collection_id")
    p.add_argument("--property", required=True, help="Property display name")
    p = _add(database, "add-row", database_add_row, common, "Add a row")
    p.add_argument("collection_id")
    p.add_argument("--title", default="")
    p.add_argument("--properties", help='Values as JSON, e.g. {"Status": "Done"}')
    p = _add(database, "update-row", database_update_row, common, "Update a row")
    p.add_argument("row_id")
    p.add_argument("--properties", required=True, help="Values as JSON, keyed by property name")

    # comment
    comment = groups.add_parser("comment", help="Comment commands").add_subparsers(dest="command", required=True)
    p = _add(comment, "list", comment_list, common, "List comments on a page")
    p.add_argument("--page", required=True)
    p = _add(comment, "create", comment_create, common, "Create a comment or reply")
    p.add_argument("text")
    p.add_argument("--page")
    p.add_argument("--discussion")
    p = _add(comment, "get", comment_get, common, "Retrieve a comment")
    p.add_argument("comment_id")

    p = _add(groups, "batch", batch, common, "Execute multiple write actions sequentially")
    p.add_argument("operations", nargs="?", help="Operations as a JSON array")
    p.add_argument("--file", help="Read operations JSON from a file")

    return parser


def _print(payload: Any, pretty: bool, stream=None) -> None:
    print(json.dumps(payload, indent=2 if pretty else None, ensure_ascii=False), file=stream or sys.stdout)


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, run one command, print its JSON result."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    params = {
        k: v for k, v in vars(args).items()
        if k not in ("handler", "needs_token", "token_file", "debug", "pretty", "group", "command")
    }
    try:
        token = None
        if args.needs_token:
            token = resolve_token(args.token_file)
            resolve_active_user(token, params.get("workspace_id"))
        result = args.handler(token, params)
    except (
        CommandError,
        NotAuthenticatedError,
        NotionRecordError,
        NotionAPIError,
        ValueError,
        OSError,
    ) as e:
        logger.debug(f"{type(e).__name__}: {e}")
        _print(_error(str(e), _hint_for(e)), False, sys.stderr)
        return 1

    _print(result, args.pretty)
    if args.handler is batch and result["failed"]:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
