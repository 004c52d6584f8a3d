"""Tool definitions and executors for the Strapi MCP server.

Local tools read the Strapi project tree under `config.project_root`; remote
tools go through StrapiClient. Executors return plain JSON-serialisable values
and raise on failure; the dispatcher turns both into tool-call results.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable
from urllib.parse import quote

from mcp.types import Tool

from strapi_client import StrapiClient
from strapi_config import StrapiConfig
from strapi_query import with_query

logger = logging.getLogger("strapi-mcp-server")

MEDIA_PAGE_SIZE = 100
DESIGN_SYSTEM_LISTING_LIMIT = 50
DEFAULT_POPULATE = "deep"
SKIPPED_PLUGIN_DIRS = {"node_modules", ".git"}

# Names that end up as filesystem path segments
NAME_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


@dataclass(frozen=True)
class ToolContext:
    """Everything an executor may touch: read-only config and the backend client."""
    config: StrapiConfig
    client: StrapiClient

    @property
    def root(self) -> Path:
        return self.config.project_root


ToolHandler = Callable[[ToolContext, dict], Awaitable[Any]]


@dataclass(frozen=True)
class RegisteredTool:
    definition: Tool
    handler: ToolHandler


def _require(arguments: dict, *keys: str) -> list[Any]:
    missing = [k for k in keys if arguments.get(k) in (None, "")]
    if missing:
        raise ValueError(f"Missing required argument: {', '.join(missing)}")
    return [arguments[k] for k in keys]


def _validate_name(name: str) -> str:
    """Validate a name used as a path segment, or raise ValueError.

    Only allows alphanumeric characters, underscores, and hyphens.
    """
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise ValueError(f"Invalid name: {name}. Use only alphanumeric, underscore, hyphen.")
    return name


def _segment(value: Any) -> str:
    """Percent-encode a value used as one URL path segment."""
    return quote(str(value), safe="")


def _subdirectories(path: Path) -> list[str]:
    return sorted(p.name for p in path.iterdir() if p.is_dir())


# --- Local executors ---
# Filesystem reads run in worker threads via asyncio.to_thread.

def _list_apis(root: Path) -> dict:
    api_dir = root / "src" / "api"
    if not api_dir.is_dir():
        return {"error": "src/api directory not found"}
    return {"apis": _subdirectories(api_dir)}


async def _handle_list_apis(ctx: ToolContext, _arguments: dict) -> dict:
    return await asyncio.to_thread(_list_apis, ctx.root)


def _read_schema(root: Path, api_name: str) -> Any:
    schema_path = root / "src" / "api" / api_name / "content-types" / api_name / "schema.json"
    if not schema_path.is_file():
        return {"error": f"Schema not found for {api_name}"}
    return json.loads(schema_path.read_text(encoding="utf-8"))


async def _handle_get_schema(ctx: ToolContext, arguments: dict) -> Any:
    (api_name,) = _require(arguments, "apiName")
    _validate_name(api_name)
    return await asyncio.to_thread(_read_schema, ctx.root, api_name)


def _list_components(root: Path) -> dict:
    comp_dir = root / "src" / "components"
    if not comp_dir.is_dir():
        return {"components": {}, "info": "src/components directory not found"}

    components = {}
    for category in _subdirectories(comp_dir):
        components[category] = sorted(
            f.stem for f in (comp_dir / category).iterdir()
            if f.is_file() and f.suffix == ".json"
        )
    return {"components": components}


async def _handle_list_components(ctx: ToolContext, _arguments: dict) -> dict:
    return await asyncio.to_thread(_list_components, ctx.root)


def _list_plugins(root: Path) -> dict:
    plugins_dir = root / "src" / "plugins"
    if not plugins_dir.is_dir():
        return {"plugins": [], "info": "src/plugins directory not found"}
    return {"plugins": _subdirectories(plugins_dir)}


async def _handle_list_plugins(ctx: ToolContext, _arguments: dict) -> dict:
    return await asyncio.to_thread(_list_plugins, ctx.root)


def _walk(directory: Path) -> list[dict]:
    results = []
    for entry in sorted(directory.iterdir(), key=lambda p: p.name):
        if entry.is_dir():
            if entry.name not in SKIPPED_PLUGIN_DIRS:
                results.append({"name": entry.name, "type": "directory", "children": _walk(entry)})
        else:
            results.append({"name": entry.name, "type": "file"})
    return results


def _plugin_structure(root: Path, plugin_name: str) -> dict:
    plugin_path = root / "src" / "plugins" / plugin_name
    if not plugin_path.is_dir():
        return {"error": f"Plugin {plugin_name} not found"}
    return {"name": plugin_name, "structure": _walk(plugin_path)}


async def _handle_get_plugin_structure(ctx: ToolContext, arguments: dict) -> dict:
    (plugin_name,) = _require(arguments, "pluginName")
    _validate_name(plugin_name)
    return await asyncio.to_thread(_plugin_structure, ctx.root, plugin_name)


def _design_system_info(root: Path) -> dict:
    ds_path = root / "node_modules" / "@strapi" / "design-system"
    if not ds_path.is_dir():
        return {"error": "@strapi/design-system not found in node_modules"}

    dist_dir = ds_path / "dist"
    if not dist_dir.is_dir():
        return {"info": "Design system found, but dist folder missing. Check package.json."}

    files = sorted(p.name for p in dist_dir.iterdir())
    return {
        "message": "Strapi Design System detected.",
        "available_files": files[:DESIGN_SYSTEM_LISTING_LIMIT],
        "tip": 'You can use components like Button, Box, Flex, Typography, etc., by importing from "@strapi/design-system".',
    }


async def _handle_get_design_system_info(ctx: ToolContext, _arguments: dict) -> dict:
    return await asyncio.to_thread(_design_system_info, ctx.root)


# --- Remote executors ---

async def _handle_whoami(ctx: ToolContext, _arguments: dict) -> Any:
    return await ctx.client.request("/api/users/me")


async def _handle_query(ctx: ToolContext, arguments: dict) -> Any:
    (plural_name,) = _require(arguments, "pluralName")
    path = with_query(f"/api/{_segment(plural_name)}", arguments.get("queryParams"))
    return await ctx.client.request(path)


async def _handle_get_entry(ctx: ToolContext, arguments: dict) -> Any:
    plural_name, entry_id = _require(arguments, "pluralName", "id")
    populate = arguments.get("populate") or DEFAULT_POPULATE
    path = with_query(f"/api/{_segment(plural_name)}/{_segment(entry_id)}", {"populate": populate})
    return await ctx.client.request(path)


async def _handle_get_page_by_slug(ctx: ToolContext, arguments: dict) -> Any:
    plural_name, slug = _require(arguments, "pluralName", "slug")
    query = {"filters": {"slug": {"$eq": slug}}, "populate": DEFAULT_POPULATE}
    return await ctx.client.request(with_query(f"/api/{_segment(plural_name)}", query))


async def _handle_get_single(ctx: ToolContext, arguments: dict) -> Any:
    (singular_name,) = _require(arguments, "singularName")
    populate = arguments.get("populate") or DEFAULT_POPULATE
    return await ctx.client.request(with_query(f"/api/{_segment(singular_name)}", {"populate": populate}))


async def _handle_create_entry(ctx: ToolContext, arguments: dict) -> Any:
    plural_name, data = _require(arguments, "pluralName", "data")
    return await ctx.client.request(f"/api/{_segment(plural_name)}", "POST", {"data": data})


async def _handle_update_entry(ctx: ToolContext, arguments: dict) -> Any:
    name, data = _require(arguments, "name", "data")
    entry_id = arguments.get("id")
    path = f"/api/{_segment(name)}"
    if entry_id:
        path += f"/{_segment(entry_id)}"
    return await ctx.client.request(path, "PUT", {"data": data})


async def _handle_delete_entry(ctx: ToolContext, arguments: dict) -> Any:
    plural_name, entry_id = _require(arguments, "pluralName", "id")
    return await ctx.client.request(f"/api/{_segment(plural_name)}/{_segment(entry_id)}", "DELETE")


async def _handle_list_media(ctx: ToolContext, arguments: dict) -> Any:
    return await ctx.client.request(with_query("/api/upload/files", arguments.get("queryParams")))


def _page_items(data: Any) -> list:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return data.get("data") or []
    return []


async def _handle_replace_media_urls(ctx: ToolContext, arguments: dict) -> dict:
    """Rewrite every media asset URL containing oldBaseUrl, page by page.

    Best effort: failed updates are collected per asset, and a failed page fetch
    stops paging and returns what was done so far.
    """
    old_base_url, new_base_url = _require(arguments, "oldBaseUrl", "newBaseUrl")

    total_updated = 0
    failures = []
    page = 1
    pages_scanned = 0
    page_error = None

    while True:
        pagination = {"pagination": {"page": page, "pageSize": MEDIA_PAGE_SIZE}}
        try:
            data = await ctx.client.request(with_query("/api/upload/files", pagination))
        except Exception as e:
            logger.warning(f"Stopping media URL replace at page {page}: {e}")
            page_error = {"page": page, "error": str(e)}
            break

        files = _page_items(data)
        pages_scanned += 1
        if not files:
            break

        for asset in files:
            url = asset.get("url")
            if not url or old_base_url not in url:
                continue
            new_url = url.replace(old_base_url, new_base_url, 1)
            try:
                await ctx.client.request(
                    f"/api/upload/files/{_segment(asset.get('id'))}?action=update",
                    "POST",
                    {"fileInfo": {"url": new_url}, "url": new_url},
                )
                total_updated += 1
            except Exception as e:
                failures.append({"id": asset.get("id"), "url": url, "error": str(e)})

        if len(files) < MEDIA_PAGE_SIZE:
            break
        page += 1

    result = {"totalUpdated": total_updated, "failures": failures, "pagesScanned": pages_scanned}
    if page_error:
        result["pageError"] = page_error
    return result


# Shared schema fragments for tool definitions
EMPTY_SCHEMA = {"type": "object", "properties": {}}
PLURAL_NAME = {"type": "string", "description": "Plural API name, e.g. 'articles'"}
POPULATE = {"type": "string", "description": "Populate parameter (default 'deep')"}

TOOL_DEFINITIONS = [
    Tool(
        name="strapi_whoami",
        description="Check the connection and the identity behind the configured token.",
        inputSchema=EMPTY_SCHEMA,
    ),
    Tool(
        name="strapi_list_apis",
        description="List content types (directories under src/api).",
        inputSchema=EMPTY_SCHEMA,
    ),
    Tool(
        name="strapi_get_schema",
        description="Get the schema.json of a content type.",
        inputSchema={
            "type": "object",
            "properties": {"apiName": {"type": "string", "description": "API name under src/api"}},
            "required": ["apiName"],
        },
    ),
    Tool(
        name="strapi_list_components",
        description="List shared components grouped by category.",
        inputSchema=EMPTY_SCHEMA,
    ),
    Tool(
        name="strapi_query",
        description="Advanced query with filters, sort, populate and pagination.",
        inputSchema={
            "type": "object",
            "properties": {
                "pluralName": PLURAL_NAME,
                "queryParams": {"type": "object", "description": "Nested Strapi query parameters"},
            },
            "required": ["pluralName"],
        },
    ),
    Tool(
        name="strapi_get_entry",
        description="Get an entry by ID.",
        inputSchema={
            "type": "object",
            "properties": {
                "pluralName": PLURAL_NAME,
                "id": {"type": "string", "description": "Entry id or documentId"},
                "populate": POPULATE,
            },
            "required": ["pluralName", "id"],
        },
    ),
    Tool(
        name="strapi_get_page_by_slug",
        description="Get entries matching a slug.",
        inputSchema={
            "type": "object",
            "properties": {"pluralName": PLURAL_NAME, "slug": {"type": "string"}},
            "required": ["pluralName", "slug"],
        },
    ),
    Tool(
        name="strapi_get_single",
        description="Get Single Type content.",
        inputSchema={
            "type": "object",
            "properties": {
                "singularName": {"type": "string", "description": "Singular API name, e.g. 'homepage'"},
                "populate": POPULATE,
            },
            "required": ["singularName"],
        },
    ),
    Tool(
        name="strapi_create_entry",
        description="Create an entry.",
        inputSchema={
            "type": "object",
            "properties": {"pluralName": PLURAL_NAME, "data": {"type": "object"}},
            "required": ["pluralName", "data"],
        },
    ),
    Tool(
        name="strapi_update_entry",
        description="Update an entry, or a Single Type when no id is given.",
        inputSchema={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Plural name, or singular name for a Single Type"},
                "id": {"type": "string"},
                "data": {"type": "object"},
            },
            "required": ["name", "data"],
        },
    ),
    Tool(
        name="strapi_delete_entry",
        description="Delete an entry.",
        inputSchema={
            "type": "object",
            "properties": {"pluralName": PLURAL_NAME, "id": {"type": "string"}},
            "required": ["pluralName", "id"],
        },
    ),
    Tool(
        name="strapi_list_media",
        description="List media library files.",
        inputSchema={
            "type": "object",
            "properties": {"queryParams": {"type": "object", "description": "Nested Strapi query parameters"}},
        },
    ),
    Tool(
        name="strapi_replace_media_urls",
        description="Replace a base URL in every media file URL. Reports per-file failures.",
        inputSchema={
            "type": "object",
            "properties": {"oldBaseUrl": {"type": "string"}, "newBaseUrl": {"type": "string"}},
            "required": ["oldBaseUrl", "newBaseUrl"],
        },
    ),
    Tool(
        name="strapi_list_plugins",
        description="List all custom plugins in src/plugins.",
        inputSchema=EMPTY_SCHEMA,
    ),
    Tool(
        name="strapi_get_plugin_structure",
        description="Explore the internal file structure of a plugin.",
        inputSchema={
            "type": "object",
            "properties": {"pluginName": {"type": "string"}},
            "required": ["pluginName"],
        },
    ),
    Tool(
        name="strapi_get_design_system_info",
        description="Check for @strapi/design-system and list available modules.",
        inputSchema=EMPTY_SCHEMA,
    ),
]

# Tool dispatch table
TOOL_HANDLERS: dict[str, ToolHandler] = {
    "strapi_whoami": _handle_whoami,
    "strapi_list_apis": _handle_list_apis,
    "strapi_get_schema": _handle_get_schema,
    "strapi_list_components": _handle_list_components,
    "strapi_query": _handle_query,
    "strapi_get_entry": _handle_get_entry,
    "strapi_get_page_by_slug": _handle_get_page_by_slug,
    "strapi_get_single": _handle_get_single,
    "strapi_create_entry": _handle_create_entry,
    "strapi_update_entry": _handle_update_entry,
    "strapi_delete_entry": _handle_delete_entry,
    "strapi_list_media": _handle_list_media,
    "strapi_replace_media_urls": _handle_replace_media_urls,
    "strapi_list_plugins": _handle_list_plugins,
    "strapi_get_plugin_structure": _handle_get_plugin_structure,
    "strapi_get_design_system_info": _handle_get_design_system_info,
}


def build_registry(
    definitions: list[Tool], handlers: dict[str, ToolHandler]
) -> dict[str, RegisteredTool]:
    """Pair each definition with its handler, keeping definition order.

    Raises ValueError on duplicate names or a definition without a handler.
    """
    registry: dict[str, RegisteredTool] = {}
    for definition in definitions:
        if definition.name in registry:
            raise ValueError(f"Duplicate tool name: {definition.name}")
        handler = handlers.get(definition.name)
        if handler is None:
            raise ValueError(f"No handler for tool: {definition.name}")
        registry[definition.name] = RegisteredTool(definition, handler)

    extra = set(handlers) - set(registry)
    if extra:
        raise ValueError(f"Handlers without definitions: {sorted(extra)}")
    return registry


REGISTRY = build_registry(TOOL_DEFINITIONS, TOOL_HANDLERS)
