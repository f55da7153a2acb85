import asyncio
import inspect
import json
import logging
import re
import shlex
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from .stream import RAW_ARGUMENTS_KEY, ToolCallRequest

logger = logging.getLogger(__name__)

SHELL_TOOL = "Shell"
USER_AGENT = "shellmate/1.0"
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
FETCH_TIMEOUT = 20


class ToolError(Exception):
    """An auto-run tool could not do what it was asked."""

# --- Tool Implementations ---

def parse_curl(curl: str) -> dict:
    """Extracts url, method, headers and body from a curl command string."""
    curl = curl.replace("\\\n", " ").strip()
    try:
        tokens = shlex.split(curl)
    except ValueError:
        tokens = curl.split()

    request = {"url": "", "method": "GET", "headers": {}, "body": None}
    explicit_method = False
    i = 0
    while i < len(tokens):
        token = tokens[i]
        value = tokens[i + 1] if i + 1 < len(tokens) else None
        if token in ("-X", "--request") and value:
            request["method"] = value.upper()
            explicit_method = True
            i += 2
            continue
        if token in ("-H", "--header") and value:
            key, _, header_value = value.partition(":")
            request["headers"][key.strip()] = header_value.strip()
            i += 2
            continue
        if token in ("-d", "--data", "--data-raw", "--data-binary") and value is not None:
            request["body"] = value
            i += 2
            continue
        if not request["url"] and re.match(r"https?://", token):
            request["url"] = token
        i += 1

    if request["body"] is not None and not explicit_method:
        request["method"] = "POST"
    return request


def curl_fetch(curl: str) -> str:
    """Performs the HTTP request described by a curl command and returns the body."""
    request = parse_curl(curl)
    if not request["url"]:
        raise ToolError(f"No http(s) URL found in curl command: {curl}")
    headers = request["headers"]
    if not any(key.lower() == "user-agent" for key in headers):
        headers["User-Agent"] = USER_AGENT
    response = requests.request(
        request["method"], request["url"], headers=headers, data=request["body"], timeout=FETCH_TIMEOUT,
    )
    return response.text


def web_fetch(url: str) -> str:
    """Fetches the text content of a web page."""
    response = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=FETCH_TIMEOUT)
    response.raise_for_status()
    return response.text


def web_search(search_query: str, api_key: str) -> str:
    """Searches the web with Brave Search; news results first, then web results."""
    if not api_key:
        raise ToolError("Brave Search API key not configured")
    response = requests.get(
        BRAVE_SEARCH_URL,
        headers={"Accept": "application/json", "X-Subscription-Token": api_key},
        params={"q": search_query, "count": 5, "extra_snippets": "true", "safesearch": "off", "text_decorations": "false"},
        timeout=FETCH_TIMEOUT,
    )
    response.raise_for_status()
    data = response.json()

    results = []
    for r in ((data.get("news") or {}).get("results") or [])[:3]:
        results.append(f"[NEWS] Title: {r.get('title')}\nURL: {r.get('url')}\nDescription: {r.get('description')}")
    for r in ((data.get("web") or {}).get("results") or [])[:4]:
        results.append(f"Title: {r.get('title')}\nURL: {r.get('url')}\nDescription: {r.get('description')}")
    return "\n\n".join(results) if results else "No results found."


def _argument(args, name: str) -> str:
    """Reads one string argument, accepting the raw-text fallback for malformed JSON."""
    if isinstance(args, str):
        return args
    if not isinstance(args, dict):
        return json.dumps(args)
    if args.get(name) is not None:
        return str(args[name])
    if RAW_ARGUMENTS_KEY in args:
        return str(args[RAW_ARGUMENTS_KEY])
    raise ToolError(f"Missing required argument '{name}'")

# --- Tool Definitions for the LLM ---

SHELL_METADATA = {"type": "function", "function": {"name": SHELL_TOOL, "description": "Executes a shell command on the user's machine after the user confirms it, and returns its output. Use for filesystem operations, system information and running scripts. The shell session persists between calls.", "parameters": {"type": "object", "properties": {"command": {"type": "string", "description": "The shell command to execute."}}, "required": ["command"]}}}
WEB_FETCH_METADATA = {"type": "function", "function": {"name": "WebFetch", "description": "Fetches the text content from a URL.", "parameters": {"type": "object", "properties": {"url": {"type": "string", "description": "The URL to fetch content from."}}, "required": ["url"]}}}
CURL_FETCH_METADATA = {"type": "function", "function": {"name": "CurlFetch", "description": "Performs an HTTP request described by a curl command string and returns the response body.", "parameters": {"type": "object", "properties": {"curl": {"type": "string", "description": "Full curl command string (e.g. curl -X GET https://...)."}}, "required": ["curl"]}}}
WEB_SEARCH_METADATA = {"type": "function", "function": {"name": "WebSearch", "description": "Performs a web search and returns the top results, including news.", "parameters": {"type": "object", "properties": {"search_query": {"type": "string", "description": "The search query."}}, "required": ["search_query"]}}}

# --- Catalog ---

@dataclass(frozen=True)
class PrivilegedTool:
    """The confirmation-gated interactive command tool."""

@dataclass(frozen=True)
class AutoRunTool:
    handler: Callable


class ToolCatalog:
    """Tool metadata for the model plus how each named tool is run, fixed at construction."""

    def __init__(self):
        self.metadata = []
        self._routes = {}

    def add(self, metadata: dict, route):
        name = metadata["function"]["name"]
        if name in self._routes:
            raise ValueError(f"Tool '{name}' is already registered")
        self.metadata.append(metadata)
        self._routes[name] = route

    def route(self, name: str):
        return self._routes.get(name)

    def __contains__(self, name):
        return name in self._routes

    def __len__(self):
        return len(self._routes)


def build_catalog(cfg: dict) -> ToolCatalog:
    """Builds the default catalog: the Shell tool plus the auto-run web tools."""
    brave_key = ((cfg.get("tools_auth") or {}).get("brave_search") or {}).get("api_key")
    catalog = ToolCatalog()
    catalog.add(SHELL_METADATA, PrivilegedTool())
    catalog.add(WEB_FETCH_METADATA, AutoRunTool(lambda args: web_fetch(_argument(args, "url"))))
    catalog.add(CURL_FETCH_METADATA, AutoRunTool(lambda args: curl_fetch(_argument(args, "curl"))))
    if brave_key:
        catalog.add(
            WEB_SEARCH_METADATA,
            AutoRunTool(lambda args: web_search(_argument(args, "search_query"), brave_key)),
        )
    return catalog

# --- Routing ---

@dataclass(frozen=True)
class ToolResult:
    call_id: str
    name: str
    output: str


class ToolRouter:
    """Runs tool calls: the privileged tool through the CommandSession, the rest directly."""

    def __init__(self, catalog: ToolCatalog, command_session=None):
        self.catalog = catalog
        self.command_session = command_session

    async def run(self, call: ToolCallRequest) -> ToolResult:
        route = self.catalog.route(call.name)
        try:
            if route is None:
                output = f"Error: Unknown tool '{call.name}'"
            elif isinstance(route, PrivilegedTool):
                output = await self._run_command(call)
            else:
                output = await self._run_auto(route, call)
        except Exception as e:
            logger.debug("Tool %s failed: %s", call.name, e)
            output = f"Error: {e}"
        return ToolResult(call_id=call.id, name=call.name, output=output)

    async def _run_command(self, call: ToolCallRequest) -> str:
        if self.command_session is None:
            raise ToolError("Shell tool is not available in this session")
        command = _argument(call.arguments, "command").strip()
        if not command:
            raise ToolError("Empty command")
        output = await self.command_session.execute(command)
        return output or "(no output)"

    async def _run_auto(self, route: AutoRunTool, call: ToolCallRequest) -> str:
        if inspect.iscoroutinefunction(route.handler):
            output = await route.handler(call.arguments)
        else:
            output = await asyncio.to_thread(route.handler, call.arguments)
        output = "" if output is None else str(output)
        return output or "(no output)"

    async def run_all(self, calls: list, should_abort: Callable[[], bool] = None,
                      on_start: Callable = None, on_result: Callable = None) -> Optional[list]:
        """Runs calls one at a time, in order. Returns None if aborted part way."""
        results = []
        for call in calls:
            if should_abort and should_abort():
                return None
            await _maybe_await(on_start, call)
            result = await self.run(call)
            results.append(result)
            await _maybe_await(on_result, result)
        if should_abort and should_abort():
            return None
        return results


async def _maybe_await(callback, *args):
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
