"""MATLAB MCP server: save, run and read back MATLAB scripts.

Claude Code launches this via .mcp.json. Tool calls are routed to a
MatlabGateway, which shells out to the MATLAB executable; saved scripts in the
scratch directory are exposed as matlab://scripts/<name> resources.

Architecture:
  Claude Code --JSON-RPC/stdio--> mcp_server.py --argv--> matlab -batch
                                        |
                                        +--> <scratch dir>/<name>.m
"""

import os
import re
import sys
from dataclasses import dataclass

from dotenv import load_dotenv
load_dotenv()

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.shared.exceptions import McpError
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    CallToolRequest,
    CallToolResult,
    ErrorData,
    Resource,
    ServerResult,
    TextContent,
)

from matlab_engine import (
    SCRIPT_EXTENSION,
    EngineError,
    ExecutionResult,
    MatlabGateway,
    ScriptNotFound,
    is_valid_identifier,
)

_DOCS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "docs")
_TOOL_DESC_DIR = os.path.join(_DOCS_DIR, "tool-descriptions")

def _load_doc(relative_path: str) -> str:
    with open(os.path.join(_DOCS_DIR, relative_path), "r", encoding="utf-8") as f:
        return f.read()

def _load_tool_desc(tool_name: str) -> str:
    """Load tool description from markdown file."""
    with open(os.path.join(_TOOL_DESC_DIR, f"{tool_name}.md"), "r", encoding="utf-8") as f:
        return f.read()


def _log(message: str) -> None:
    print(f"[matlab] {message}", file=sys.stderr, flush=True)


# MCP "resource not found" error code (not exported by every mcp release)
RESOURCE_NOT_FOUND = -32002

URI_SCHEME = "matlab"
SCRIPT_MIME_TYPE = "text/x-matlab"
DOC_MIME_TYPE = "text/markdown"
GETTING_STARTED_URI = f"{URI_SCHEME}://documentation/getting-started"

_SCRIPT_URI_RE = re.compile(rf"^{URI_SCHEME}://scripts/(.+)$")
_DOC_URI_RE = re.compile(rf"^{URI_SCHEME}://documentation/(.+)$")

GENERATE_TOOL = "generate_matlab_script"
EXECUTE_TOOL = "execute_matlab_script"
# Availability failures only block this name; no tool is registered under it.
# TODO: decide whether execute_matlab_script should be gated on availability.
INLINE_EXECUTION_TOOL = "execute_matlab_code"

UNAVAILABLE_MESSAGE = (
    "Error: MATLAB is not available. Please make sure MATLAB is installed and "
    "the path is correctly set in the environment variable ENGINE_PATH."
)

GETTING_STARTED_GUIDE = _load_doc("getting-started.md")

_DOCUMENTS = {
    "getting-started": GETTING_STARTED_GUIDE,
}

_TOOL_DESCRIPTIONS = {
    GENERATE_TOOL: _load_tool_desc(GENERATE_TOOL),
    EXECUTE_TOOL: _load_tool_desc(EXECUTE_TOOL),
}


def _mcp_error(code: int, message: str) -> McpError:
    return McpError(ErrorData(code=code, message=message))


# ---------------------------------------------------------------------------
# Response records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolResponse:
    text: str
    is_error: bool = False


@dataclass(frozen=True)
class ResourceDescriptor:
    uri: str
    name: str
    mime_type: str
    description: str


@dataclass(frozen=True)
class ResourceContent:
    uri: str
    mime_type: str
    text: str


# ---------------------------------------------------------------------------
# AvailabilityState — probe once, cache until invalidated
# ---------------------------------------------------------------------------

class AvailabilityState:
    """Caches the result of an async availability probe.

    The first check() runs the probe; later calls return the cached answer
    whether it was positive or negative. invalidate() forces a re-probe on the
    next check().
    """

    def __init__(self, probe):
        self._probe = probe
        self._available: bool | None = None

    @property
    def checked(self) -> bool:
        return self._available is not None

    @property
    def available(self) -> bool | None:
        return self._available

    async def check(self) -> bool:
        if self._available is None:
            self._available = bool(await self._probe())
        return self._available

    def invalidate(self) -> None:
        self._available = None


# ---------------------------------------------------------------------------
# ScriptRouter — tool and resource handling on top of MatlabGateway
# ---------------------------------------------------------------------------

class ScriptRouter:
    def __init__(self, gateway: MatlabGateway,
                 availability: AvailabilityState | None = None):
        self.gateway = gateway
        self.availability = availability or AvailabilityState(gateway.check_availability)

    # -- tools ----------------------------------------------------------------

    async def call_tool(self, name: str, arguments: dict | None) -> ToolResponse:
        arguments = arguments or {}

        available = await self.availability.check()
        if not available and name == INLINE_EXECUTION_TOOL:
            return ToolResponse(UNAVAILABLE_MESSAGE, is_error=True)

        if name == GENERATE_TOOL:
            return await self.generate_script(
                str(arguments.get("scriptName") or ""),
                str(arguments.get("code") or ""),
            )
        if name == EXECUTE_TOOL:
            return await self.execute_script(str(arguments.get("script_name") or ""))
        raise _mcp_error(METHOD_NOT_FOUND, f"Unknown tool: {name}")

    async def generate_script(self, script_name: str, code: str) -> ToolResponse:
        if not script_name:
            raise _mcp_error(INVALID_PARAMS, "scriptName is required")
        try:
            result = self.gateway.generate_code(script_name, code)
        except EngineError as e:
            return ToolResponse(f"Error generating MATLAB code: {e}", is_error=True)

        text = (
            f'Generated MATLAB script for: "{script_name}"\n\n'
            f"```matlab\n{result.code}\n```"
            f"\n\nGenerated MATLAB script saved to: {result.script_path}"
        )
        return ToolResponse(text)

    async def execute_script(self, script_name: str) -> ToolResponse:
        if not script_name:
            raise _mcp_error(INVALID_PARAMS, "Script name is required")
        try:
            result = await self.gateway.execute_script(script_name)
        except ScriptNotFound as e:
            return ToolResponse(f"Error executing MATLAB script: {e}", is_error=True)
        return self.format_execution(script_name, result)

    @staticmethod
    def format_execution(script_name: str, result: ExecutionResult) -> ToolResponse:
        if result.error:
            return ToolResponse(
                f'Error executing MATLAB script "{script_name}":\n{result.error}',
                is_error=True,
            )
        return ToolResponse(f'MATLAB script "{script_name}" execution result:\n{result.output}')

    # -- resources --------------------------------------------------------------

    def list_resources(self) -> list[ResourceDescriptor]:
        resources = [
            ResourceDescriptor(
                uri=GETTING_STARTED_URI,
                name="MATLAB Getting Started Guide",
                mime_type=DOC_MIME_TYPE,
                description="Basic guide for getting started with MATLAB through the MCP server",
            ),
        ]
        scripts_dir = self.gateway.scratch_dir
        try:
            if os.path.isdir(scripts_dir):
                for file_name in sorted(os.listdir(scripts_dir)):
                    if not file_name.endswith(SCRIPT_EXTENSION):
                        continue
                    script_name = file_name[: -len(SCRIPT_EXTENSION)]
                    resources.append(ResourceDescriptor(
                        uri=f"{URI_SCHEME}://scripts/{script_name}",
                        name=f"MATLAB Script: {script_name}",
                        mime_type=SCRIPT_MIME_TYPE,
                        description=f"Content of MATLAB script {file_name}",
                    ))
        except OSError as e:
            _log(f"Error listing MATLAB scripts: {e}")
        return resources

    def read_resource(self, uri: str) -> ResourceContent:
        script_match = _SCRIPT_URI_RE.match(uri)
        if script_match:
            return self._read_script(uri, script_match.group(1))

        doc_match = _DOC_URI_RE.match(uri)
        if not doc_match:
            raise _mcp_error(INVALID_REQUEST, f"Invalid URI format: {uri}")

        doc_type = doc_match.group(1)
        text = _DOCUMENTS.get(doc_type)
        if text is None:
            raise _mcp_error(RESOURCE_NOT_FOUND, f"Documentation not found: {doc_type}")
        return ResourceContent(uri=uri, mime_type=DOC_MIME_TYPE, text=text)

    def _read_script(self, uri: str, script_name: str) -> ResourceContent:
        not_found = _mcp_error(RESOURCE_NOT_FOUND, f"Script {script_name}{SCRIPT_EXTENSION} not found")
        if not is_valid_identifier(script_name):
            raise not_found
        script_path = self.gateway.script_path(script_name)
        if not os.path.exists(script_path):
            raise not_found
        try:
            with open(script_path, "r", encoding="utf-8") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise _mcp_error(INTERNAL_ERROR, f"Error reading script {script_name}: {e}") from e
        return ResourceContent(uri=uri, mime_type=SCRIPT_MIME_TYPE, text=content)


# ---------------------------------------------------------------------------
# Singleton router
# ---------------------------------------------------------------------------

_router = None


def get_router() -> ScriptRouter:
    global _router
    if _router is None:
        _router = ScriptRouter(MatlabGateway())
    return _router


# ---------------------------------------------------------------------------
# MCP server
# ---------------------------------------------------------------------------

class MatlabMCP(FastMCP):
    """FastMCP whose resources are the live contents of the scratch directory.

    tools/call requests go straight to the ScriptRouter so that its McpErrors
    (missing parameters, unknown tool) reach the client as JSON-RPC errors
    instead of being folded into an isError tool result.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._mcp_server.request_handlers[CallToolRequest] = self._handle_call_tool

    async def _handle_call_tool(self, req: CallToolRequest) -> ServerResult:
        response = await get_router().call_tool(req.params.name, req.params.arguments)
        extra = {}
        if not response.is_error:
            # Matches the output schema FastMCP derives for ``-> str`` tools
            extra["structuredContent"] = {"result": response.text}
        return ServerResult(CallToolResult(
            content=[TextContent(type="text", text=response.text)],
            isError=response.is_error,
            **extra,
        ))

    async def list_resources(self) -> list[Resource]:
        return [
            Resource(
                uri=d.uri,
                name=d.name,
                mimeType=d.mime_type,
                description=d.description,
            )
            for d in get_router().list_resources()
        ]

    async def read_resource(self, uri) -> list[ReadResourceContents]:
        content = get_router().read_resource(str(uri))
        return [ReadResourceContents(content=content.text, mime_type=content.mime_type)]


mcp = MatlabMCP("matlab-mcp")


async def _dispatch(tool_name: str, arguments: dict) -> str:
    response = await get_router().call_tool(tool_name, arguments)
    if response.is_error:
        raise ToolError(response.text)
    return response.text


@mcp.tool(name=GENERATE_TOOL, description="Save MATLAB code as a named script.")
async def generate_matlab_script(scriptName: str, code: str) -> str:
    return await _dispatch(GENERATE_TOOL, {"scriptName": scriptName, "code": code})

generate_matlab_script.__doc__ = _TOOL_DESCRIPTIONS[GENERATE_TOOL]


@mcp.tool(name=EXECUTE_TOOL, description="Execute a saved MATLAB script by name.")
async def execute_matlab_script(script_name: str) -> str:
    return await _dispatch(EXECUTE_TOOL, {"script_name": script_name})

execute_matlab_script.__doc__ = _TOOL_DESCRIPTIONS[EXECUTE_TOOL]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    router = get_router()
    _log(f"MATLAB MCP server running on stdio (scripts in {router.gateway.scratch_dir})")
    try:
        mcp.run()
    except KeyboardInterrupt:
        _log("Interrupted, shutting down")
    sys.exit(0)


if __name__ == "__main__":
    main()
