"""Tests for listing and reading matlab:// resources."""

import os
import sys
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from mcp.shared.exceptions import McpError
from mcp.types import INTERNAL_ERROR, INVALID_REQUEST

from mcp_server import (
    GETTING_STARTED_URI,
    RESOURCE_NOT_FOUND,
    AvailabilityState,
    ScriptRouter,
)


@pytest.fixture
def router(make_gateway):
    return ScriptRouter(make_gateway(), AvailabilityState(AsyncMock(return_value=True)))


# ============================================================
# Listing
# ============================================================


class TestListResources:
    """Listing reflects the .m files currently in the scratch directory."""

    def test_empty_scratch_dir_lists_documentation(self, router):
        resources = router.list_resources()
        assert [r.uri for r in resources] == [GETTING_STARTED_URI]
        assert resources[0].mime_type == "text/markdown"

    def test_lists_saved_scripts(self, router):
        router.gateway.generate_code("a", "x = 1;")
        router.gateway.generate_code("b", "y = 2;")
        uris = {r.uri for r in router.list_resources()}
        assert uris == {
            GETTING_STARTED_URI,
            "matlab://scripts/a",
            "matlab://scripts/b",
        }

    def test_includes_preexisting_files(self, router, scratch_dir):
        with open(os.path.join(scratch_dir, "legacy.m"), "w") as f:
            f.write("z = 3;")
        router.gateway.generate_code("a", "x = 1;")
        uris = {r.uri for r in router.list_resources()}
        assert "matlab://scripts/legacy" in uris
        assert "matlab://scripts/a" in uris

    def test_ignores_other_extensions(self, router, scratch_dir):
        for name in ("notes.txt", "data.mat", "figure.png"):
            with open(os.path.join(scratch_dir, name), "w") as f:
                f.write("")
        assert len(router.list_resources()) == 1

    def test_script_descriptor_fields(self, router):
        router.gateway.generate_code("wave", "plot(1:3)")
        script = [r for r in router.list_resources() if r.uri.endswith("/wave")][0]
        assert script.name == "MATLAB Script: wave"
        assert script.mime_type == "text/x-matlab"
        assert script.description == "Content of MATLAB script wave.m"

    def test_single_documentation_descriptor(self, router):
        router.gateway.generate_code("a", "")
        docs = [r for r in router.list_resources() if "documentation" in r.uri]
        assert len(docs) == 1

    def test_missing_scratch_dir(self, router, scratch_dir):
        os.rmdir(scratch_dir)
        assert [r.uri for r in router.list_resources()] == [GETTING_STARTED_URI]


# ============================================================
# Reading
# ============================================================


class TestReadScript:
    """matlab://scripts/<name> returns the saved text."""

    def test_reads_saved_text(self, router):
        router.gateway.generate_code("myScript", "x = 1;")
        content = router.read_resource("matlab://scripts/myScript")
        assert content.text == "x = 1;"
        assert content.mime_type == "text/x-matlab"
        assert content.uri == "matlab://scripts/myScript"

    def test_reads_latest_version(self, router):
        router.gateway.generate_code("myScript", "x = 1;")
        router.gateway.generate_code("myScript", "y = 2;")
        assert router.read_resource("matlab://scripts/myScript").text == "y = 2;"

    def test_nonexistent_is_not_found(self, router):
        """A missing script is not-found, never internal-error."""
        with pytest.raises(McpError) as exc_info:
            router.read_resource("matlab://scripts/nonexistent")
        assert exc_info.value.error.code == RESOURCE_NOT_FOUND
        assert "nonexistent.m not found" in exc_info.value.error.message

    def test_path_traversal_is_not_found(self, router):
        with pytest.raises(McpError) as exc_info:
            router.read_resource("matlab://scripts/../../etc/passwd")
        assert exc_info.value.error.code == RESOURCE_NOT_FOUND

    def test_unreadable_script_is_internal_error(self, router, scratch_dir):
        """A .m path that cannot be read as text is an internal error."""
        os.mkdir(os.path.join(scratch_dir, "weird.m"))
        with pytest.raises(McpError) as exc_info:
            router.read_resource("matlab://scripts/weird")
        assert exc_info.value.error.code == INTERNAL_ERROR
        assert "Error reading script weird" in exc_info.value.error.message


class TestReadDocumentation:
    """matlab://documentation/<doc> serves the bundled guides."""

    def test_getting_started(self, router):
        content = router.read_resource(GETTING_STARTED_URI)
        assert content.mime_type == "text/markdown"
        assert content.text.startswith("# MATLAB MCP Server - Getting Started")
        assert "matlab://scripts/{script_name}" in content.text

    def test_unknown_document(self, router):
        with pytest.raises(McpError) as exc_info:
            router.read_resource("matlab://documentation/advanced")
        assert exc_info.value.error.code == RESOURCE_NOT_FOUND
        assert "Documentation not found: advanced" in exc_info.value.error.message


class TestInvalidLocator:
    """Locators outside the two known patterns are rejected."""

    @pytest.mark.parametrize("uri", [
        "file:///tmp/matlab-mcp/a.m",
        "matlab://figures/a",
        "matlab://scripts/",
        "",
    ])
    def test_invalid_format(self, router, uri):
        with pytest.raises(McpError) as exc_info:
            router.read_resource(uri)
        assert exc_info.value.error.code == INVALID_REQUEST
        assert "Invalid URI format" in exc_info.value.error.message
