"""MCP tools exposing tenant-scoped qmd search to agents."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastmcp import FastMCP

from .auth import authenticate_token
from .constants import MAX_QUERY_LENGTH
from .errors import BridgeError
from .observability.context import tenant_context
from .services import BridgeServices


logger = logging.getLogger(__name__)

TokenArg = Annotated[str, "Bearer token for tenant authentication (format: qmd_sk_<hex>)"]
QueryArg = Annotated[str, f"Search query string (max {MAX_QUERY_LENGTH} characters)"]

_READ_ONLY = {"readOnlyHint": True, "destructiveHint": False, "idempotentHint": True, "openWorldHint": False}


async def run_qmd_tool(services: BridgeServices, command: str, token: str, query: str) -> dict[str, Any]:
    """Authenticate ``token`` and run ``command`` against the tenant's own collection."""
    try:
        tenant = authenticate_token(services.registry, token)
        with tenant_context(tenant.label, tool=f"qmd_{command}"):
            result = await services.executor.execute(command, query, tenant.collection)
    except BridgeError as exc:
        logger.info("qmd_%s rejected: %s", command, exc.code)
        return {"error": exc.to_payload()}
    return {"data": result.output, "execution_time": result.elapsed_time_ms}


def list_public_tenants(services: BridgeServices) -> dict[str, Any]:
    entries = [tenant.public_dict() for tenant in services.registry.list()]
    return {"tenants": entries, "total": len(entries)}


def create_mcp_server(services: BridgeServices) -> FastMCP:
    """Create the MCP server with the search, discovery and health tools."""

    mcp = FastMCP(
        name="qmd-bridge",
        instructions=(
            "Tenant-scoped qmd search. Pass your tenant token to qmd_search (keyword), "
            "qmd_vsearch (vector) or qmd_query (hybrid with reranking)."
        ),
        mask_error_details=True,
    )
    register_tools(mcp, services)
    return mcp


def register_tools(mcp: FastMCP, services: BridgeServices) -> None:
    """Attach the qmd tools to ``mcp``."""

    @mcp.tool(name="qmd_search", annotations={"title": "QMD Search", **_READ_ONLY})
    async def qmd_search(token: TokenArg, query: QueryArg) -> dict[str, Any]:
        """Keyword search in the knowledge base of the tenant that owns ``token``.

        Returns {"data": <qmd stdout>, "execution_time": <ms>} or {"error": {"code", "message"}}.
        """
        return await run_qmd_tool(services, "search", token, query)

    @mcp.tool(name="qmd_vsearch", annotations={"title": "QMD Vector Search", **_READ_ONLY})
    async def qmd_vsearch(token: TokenArg, query: QueryArg) -> dict[str, Any]:
        """Semantic vector search in the tenant's knowledge base."""
        return await run_qmd_tool(services, "vsearch", token, query)

    @mcp.tool(name="qmd_query", annotations={"title": "QMD Hybrid Query", **_READ_ONLY})
    async def qmd_query(token: TokenArg, query: QueryArg) -> dict[str, Any]:
        """Hybrid search (keyword + vector + reranking) in the tenant's knowledge base."""
        return await run_qmd_tool(services, "query", token, query)

    @mcp.tool(name="qmd_list_tenants", annotations={"title": "List QMD Tenants", **_READ_ONLY})
    async def qmd_list_tenants() -> dict[str, Any]:
        """List configured tenants (label, display name, collection, path, creation date).

        Tokens are never included.
        """
        return list_public_tenants(services)

    @mcp.tool(name="qmd_health", annotations={"title": "QMD Bridge Health Check", **_READ_ONLY})
    async def qmd_health() -> dict[str, Any]:
        """Server version, uptime in seconds and the number of active qmd executions."""
        return services.health()
