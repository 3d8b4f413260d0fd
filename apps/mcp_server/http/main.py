from __future__ import annotations

from fastapi import FastAPI

from apps.mcp_server.service.mcp_service import McpService

from .routes import build_router

__all__ = ["create_app"]


def create_app(
    service: McpService,
    *,
    enable_openapi: bool = False,
    deterministic_ids: bool = False,
) -> FastAPI:
    """FastAPI app serving discover, tool invocation and health for ``service``.

    The OpenAPI document and the docs UI are only mounted on request.
    """

    app = FastAPI(
        title="kyscan MCP Server",
        version=service.schema_version,
        docs_url="/docs" if enable_openapi else None,
        redoc_url=None,
        openapi_url="/openapi.json" if enable_openapi else None,
    )
    app.include_router(build_router(service, deterministic_ids=deterministic_ids))
    app.state.mcp_service = service
    return app
