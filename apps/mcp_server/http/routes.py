from __future__ import annotations

from functools import partial
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from apps.mcp_server.service.envelope import Envelope
from apps.mcp_server.service.errors import CanonicalError
from apps.mcp_server.service.mcp_service import McpService, RequestContext

__all__ = ["ToolInvocationPayload", "build_router", "envelope_response"]


class ToolInvocationPayload(BaseModel):
    """Body of ``POST /mcp/tool/{tool_id}``; FastAPI answers 422 when it does not parse."""

    arguments: dict[str, Any] = Field(default_factory=dict)


def envelope_response(envelope: Envelope) -> JSONResponse:
    status = 200 if envelope.error is None else CanonicalError.to_http_status(envelope.error.code)
    return JSONResponse(content=envelope.to_dict(), status_code=status)


def build_router(service: McpService, *, deterministic_ids: bool = False) -> APIRouter:
    router = APIRouter()
    context = partial(RequestContext, transport="http", deterministic_ids=deterministic_ids)

    @router.get("/mcp/discover")
    def discover() -> JSONResponse:
        return envelope_response(service.discover(context(route="discover", method="mcp.discover")))

    @router.post("/mcp/tool/{tool_id}")
    def invoke_tool(tool_id: str, payload: ToolInvocationPayload) -> JSONResponse:
        envelope = service.invoke_tool(
            tool_id=tool_id,
            arguments=payload.arguments,
            context=context(route="tool", method="mcp.tool.invoke"),
        )
        return envelope_response(envelope)

    @router.get("/healthz")
    def health() -> dict[str, Any]:
        return service.health(context(route="health", method="mcp.health"))

    return router
