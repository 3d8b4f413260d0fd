"""``kyscan-mcp``: serve the kyverno toolpacks over HTTP and/or STDIO."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from pathlib import Path

import uvicorn

from apps.mcp_server.http import create_app
from apps.mcp_server.service.mcp_service import McpService, RequestContext
from apps.mcp_server.stdio import JsonRpcStdioServer

_PACKAGE_DIR = Path(__file__).resolve().parent
_DEFAULT_TOOLPACKS = _PACKAGE_DIR / "toolpacks"
_DEFAULT_SCHEMAS = _PACKAGE_DIR / "schemas" / "mcp"
_SMOKE_TOOL = "mcp.tool:kyverno.bundles.list"

_LOG_LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}

LOGGER = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the kyscan MCP server")

    transport = parser.add_argument_group("transports")
    transport.add_argument("--http", action="store_true", help="Enable HTTP transport (default)")
    transport.add_argument("--stdio", action="store_true", help="Enable STDIO JSON-RPC transport")
    transport.add_argument("--host", default="127.0.0.1", help="HTTP host")
    transport.add_argument("--port", type=int, default=3333, help="HTTP port")
    transport.add_argument("--max-connections", type=int, default=256, help="Maximum concurrent HTTP connections")
    transport.add_argument("--shutdown-grace", type=int, default=10, help="Grace period in seconds for shutdown")
    transport.add_argument("--openapi", action="store_true", help="Expose /openapi.json and /docs")

    tools = parser.add_argument_group("tools")
    tools.add_argument(
        "--kubeconfig",
        default=None,
        help="Kubeconfig used by every tool (exported as KYSCAN_KUBECONFIG)",
    )
    tools.add_argument(
        "--toolpacks-dir",
        default=str(_DEFAULT_TOOLPACKS),
        help="Directory containing *.tool.yaml definitions",
    )

    guardrails = parser.add_argument_group("guardrails", "Server-wide caps; a tool's own limits may be lower")
    guardrails.add_argument("--max-input-bytes", type=int, default=None)
    guardrails.add_argument("--max-output-bytes", type=int, default=None)
    guardrails.add_argument("--timeout-ms", type=int, default=None)

    logs = parser.add_argument_group("logging")
    logs.add_argument("--log-level", choices=list(_LOG_LEVELS), default="INFO", help="Logging level")
    logs.add_argument("--log-dir", default="runs", help="Directory for structured request logs")
    logs.add_argument(
        "--deterministic-ids",
        action="store_true",
        help="Use deterministic UUID5 request identifiers and a stable log file name",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run discovery and the bundle listing once, then exit",
    )
    return parser.parse_args(argv)


def build_service(args: argparse.Namespace) -> McpService:
    return McpService.create(
        toolpacks_dir=Path(args.toolpacks_dir),
        schema_dir=_DEFAULT_SCHEMAS,
        log_dir=Path(args.log_dir),
        deterministic_logs=args.deterministic_ids,
        max_input_bytes=args.max_input_bytes,
        max_output_bytes=args.max_output_bytes,
        timeout_ms=args.timeout_ms,
    )


def _run_once(service: McpService, *, deterministic_ids: bool) -> bool:
    # Discovery plus one cluster-free tool; a smoke check for packaging.
    service.discover(
        RequestContext(transport="http", route="discover", method="mcp.discover", deterministic_ids=deterministic_ids)
    )
    envelope = service.invoke_tool(
        tool_id=_SMOKE_TOOL,
        arguments={},
        context=RequestContext(
            transport="http", route="tool", method="mcp.tool.invoke", deterministic_ids=deterministic_ids
        ),
    )
    service.log_manager.writer.flush()
    LOGGER.info("Smoke run finished (ok=%s), log at %s", envelope.ok, service.log_manager.path)
    return envelope.ok


async def _serve_stdin(server: JsonRpcStdioServer) -> None:
    while line := await asyncio.to_thread(sys.stdin.readline):
        if not line.strip():
            continue
        response = await server.handle_line(line)
        if response is not None:
            await asyncio.to_thread(sys.stdout.write, json.dumps(response) + "\n")
            await asyncio.to_thread(sys.stdout.flush)


def _http_server(service: McpService, args: argparse.Namespace) -> uvicorn.Server:
    app = create_app(service, enable_openapi=args.openapi, deterministic_ids=args.deterministic_ids)
    return uvicorn.Server(
        uvicorn.Config(
            app,
            host=args.host,
            port=args.port,
            log_level=_LOG_LEVELS[args.log_level],
            access_log=False,
            limit_concurrency=args.max_connections,
            timeout_graceful_shutdown=args.shutdown_grace,
        )
    )


async def _serve(service: McpService, args: argparse.Namespace) -> None:
    use_http = args.http or not args.stdio
    http_server = _http_server(service, args) if use_http else None
    if http_server is not None and not args.stdio:
        await http_server.serve()
        return

    tasks = [asyncio.create_task(_serve_stdin(JsonRpcStdioServer(service, deterministic_ids=args.deterministic_ids)))]
    if http_server is not None:
        tasks.append(asyncio.create_task(http_server.serve()))
    try:
        # STDIO EOF or an HTTP crash ends the process.
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if http_server is not None:
            http_server.should_exit = True
        for task in tasks:
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=_LOG_LEVELS[args.log_level])
    if args.kubeconfig:
        os.environ["KYSCAN_KUBECONFIG"] = args.kubeconfig

    service = build_service(args)
    if args.once:
        return 0 if _run_once(service, deterministic_ids=args.deterministic_ids) else 1
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_serve(service, args))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
