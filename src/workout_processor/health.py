"""Async HTTP health endpoint for container healthchecks.

Serves ``GET /health`` with the database status and the pipeline counters.
Built on asyncio.start_server, so it needs no web framework.
"""

import asyncio
import json
import logging

import psycopg

from .metrics import get_metrics

logger = logging.getLogger(__name__)

_STATUS_LINES = {
    200: "HTTP/1.1 200 OK",
    404: "HTTP/1.1 404 Not Found",
    503: "HTTP/1.1 503 Service Unavailable",
}


async def check_database(db_url: str) -> str:
    """SELECT 1 with a 2s budget. Returns 'ok' or 'error'."""
    try:
        async with asyncio.timeout(2):
            async with await psycopg.AsyncConnection.connect(
                db_url, autocommit=True
            ) as conn:
                await conn.execute("SELECT 1")
        return "ok"
    except Exception:
        logger.debug("Health database check failed", exc_info=True)
        return "error"


def render_response(status: int, body: dict) -> bytes:
    payload = json.dumps(body)
    head = (
        f"{_STATUS_LINES[status]}\r\n"
        "Content-Type: application/json\r\n"
        f"Content-Length: {len(payload)}\r\n\r\n"
    )
    return (head + payload).encode()


async def health_body(db_url: str) -> tuple[int, dict]:
    db_status = await check_database(db_url)
    metrics = get_metrics()
    status = "ok" if db_status == "ok" else "degraded"
    body = {
        "status": status,
        "uptime_seconds": metrics["uptime_seconds"],
        "db": db_status,
        "metrics": metrics,
    }
    return (200 if status == "ok" else 503), body


async def _handle_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    db_url: str,
) -> None:
    try:
        request_line = await asyncio.wait_for(reader.readline(), timeout=5)
        # "GET /health HTTP/1.1\r\n"
        parts = request_line.decode("utf-8", errors="replace").strip().split()
        path = parts[1] if len(parts) >= 2 else "/"

        if path == "/health":
            status, body = await health_body(db_url)
        else:
            status, body = 404, {"error": "not_found"}

        writer.write(render_response(status, body))
        await writer.drain()
    except Exception:
        logger.debug("Health endpoint request error", exc_info=True)
    finally:
        writer.close()
        await writer.wait_closed()


async def start_health_server(port: int, db_url: str) -> asyncio.Server:
    """Start the health HTTP server. Returns the asyncio.Server for lifecycle management."""

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _handle_request(reader, writer, db_url)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    logger.info("Health endpoint listening on port %d", port)
    return server
