"""Health and metrics endpoint for container healthchecks.

Raw asyncio.start_server; two routes:

    GET /health   200 when PostgreSQL answers SELECT 1, 503 otherwise
    GET /metrics  in-memory counters only, never touches the database
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
    405: "HTTP/1.1 405 Method Not Allowed",
    503: "HTTP/1.1 503 Service Unavailable",
}
DB_CHECK_TIMEOUT_SECONDS = 2


async def check_db(db_url: str) -> str:
    """SELECT 1 with a short timeout. Returns 'ok' or 'error'."""
    try:
        async with asyncio.timeout(DB_CHECK_TIMEOUT_SECONDS):
            async with await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn:
                await conn.execute("SELECT 1")
        return "ok"
    except (OSError, TimeoutError, psycopg.Error):
        logger.warning("Health check could not reach PostgreSQL", exc_info=True)
        return "error"


def _response(status: int, payload: dict) -> bytes:
    body = json.dumps(payload, default=str)
    return (
        f"{_STATUS_LINES[status]}\r\nContent-Type: application/json\r\n"
        f"Content-Length: {len(body.encode())}\r\nConnection: close\r\n\r\n{body}"
    ).encode()


async def route(method: str, path: str, db_url: str, pipeline_version: int) -> bytes:
    if method != "GET":
        return _response(405, {"error": "method_not_allowed"})
    if path == "/metrics":
        return _response(200, get_metrics())
    if path == "/health":
        db_status = await check_db(db_url)
        metrics = get_metrics()
        status = "ok" if db_status == "ok" else "degraded"
        return _response(
            200 if status == "ok" else 503,
            {
                "status": status,
                "db": db_status,
                "pipeline_version": pipeline_version,
                "uptime_seconds": metrics["uptime_seconds"],
                "metrics": metrics,
            },
        )
    return _response(404, {"error": "not_found"})


async def _handle_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    db_url: str,
    pipeline_version: int,
) -> None:
    try:
        request_line = await asyncio.wait_for(reader.readline(), timeout=5)
        # "GET /health HTTP/1.1\r\n"
        parts = request_line.decode("utf-8", errors="replace").strip().split()
        method = parts[0] if parts else "GET"
        path = parts[1].split("?", 1)[0] if len(parts) >= 2 else "/"
        writer.write(await route(method, path, db_url, pipeline_version))
        await writer.drain()
    except (OSError, asyncio.TimeoutError):
        logger.debug("Health endpoint request error", exc_info=True)
    finally:
        writer.close()
        await writer.wait_closed()


async def start_health_server(port: int, db_url: str, pipeline_version: int = 1) -> asyncio.Server:
    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _handle_request(reader, writer, db_url, pipeline_version)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    logger.info("Health endpoint listening on port %d", port)
    return server
