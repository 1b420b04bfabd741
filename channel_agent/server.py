"""
Administrative HTTP surface: liveness plus a transaction-sponsorship relay.

Independent of the polling core. The relay forwards a front-end's sponsorship
requests to the sponsorship provider with the server-held private API key,
so that key never reaches a browser.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
from aiohttp import web

from channel_agent.types import CycleReport

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, zklogin-jwt",
}

ReportFn = Callable[[], CycleReport | None]


@web.middleware
async def _cors_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(status=200, headers=CORS_HEADERS)
    try:
        response = await handler(request)
    except web.HTTPNotFound:
        response = web.json_response({"error": "Not Found"}, status=404)
    except web.HTTPMethodNotAllowed:
        response = web.json_response({"error": "Method not allowed"}, status=405)
    except web.HTTPException as exc:
        exc.headers.update(CORS_HEADERS)
        raise
    response.headers.update(CORS_HEADERS)
    return response


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON"}), content_type="application/json"
        ) from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON"}), content_type="application/json"
        )
    return body


class AgentHttpServer:
    """Health check and sponsorship relay endpoints."""

    def __init__(
        self,
        sponsor_api_key: str,
        sponsor_api_base: str,
        last_report: ReportFn | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._sponsor_api_key = sponsor_api_key
        self._sponsor_api_base = sponsor_api_base.rstrip("/")
        self._last_report = last_report
        self._http = http_client or httpx.AsyncClient(timeout=30.0)
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[_cors_middleware])
        app.router.add_get("/health", self._handle_health)
        app.router.add_post("/api/sponsor-transaction", self._handle_sponsor)
        app.router.add_post("/api/sponsor-transaction/{digest}", self._handle_sponsor_finalize)
        return app

    async def start(self, host: str, port: int) -> None:
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()
        logger.info("HTTP server running on %s:%d (health: /health)", host, port)

    async def stop(self) -> None:
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        await self._http.aclose()
        logger.info("HTTP server closed")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_health(self, request: web.Request) -> web.Response:
        report = self._last_report() if self._last_report else None
        return web.json_response({
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "lastCycle": report.model_dump() if report else None,
        })

    async def _handle_sponsor(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        kind_bytes = body.get("transactionBlockKindBytes")
        network = body.get("network")
        jwt = body.get("zkLoginJwt")
        if not kind_bytes or not network or not jwt:
            return web.json_response(
                {"error": "Missing required fields: transactionBlockKindBytes, network, zkLoginJwt"},
                status=400,
            )
        return await self._relay(
            "/transaction-blocks/sponsor",
            jwt,
            {"network": network, "transactionBlockKindBytes": kind_bytes},
            "Failed to sponsor transaction",
        )

    async def _handle_sponsor_finalize(self, request: web.Request) -> web.Response:
        digest = request.match_info["digest"]
        body = await _read_json(request)
        signature = body.get("signature")
        jwt = body.get("zkLoginJwt")
        if not signature or not jwt:
            return web.json_response(
                {"error": "Missing required fields: signature, zkLoginJwt"},
                status=400,
            )
        return await self._relay(
            f"/transaction-blocks/sponsor/{digest}",
            jwt,
            {"signature": signature},
            "Failed to finalize sponsored transaction",
        )

    async def _relay(
        self,
        path: str,
        jwt: str,
        payload: dict[str, Any],
        failure_message: str,
    ) -> web.Response:
        try:
            upstream = await self._http.post(
                f"{self._sponsor_api_base}{path}",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self._sponsor_api_key}",
                    "zklogin-jwt": jwt,
                },
            )
        except httpx.HTTPError as exc:
            logger.error("Sponsorship relay to %s failed: %s", path, exc)
            return web.json_response({"error": "Sponsorship service unavailable"}, status=502)

        if upstream.status_code >= 400:
            logger.error("Sponsorship API error (%d) for %s", upstream.status_code, path)
            return web.json_response(
                {"error": failure_message, "details": upstream.text},
                status=upstream.status_code,
            )
        try:
            data = upstream.json()
        except ValueError:
            logger.error("Sponsorship API returned a non-JSON body (%d) for %s", upstream.status_code, path)
            return web.json_response(
                {"error": failure_message, "details": "Invalid upstream response"},
                status=502,
            )
        return web.json_response(data)
