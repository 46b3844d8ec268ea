"""Platform server with a control plane (tenant API) and an edge plane (cloaking)."""

from __future__ import annotations

import asyncio
import secrets
from typing import Any

import structlog
from aiohttp import web
from pydantic import BaseModel, ConfigDict, ValidationError

from cloakroute import __version__
from cloakroute.domains import (
    Domain,
    DomainConflictError,
    DomainNotFoundError,
    InvalidHostnameError,
    normalize_host,
)
from cloakroute.observability.metrics import generate_metrics, get_content_type
from cloakroute.routing import RequestInfo
from cloakroute.server.platform import Platform

logger = structlog.get_logger()

ACME_CHALLENGE_PREFIX = "/.well-known/acme-challenge/"


class RulesPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ua_block: str | None = None
    swap_destinations: bool = False


class DomainCreatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hostname: str
    white_destination: str | None = None
    black_destination: str | None = None
    rules: RulesPayload | None = None


class DomainUpdatePayload(BaseModel):
    """Tenant-editable fields. Status fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    hostname: str | None = None
    white_destination: str | None = None
    black_destination: str | None = None
    rules: RulesPayload | None = None


def _error(status: int, message: str, **extra: Any) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Map domain errors to JSON error responses."""
    try:
        return await handler(request)
    except DomainConflictError as e:
        return _error(409, str(e), hostname=e.hostname)
    except DomainNotFoundError as e:
        return _error(404, str(e))
    except ValidationError as e:
        return _error(
            400,
            "Invalid request body",
            details=e.errors(include_url=False, include_context=False),
        )
    except (InvalidHostnameError, ValueError) as e:
        return _error(400, str(e))


def _domain_json(domain: Domain) -> dict[str, Any]:
    return domain.to_dict()


class PlatformServer:
    """Runs the control and edge aiohttp applications."""

    def __init__(self, platform: Platform) -> None:
        self.platform = platform
        self.config = platform.config
        self._control_runner: web.AppRunner | None = None
        self._edge_runner: web.AppRunner | None = None

    def _check_api_auth(self, request: web.Request) -> web.Response | None:
        """Check the bearer token on tenant endpoints. Returns error response or None if OK."""
        token = self.config.server.api_token
        if not token:
            return None
        header = request.headers.get("Authorization", "")
        scheme, _, supplied = header.partition(" ")
        if scheme.lower() == "bearer" and secrets.compare_digest(supplied.strip(), token):
            return None
        return web.json_response(
            {"error": "Unauthorized"},
            status=401,
            headers={"WWW-Authenticate": 'Bearer realm="cloakroute"'},
        )

    # control plane

    def create_control_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_get("/health", self._handle_health_check)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/acme/http-token", self._handle_acme_token)
        app.router.add_get("/domains/resolve", self._handle_resolve)
        app.router.add_get("/domains/owner/{owner_id}", self._handle_list)
        app.router.add_post("/domains/{owner_id}", self._handle_create)
        app.router.add_get("/domains/{domain_id}/status", self._handle_status)
        app.router.add_post("/domains/{domain_id}/retry", self._handle_retry)
        app.router.add_get("/domains/{domain_id}", self._handle_get)
        app.router.add_put("/domains/{domain_id}", self._handle_update)
        app.router.add_delete("/domains/{domain_id}", self._handle_delete)
        return app

    async def _handle_health_check(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy", "version": __version__})

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint - requires the API token when configured."""
        if auth_error := self._check_api_auth(request):
            return auth_error
        return web.Response(body=generate_metrics(), headers={"Content-Type": get_content_type()})

    async def _handle_acme_token(self, request: web.Request) -> web.Response:
        host = normalize_host(request.query.get("host"))
        token = request.query.get("token", "")
        if not host or not token:
            return _error(400, "host and token are required")
        body = await self.platform.challenges.get(host, token)
        if body is None:
            return web.Response(status=404, text="Not Found")
        return web.Response(text=body, content_type="text/plain")

    async def _handle_resolve(self, request: web.Request) -> web.Response:
        if auth_error := self._check_api_auth(request):
            return auth_error
        host = request.query.get("host", "")
        if not normalize_host(host):
            return _error(400, "host is required")
        resolved = await self.platform.manager.resolve(host)
        if resolved is None:
            return _error(404, f"Domain {normalize_host(host)} is not managed")
        return web.json_response(resolved)

    async def _handle_list(self, request: web.Request) -> web.Response:
        if auth_error := self._check_api_auth(request):
            return auth_error
        domains = await self.platform.manager.list_domains(request.match_info["owner_id"])
        return web.json_response({"domains": [_domain_json(d) for d in domains]})

    async def _handle_create(self, request: web.Request) -> web.Response:
        if auth_error := self._check_api_auth(request):
            return auth_error
        payload = DomainCreatePayload.model_validate(await self._json_body(request))
        domain, report = await self.platform.manager.create_domain(
            payload.hostname,
            request.match_info["owner_id"],
            white_destination=payload.white_destination,
            black_destination=payload.black_destination,
            rules=payload.rules.model_dump() if payload.rules else None,
        )
        return web.json_response(
            {"domain": _domain_json(domain), "status": report.to_dict()}, status=201
        )

    async def _handle_get(self, request: web.Request) -> web.Response:
        if auth_error := self._check_api_auth(request):
            return auth_error
        domain = await self.platform.manager.get_domain(request.match_info["domain_id"])
        return web.json_response({"domain": _domain_json(domain)})

    async def _handle_update(self, request: web.Request) -> web.Response:
        if auth_error := self._check_api_auth(request):
            return auth_error
        payload = DomainUpdatePayload.model_validate(await self._json_body(request))
        fields = payload.model_dump(exclude_unset=True)
        domain, report = await self.platform.manager.update_domain(
            request.match_info["domain_id"], **fields
        )
        return web.json_response(
            {"domain": _domain_json(domain), "status": report.to_dict() if report else None}
        )

    async def _handle_delete(self, request: web.Request) -> web.Response:
        if auth_error := self._check_api_auth(request):
            return auth_error
        domain = await self.platform.manager.delete_domain(request.match_info["domain_id"])
        return web.json_response({"deleted": domain.id, "hostname": domain.hostname})

    async def _handle_status(self, request: web.Request) -> web.Response:
        if auth_error := self._check_api_auth(request):
            return auth_error
        report = await self.platform.manager.check_status(request.match_info["domain_id"])
        return web.json_response(report.to_dict())

    async def _handle_retry(self, request: web.Request) -> web.Response:
        if auth_error := self._check_api_auth(request):
            return auth_error
        report = await self.platform.manager.check_status(
            request.match_info["domain_id"], retry=True
        )
        return web.json_response(report.to_dict())

    async def _json_body(self, request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            data = await request.json()
        except ValueError as e:
            raise ValueError(f"Request body is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object")
        return data

    # edge plane

    def create_edge_app(self) -> web.Application:
        app = web.Application(middlewares=[self._cloaking_middleware])
        app.router.add_get(ACME_CHALLENGE_PREFIX + "{token}", self._handle_edge_challenge)
        app.router.add_get(self.config.edge.health_path, self._handle_edge_check)
        app.router.add_route("*", "/{path:.*}", self._handle_landing)
        return app

    @web.middleware
    async def _cloaking_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        """Redirect managed-domain visitors; everything else reaches the handler."""
        if request.path.startswith(ACME_CHALLENGE_PREFIX) or (
            request.path == self.config.edge.health_path
        ):
            return await handler(request)

        decision = await self.platform.cloaking.decide(
            RequestInfo(
                host=request.headers.get("Host"),
                forwarded_host=request.headers.get("X-Forwarded-Host"),
                forwarded_for=request.headers.get("X-Forwarded-For"),
                peer_ip=request.remote,
                user_agent=request.headers.get("User-Agent"),
                referer=request.headers.get("Referer"),
            )
        )
        if decision.is_redirect and decision.location:
            raise web.HTTPFound(decision.location)
        return await handler(request)

    async def _handle_edge_challenge(self, request: web.Request) -> web.Response:
        host = normalize_host(request.headers.get("X-Forwarded-Host") or request.host)
        body = await self.platform.challenges.get(host, request.match_info["token"])
        if body is None:
            return web.Response(status=404, text="Not Found")
        return web.Response(text=body, content_type="text/plain")

    async def _handle_edge_check(self, request: web.Request) -> web.Response:
        return web.Response(text="ok", content_type="text/plain")

    async def _handle_landing(self, request: web.Request) -> web.Response:
        return web.Response(text="OK", content_type="text/plain")

    # lifecycle

    def _parse_bind(self, bind: str) -> tuple[str, int]:
        """Parse bind address into host and port."""
        if ":" in bind:
            host, port = bind.rsplit(":", 1)
            return host, int(port)
        return "0.0.0.0", int(bind)

    async def start(self) -> None:
        """Start both planes and the reconciliation sweeper."""
        self._control_runner = web.AppRunner(self.create_control_app())
        self._edge_runner = web.AppRunner(self.create_edge_app())
        await self._control_runner.setup()
        await self._edge_runner.setup()

        control_host, control_port = self._parse_bind(self.config.server.control_bind)
        await web.TCPSite(self._control_runner, control_host, control_port).start()
        logger.info("Control plane started", host=control_host, port=control_port)

        edge_host, edge_port = self._parse_bind(self.config.server.edge_bind)
        await web.TCPSite(self._edge_runner, edge_host, edge_port).start()
        logger.info("Edge plane started", host=edge_host, port=edge_port)

        if self.config.reconcile.sweep_enabled:
            self.platform.sweeper.start()

        logger.info(
            "Platform server started",
            edge_origin=self.config.edge.edge_origin,
            provisioner=self.platform.provisioner.name,
        )

    async def stop(self) -> None:
        """Stop the server gracefully."""
        logger.info("Stopping platform server...")
        if self._edge_runner:
            await self._edge_runner.cleanup()
        if self._control_runner:
            await self._control_runner.cleanup()
        await self.platform.aclose()
        logger.info("Platform server stopped")

    async def serve_forever(self) -> None:
        """Start, then run until cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()
