"""FastAPI application for the campaign redirection relay.

Endpoints:
    *    /cid/{cid}         -- Resolve a campaign target and forward to it
    GET  /__heartbeat__     -- Dockerflow health check
    GET  /__lbheartbeat__   -- Load balancer liveness check
    GET  /__version__       -- Dockerflow version.json
    GET  /test              -- Echo endpoint (dev environments only)
"""

import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse

from topsites import __version__
from topsites.config.settings import Settings
from topsites.core.builder import TargetURLBuilder
from topsites.core.campaign import CampaignRegistry, default_campaigns_path
from topsites.core.errors import ProxyError
from topsites.core.rules import RoutingRules
from topsites.proxy.forwarder import Forwarder, TLSOptions
from topsites.utils.helpers import load_config_file, prune_user_agent

logger = logging.getLogger(__name__)

FORWARD_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def error_body(msg: str) -> dict:
    return {"status": "error", "details": {"msg": msg}}


def create_app(
    registry: CampaignRegistry,
    builder: TargetURLBuilder,
    forwarder: Forwarder,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create the FastAPI relay application.

    Args:
        registry: Campaigns served under /cid.
        builder: Target URL builder.
        forwarder: Forwarder for outbound requests.
        settings: Service settings (defaults to environment).

    Returns:
        Configured FastAPI application.
    """
    settings = settings or Settings()

    app = FastAPI(
        title="Top Sites Proxy",
        description="Campaign redirection relay",
        version=__version__,
    )

    # --- Errors ---

    async def handle_proxy_error(request: Request, exc: ProxyError):
        msg = str(exc)
        logger.error(msg)
        return JSONResponse(status_code=exc.status_code, content=error_body(msg))

    app.add_exception_handler(ProxyError, handle_proxy_error)

    # --- Dockerflow ---

    @app.get("/__heartbeat__")
    async def heartbeat():
        if settings.get_version_path().is_file():
            return {"status": "ok", "checks": {"version_file_exists": "ok"}, "details": {}}
        return JSONResponse(
            status_code=500,
            content={"status": "error", "checks": {"version_file_exists": "error"}, "details": {}},
        )

    @app.get("/__lbheartbeat__", response_class=PlainTextResponse)
    async def lbheartbeat():
        return "OK"

    @app.get("/__version__")
    async def version():
        path = settings.get_version_path()
        if not path.is_file():
            return PlainTextResponse("version data not found", status_code=404)
        return FileResponse(path, media_type="application/json")

    # --- Development echo target ---

    if settings.is_dev():
        @app.get("/test")
        async def echo(request: Request):
            path = request.url.path
            if request.url.query:
                path = f"{path}?{request.url.query}"
            user_agent = request.headers.get("user-agent", "")
            return PlainTextResponse(f"TEST: {path}\n{user_agent}", status_code=301)

    # --- Campaign forwarding ---

    @app.api_route("/cid/{cid}", methods=FORWARD_METHODS)
    async def forward_campaign(cid: str, request: Request):
        campaign = registry.lookup(cid, request.method)
        target = builder.resolve(
            request.headers, request.query_params.multi_items(), campaign
        )
        logger.info("forwarding %s to %s", campaign.id, target.url)

        return await forwarder.forward(
            request,
            target.url,
            # We omit the platform data from the user-agent string.
            headers={"user-agent": prune_user_agent(request.headers.get("user-agent"))},
        )

    return app


def load_campaign_config(settings: Settings) -> dict:
    """Read the campaign file named by ``settings``.

    ``${PORT}`` falls back to the configured port so the bundled dev campaign
    points at this server.
    """
    environ = dict(os.environ)
    environ.setdefault("PORT", str(settings.port))
    return load_config_file(settings.campaigns_file or default_campaigns_path(), environ)


def create_default_app(settings: Optional[Settings] = None) -> FastAPI:
    """Wire registry, builder and forwarder from settings."""
    settings = settings or Settings()
    config = load_campaign_config(settings)

    tls = TLSOptions(
        cert=settings.tls_cert,
        key=settings.tls_key,
        passphrase=settings.tls_passphrase,
        ca=settings.tls_ca,
        ciphers=settings.tls_ciphers,
        secure_protocol=settings.tls_secure_protocol,
    )
    return create_app(
        registry=CampaignRegistry.from_config(config),
        builder=TargetURLBuilder(rules=RoutingRules.from_config(config)),
        forwarder=Forwarder(
            timeout=settings.proxy_timeout,
            tls=tls,
            forward_headers=settings.forward_headers,
        ),
        settings=settings,
    )
