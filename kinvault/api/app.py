"""
FastAPI application for the kinvault service.

A thin HTTP surface: every route hands a transport-neutral ``ApiRequest`` to
an endpoint built with ``create_handler``, which owns validation, access
control, error rendering and audit. Bearer tokens are verified here and
their claims passed on as trusted.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.responses import Response

from kinvault.api.handlers import audit, devices, profiles, shares, subscriptions, user, vaccine_links, vaccines
from kinvault.api.pipeline import ApiRequest, ApiResponse, ApiServices, AuthorizedRequest, Endpoint, create_handler
from kinvault.auth.jwt import claims_from_authorization
from kinvault.auth.policies import public
from kinvault.config import get_settings
from kinvault.core.observability import setup_logging
from kinvault.integrations.sentry import init_sentry
from kinvault.storage.local import create_local_storage

logger = logging.getLogger(__name__)


# =============================================================================
# Health
# =============================================================================


async def _health(req: AuthorizedRequest) -> ApiResponse:
    return ApiResponse.json({"status": "ok"})


health = create_handler(handler=_health, access=public())


# =============================================================================
# Routes
# =============================================================================


ROUTES: dict[str, dict[str, Endpoint]] = {
    "/healthz": {"GET": health},
    "/auth/complete-login": {"POST": devices.complete_login},
    "/devices": {"GET": devices.list_devices},
    "/devices/heartbeat": {"PUT": devices.heartbeat},
    "/devices/{device_id}": {"DELETE": devices.revoke_device},
    "/profiles": {
        "GET": profiles.list_profiles,
        "POST": profiles.create_profile,
    },
    "/profiles/{profile_id}": {
        "GET": profiles.get_profile,
        "PUT": profiles.update_profile,
        "DELETE": profiles.delete_profile,
    },
    "/profiles/{profile_id}/vaccines": {
        "GET": vaccines.list_vaccines,
        "POST": vaccines.create_vaccine,
    },
    "/profiles/{profile_id}/vaccines/{vaccine_id}": {
        "PUT": vaccines.update_vaccine,
        "DELETE": vaccines.delete_vaccine,
    },
    "/profiles/{profile_id}/vaccines/{vaccine_id}/share-link": {
        "POST": vaccine_links.create_vaccine_link,
        "DELETE": vaccine_links.revoke_vaccine_links,
    },
    "/public/vaccine/{token}": {"GET": vaccine_links.open_vaccine_link},
    "/profiles/{profile_id}/shares": {
        "GET": shares.list_profile_shares,
        "POST": shares.create_or_update_share,
    },
    "/profiles/{profile_id}/audit": {"GET": audit.list_profile_audit},
    "/shares/received": {"GET": shares.list_received_shares},
    "/shares/{share_id}/accept": {"POST": shares.accept_share},
    "/shares/{share_id}": {"DELETE": shares.delete_share},
    "/subscription": {
        "GET": subscriptions.get_subscription,
        "POST": subscriptions.start_subscription,
        "PATCH": subscriptions.update_subscription_status,
        "DELETE": subscriptions.cancel_subscription,
    },
    "/subscription/history": {"GET": subscriptions.subscription_history},
    "/user/overview": {"GET": user.overview},
}


async def to_api_request(request: Request) -> ApiRequest:
    """Translate a Starlette request into the pipeline's request type."""
    raw = await request.body()
    return ApiRequest(
        method=request.method,
        path=request.url.path,
        headers=dict(request.headers),
        body=raw.decode("utf-8", errors="replace") if raw else None,
        path_params=dict(request.path_params),
        query_params=dict(request.query_params),
        claims=claims_from_authorization(request.headers.get("authorization")),
    )


def to_response(response: ApiResponse) -> Response:
    return Response(
        content=response.body,
        status_code=response.status_code,
        headers=response.headers,
    )


def _make_view(methods: dict[str, Endpoint]):
    fallback = next(iter(methods.values()))

    async def view(request: Request) -> Response:
        # OPTIONS is answered by whichever endpoint serves the path
        endpoint = methods.get(request.method, fallback)
        api_request = await to_api_request(request)
        response = await endpoint(api_request, request.app.state.services)
        return to_response(response)

    return view


# =============================================================================
# App Setup
# =============================================================================


def create_app(services: ApiServices | None = None) -> FastAPI:
    """
    Build the application.

    With ``services`` given (tests), storage is used as-is; otherwise it is
    chosen at startup: DynamoDB/Cognito when AWS credentials are set, the
    in-memory stores otherwise.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_format)

        if init_sentry(settings):
            logger.info("Sentry error tracking enabled")

        if services is not None:
            app.state.services = services
        elif settings.use_aws:
            from kinvault.storage.dynamodb import create_aws_storage
            app.state.services = ApiServices(create_aws_storage(settings), settings)
        else:
            app.state.services = ApiServices(create_local_storage(), settings)

        logger.info(f"kinvault API starting in {settings.environment} mode")

        yield

        logger.info("kinvault API shutting down")

    app = FastAPI(
        title="kinvault API",
        description="Family records: profiles, vaccination history and sharing",
        version="0.1.0",
        lifespan=lifespan,
    )

    for path, methods in ROUTES.items():
        app.add_api_route(
            path,
            _make_view(methods),
            methods=[*methods, "OPTIONS"],
            name=path,
            include_in_schema=False,
        )

    return app


app = create_app()


# =============================================================================
# Run with: uvicorn kinvault.api.app:app --reload
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "kinvault.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
