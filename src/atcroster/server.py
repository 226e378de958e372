"""ATC roster HTTP API.

Starlette application over the facility and controller operations.
Controllers authenticate with a Bearer access token; facility
integrations may pass their service key as the ``apikey`` query
parameter on roster and transfer listings.

Run locally::

    uv run atcroster-server

Or with uvicorn::

    uv run uvicorn atcroster.server:app --host 0.0.0.0 --port 8000
"""

import logging
import os

import jwt
from dotenv import load_dotenv
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from atcroster.api import facilities, users
from atcroster.auth import Principal, TokenValidator
from atcroster.core.config import get_roster_config
from atcroster.core.results import Outcome

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Logging: module-level so it runs on import (uvicorn reimports for the app)
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
# Silence Azure SDK HTTP-level noise (request/response headers)
logging.getLogger("azure.core.pipeline.policies.http_logging_policy").setLevel(logging.WARNING)
logging.getLogger("azure.cosmos._cosmos_http_logging_policy").setLevel(logging.WARNING)
logging.getLogger("azure.identity").setLevel(logging.WARNING)

load_dotenv()


class AuthError(Exception):
    """The request carried credentials that could not be accepted."""


_validator: TokenValidator | None = None


def _get_validator() -> TokenValidator:
    global _validator
    if _validator is None:
        config = get_roster_config()
        _validator = TokenValidator(
            config.jwt_secret, issuer=config.jwt_issuer, audience=config.jwt_audience
        )
    return _validator


def reset_validator() -> None:
    """Forget the cached token validator (after config changes)."""
    global _validator
    _validator = None


def get_principal(request: Request) -> Principal | None:
    """Resolve the acting principal from the Authorization header.

    Returns None for anonymous requests.

    Raises:
        AuthError: If a token was presented but is not valid
    """
    header = request.headers.get("authorization", "")
    if not header:
        return None

    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Expected a Bearer token")

    try:
        return _get_validator().validate_token(token.strip())
    except ValueError:
        logger.error("Bearer token presented but ROSTER_JWT_SECRET is not set")
        raise AuthError("Authentication is not configured") from None
    except jwt.InvalidTokenError as e:
        logger.info("Rejected access token: %s", e)
        raise AuthError("Invalid or expired token") from None


async def _read_body(request: Request) -> dict:
    """Parse a JSON object body. An empty body reads as ``{}``.

    Raises:
        ValueError: If the body is not a JSON object
    """
    raw = await request.body()
    if not raw.strip():
        return {}
    body = await request.json()
    if not isinstance(body, dict):
        raise ValueError("Expected a JSON object")
    return body


def _respond(outcome: Outcome) -> JSONResponse:
    return JSONResponse(outcome.to_response(), status_code=outcome.status_code)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"status": "error", "msg": message}, status_code=status_code)


def _unauthorized(e: AuthError) -> JSONResponse:
    return _error(str(e), 401)


def _bad_body() -> JSONResponse:
    return _error("Malformed request: invalid JSON body", 400)


# ---------------------------------------------------------------------------
# Facility routes
# ---------------------------------------------------------------------------


async def list_facilities(request: Request) -> JSONResponse:
    return _respond(await facilities.list_facilities())


async def get_facility(request: Request) -> JSONResponse:
    return _respond(await facilities.get_facility(request.path_params["facility"]))


async def update_facility(request: Request) -> JSONResponse:
    """Update facility URLs. Body: ``url``, ``uls_return``, ``uls_dev_return``."""
    try:
        principal = get_principal(request)
    except AuthError as e:
        return _unauthorized(e)
    try:
        body = await _read_body(request)
    except ValueError:
        return _bad_body()

    fields = {}
    for name in ("url", "uls_return", "uls_dev_return"):
        value = body.get(name)
        if value is not None and not isinstance(value, str):
            return _error(f"Malformed request: {name} must be a string", 400)
        fields[name] = value

    return _respond(
        await facilities.update_facility(principal, request.path_params["facility"], **fields)
    )


async def rotate_credentials(request: Request) -> JSONResponse:
    """Generate new integration credentials. Body: ``{"kinds": [...]}``."""
    try:
        principal = get_principal(request)
    except AuthError as e:
        return _unauthorized(e)
    try:
        body = await _read_body(request)
    except ValueError:
        return _bad_body()

    kinds = body.get("kinds")
    if not isinstance(kinds, list) or not all(isinstance(k, str) for k in kinds):
        return _error("Malformed request: kinds must be a list of strings", 400)

    return _respond(
        await facilities.rotate_credentials(principal, request.path_params["facility"], kinds)
    )


async def get_roster(request: Request) -> JSONResponse:
    try:
        principal = get_principal(request)
    except AuthError as e:
        return _unauthorized(e)
    return _respond(
        await facilities.get_roster(
            principal,
            request.path_params["facility"],
            api_key=request.query_params.get("apikey"),
        )
    )


async def remove_from_roster(request: Request) -> JSONResponse:
    """Remove a controller from the roster. Reason in the body or ``?reason=``."""
    try:
        principal = get_principal(request)
    except AuthError as e:
        return _unauthorized(e)
    try:
        body = await _read_body(request)
    except ValueError:
        return _bad_body()

    reason = body.get("reason") or request.query_params.get("reason", "")
    return _respond(
        await facilities.remove_from_roster(
            principal, request.path_params["facility"], request.path_params["cid"], str(reason)
        )
    )


async def list_pending_transfers(request: Request) -> JSONResponse:
    try:
        principal = get_principal(request)
    except AuthError as e:
        return _unauthorized(e)
    return _respond(
        await facilities.list_pending_transfers(
            principal,
            request.path_params["facility"],
            api_key=request.query_params.get("apikey"),
        )
    )


async def resolve_transfer(request: Request) -> JSONResponse:
    """Accept or reject a transfer. Body: ``action`` and, to reject, ``reason``."""
    try:
        principal = get_principal(request)
    except AuthError as e:
        return _unauthorized(e)
    try:
        body = await _read_body(request)
    except ValueError:
        return _bad_body()

    return _respond(
        await facilities.resolve_transfer(
            principal,
            request.path_params["facility"],
            request.path_params["transfer_id"],
            str(body.get("action") or ""),
            str(body.get("reason") or ""),
        )
    )


# ---------------------------------------------------------------------------
# Controller routes
# ---------------------------------------------------------------------------


async def request_transfer(request: Request) -> JSONResponse:
    """Request a transfer. Body: ``facility`` and ``reason``."""
    try:
        principal = get_principal(request)
    except AuthError as e:
        return _unauthorized(e)
    try:
        body = await _read_body(request)
    except ValueError:
        return _bad_body()

    return _respond(
        await users.request_transfer(
            principal,
            request.path_params["cid"],
            str(body.get("facility") or ""),
            str(body.get("reason") or ""),
        )
    )


async def cancel_transfer(request: Request) -> JSONResponse:
    try:
        principal = get_principal(request)
    except AuthError as e:
        return _unauthorized(e)
    try:
        body = await _read_body(request)
    except ValueError:
        return _bad_body()

    reason = body.get("reason") or request.query_params.get("reason", "")
    return _respond(
        await users.cancel_transfer(
            principal,
            request.path_params["transfer_id"],
            str(reason),
            cid=request.path_params["cid"],
        )
    )


async def transfer_checklist(request: Request) -> JSONResponse:
    try:
        principal = get_principal(request)
    except AuthError as e:
        return _unauthorized(e)
    return _respond(await users.get_transfer_checklist(principal, request.path_params["cid"]))


async def transfer_history(request: Request) -> JSONResponse:
    return _respond(await users.get_transfer_history(request.path_params["cid"]))


async def set_transfer_override(request: Request) -> JSONResponse:
    """Set or clear the transfer override. Body: ``{"enabled": bool}``."""
    try:
        principal = get_principal(request)
    except AuthError as e:
        return _unauthorized(e)
    try:
        body = await _read_body(request)
    except ValueError:
        return _bad_body()

    enabled = body.get("enabled")
    if not isinstance(enabled, bool):
        return _error("Malformed request: enabled must be true or false", 400)

    return _respond(
        await users.set_transfer_override(principal, request.path_params["cid"], enabled)
    )


async def promotion_eligibility(request: Request) -> JSONResponse:
    return _respond(await users.get_promotion_eligibility(request.path_params["cid"]))


async def health(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        {
            "status": "ok",
            "service": "atcroster",
            "version": os.getenv("BUILD_VERSION", "dev"),
        }
    )


# ---------------------------------------------------------------------------
# ASGI App assembly
# ---------------------------------------------------------------------------

routes = [
    Route("/health", health),
    Route("/facility", list_facilities),
    Route("/facility/{facility}", get_facility),
    Route("/facility/{facility}", update_facility, methods=["PUT"]),
    Route("/facility/{facility}/credentials", rotate_credentials, methods=["POST"]),
    Route("/facility/{facility}/roster", get_roster),
    Route("/facility/{facility}/roster/{cid:int}", remove_from_roster, methods=["DELETE"]),
    Route("/facility/{facility}/transfers", list_pending_transfers),
    Route(
        "/facility/{facility}/transfers/{transfer_id}",
        resolve_transfer,
        methods=["PUT"],
    ),
    Route("/user/{cid:int}/transfer", request_transfer, methods=["POST"]),
    Route("/user/{cid:int}/transfer/checklist", transfer_checklist),
    Route("/user/{cid:int}/transfer/history", transfer_history),
    Route("/user/{cid:int}/transfer/override", set_transfer_override, methods=["PUT"]),
    Route("/user/{cid:int}/transfer/{transfer_id}", cancel_transfer, methods=["DELETE"]),
    Route("/user/{cid:int}/promotion", promotion_eligibility),
]

app = Starlette(routes=routes)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the roster API with uvicorn."""
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info("Starting ATC roster API on %s:%d", host, port)
    uvicorn.run(
        "atcroster.server:app",
        host=host,
        port=port,
        log_level="info",
    )
