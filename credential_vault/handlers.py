"""HTTP surface of the credential vault (aiohttp).

Handlers only translate HTTP to vault calls: read the Authorization header,
the client IP and the validated body, then return JSON. Errors are mapped
to status codes by ``error_middleware``.
"""
import logging
from typing import Any, Awaitable, Callable

import orjson
from aiohttp import web

from .exceptions import RateLimitError, ValidationError, VaultError
from .models import (
    OwnedCredentialRequest,
    ReadCredentialRequest,
    RevokeCredentialRequest,
    RotateRequest,
    SubmitCredentialRequest,
    parse_request,
)
from .ratelimit import client_ip
from .vault.credential_vault import CredentialVault

logger = logging.getLogger("credential_vault.http")

VAULT_KEY = web.AppKey("credential_vault", CredentialVault)

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def json_response(data: Any, status: int = 200, sensitive: bool = False, **kwargs) -> web.Response:
    headers = dict(kwargs.pop("headers", None) or {})
    if sensitive:
        headers.update(_NO_STORE)
    return web.json_response(
        data, status=status, dumps=_dumps, headers=headers, **kwargs
    )


def error_response(err: VaultError) -> web.Response:
    body: dict[str, Any] = {"error": err.public}
    headers = {}
    if isinstance(err, ValidationError) and err.details.get("fields"):
        body["fields"] = err.details["fields"]
    if isinstance(err, RateLimitError):
        body["retry_after_seconds"] = err.retry_after
        headers["Retry-After"] = str(err.retry_after)
    return json_response(body, status=err.status, headers=headers)


@web.middleware
async def error_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    try:
        return await handler(request)
    except VaultError as err:
        if err.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, err)
        else:
            logger.info(
                "%s %s rejected (%d): %s",
                request.method, request.path, err.status, err.message,
            )
        return error_response(err)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("Unhandled error in %s %s", request.method, request.path)
        return json_response({"error": "Internal server error"}, status=500)


async def _body(request: web.Request) -> bytes:
    data = await request.read()
    if not data:
        raise ValidationError("Request body is required")
    return data


def _context(request: web.Request) -> tuple[CredentialVault, str, str]:
    return (
        request.app[VAULT_KEY],
        request.headers.get("Authorization"),
        client_ip(request.headers, request.remote),
    )


class CredentialHandler:
    """Route handlers; one method per vault operation."""

    async def submit(self, request: web.Request) -> web.Response:
        vault, authorization, ip = _context(request)
        body = parse_request(SubmitCredentialRequest, await _body(request))
        result = await vault.submit(authorization, body, ip=ip)
        return json_response(
            {
                "success": True,
                "credential": result,
                "message": "Credentials encrypted and stored securely",
            }
        )

    async def read(self, request: web.Request) -> web.Response:
        vault, authorization, ip = _context(request)
        body = parse_request(ReadCredentialRequest, await _body(request))
        result = await vault.read(authorization, body, ip=ip)
        return json_response(result, sensitive=True)

    async def read_owned(self, request: web.Request) -> web.Response:
        vault, authorization, ip = _context(request)
        body = parse_request(OwnedCredentialRequest, await _body(request))
        result = await vault.read_owned(authorization, body, ip=ip)
        return json_response(result, sensitive=True)

    async def list(self, request: web.Request) -> web.Response:
        vault, authorization, ip = _context(request)
        result = await vault.list_credentials(
            authorization, request.query.get("owner_ref"), ip=ip,
        )
        return json_response(result)

    async def revoke(self, request: web.Request) -> web.Response:
        vault, authorization, ip = _context(request)
        body = parse_request(RevokeCredentialRequest, await _body(request))
        result = await vault.revoke(authorization, body, ip=ip)
        return json_response(
            {
                "success": True,
                "credential": result,
                "message": "Credential revoked successfully",
            }
        )

    async def rotate(self, request: web.Request) -> web.Response:
        vault, authorization, ip = _context(request)
        body = parse_request(RotateRequest, await _body(request))
        result = await vault.rotate(authorization, body, ip=ip)
        return json_response(result)

    async def runtime(self, request: web.Request) -> web.Response:
        vault, authorization, ip = _context(request)
        result = await vault.runtime(
            authorization,
            request.query.get("owner_ref"),
            request.query.get("credential_kind"),
            ip=ip,
        )
        return json_response(result, sensitive=True)


def setup_routes(app: web.Application) -> None:
    handler = CredentialHandler()
    app.router.add_post("/credentials", handler.submit)
    app.router.add_get("/credentials", handler.list)
    app.router.add_post("/credentials/read", handler.read)
    app.router.add_post("/credentials/owned", handler.read_owned)
    app.router.add_post("/credentials/revoke", handler.revoke)
    app.router.add_post("/credentials/rotate", handler.rotate)
    app.router.add_get("/runtime/credentials", handler.runtime)
