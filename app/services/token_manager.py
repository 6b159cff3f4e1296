import time

import httpx
from fastapi import HTTPException

from app.config import settings
from app.services.dataverse import DataverseConnection

TOKEN_EXPIRY_MARGIN_SECONDS = 300

_cached_token: tuple[str, float] | None = None


def _token_url() -> str:
    authority = settings.dataverse_authority_url.rstrip("/")
    return f"{authority}/{settings.dataverse_tenant_id}/oauth2/v2.0/token"


def _raise_auth_error(status_code: int | None, payload: dict | str | None) -> None:
    raise HTTPException(
        status_code=502,
        detail={
            "code": "dataverse_auth_failed",
            "message": "Could not acquire a Dataverse access token",
            "status_code": status_code,
            "auth_error": payload,
        },
    )


def _parse_auth_error(response: httpx.Response) -> dict | str | None:
    try:
        return response.json()
    except ValueError:
        body = response.text.strip()
        return body or None


def clear_token_cache() -> None:
    global _cached_token
    _cached_token = None


async def get_access_token() -> str:
    global _cached_token
    if _cached_token is not None:
        token, expires_at = _cached_token
        if time.monotonic() < expires_at:
            return token

    if not (
        settings.dataverse_url
        and settings.dataverse_tenant_id
        and settings.dataverse_client_id
        and settings.dataverse_client_secret
    ):
        raise HTTPException(
            status_code=500,
            detail={
                "code": "dataverse_not_configured",
                "message": "DATAVERSE_URL, DATAVERSE_TENANT_ID, DATAVERSE_CLIENT_ID and "
                "DATAVERSE_CLIENT_SECRET must be configured",
            },
        )

    form = {
        "grant_type": "client_credentials",
        "client_id": settings.dataverse_client_id,
        "client_secret": settings.dataverse_client_secret,
        "scope": f"{settings.dataverse_url.rstrip('/')}/.default",
    }

    try:
        async with httpx.AsyncClient(timeout=20.0) as client:
            response = await client.post(_token_url(), data=form)
    except httpx.HTTPError as exc:
        _raise_auth_error(None, str(exc))

    if response.status_code >= 400:
        _raise_auth_error(response.status_code, _parse_auth_error(response))

    body = response.json()
    access_token = body.get("access_token") if isinstance(body, dict) else None
    if not access_token:
        _raise_auth_error(response.status_code, "Token response missing access_token")

    expires_in = int(body.get("expires_in") or 3600)
    _cached_token = (
        access_token,
        time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0),
    )
    return access_token


async def get_connection() -> DataverseConnection:
    access_token = await get_access_token()
    return DataverseConnection(
        instance_url=settings.dataverse_url,
        access_token=access_token,
    )
