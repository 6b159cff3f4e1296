import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMPONENT_TYPE_ENTITY = 1
COMPONENT_TYPE_OPTION_SET = 9

PUBLISHER_SELECT = "publisherid,uniquename,friendlyname,customizationprefix"
SOLUTION_SELECT = "solutionid,uniquename,friendlyname,_publisherid_value"
SOLUTION_PUBLISHER_EXPAND = "publisherid($select=publisherid,uniquename,customizationprefix)"

RETRYABLE_STATUS_CODES = {409, 429, 503}
RETRYABLE_KINDS = {"transient", "lock", "timeout"}
# The request may have been applied even though no response came back.
UNCERTAIN_KINDS = {"transient", "timeout"}
LOCK_MESSAGE_PATTERN = re.compile(
    r"customization|unexpected error|another user has changed|locked|timeout|timed out"
    r"|busy|try again",
    re.IGNORECASE,
)
ENTITY_ID_PATTERN = re.compile(r"\(([^)]+)\)\s*$")


class DataverseError(Exception):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str = "dataverse_request_failed",
        kind: str = "fatal",
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.kind = kind
        self.operation = operation

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def not_found(self) -> bool:
        return self.kind == "not_found"

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "kind": self.kind,
            "operation": self.operation,
        }


def classify_error(status_code: int | None, message: str) -> str:
    if status_code == 404:
        return "not_found"
    if status_code in RETRYABLE_STATUS_CODES:
        return "transient"
    if LOCK_MESSAGE_PATTERN.search(message or ""):
        return "lock"
    if status_code in (401, 403):
        return "auth"
    return "fatal"


def _is_retryable(error: DataverseError) -> bool:
    return error.retryable


def _retry_unless_missing(error: DataverseError) -> bool:
    return not error.not_found


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    backoff: str = "exponential"
    jitter: float = 0.0
    min_delay: float = 0.0
    max_delay: float | None = None
    retryable: Callable[[DataverseError], bool] = _is_retryable

    def delay_for(self, attempt: int) -> float:
        if self.backoff == "linear":
            delay = self.base_delay * attempt
        elif self.backoff == "constant":
            delay = self.base_delay
        else:
            delay = self.base_delay * (2 ** (attempt - 1))
        delay += self.min_delay
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay


ENTITY_CREATE_RETRY = RetryPolicy(max_attempts=3, base_delay=3.0, backoff="linear")
ATTRIBUTE_CREATE_RETRY = RetryPolicy(max_attempts=4, base_delay=2.5)
RELATIONSHIP_CREATE_RETRY = RetryPolicy(max_attempts=5, base_delay=2.5, jitter=1.0)
SOLUTION_COMPONENT_RETRY = RetryPolicy(
    max_attempts=3,
    base_delay=2.0,
    backoff="constant",
    retryable=_retry_unless_missing,
)
PUBLISHER_POLL = RetryPolicy(max_attempts=5, base_delay=1.0, backoff="linear")
SOLUTION_POLL = RetryPolicy(max_attempts=6, base_delay=1.0, backoff="linear")
GLOBAL_CHOICE_POLL = RetryPolicy(
    max_attempts=5,
    base_delay=2.0,
    backoff="linear",
    min_delay=3.0,
    max_delay=10.0,
)


async def wait(seconds: float, reason: str) -> None:
    if seconds <= 0:
        return
    logger.debug("Waiting %.1fs for %s", seconds, reason)
    await asyncio.sleep(seconds)


async def _verify_after_failure(
    operation: str,
    verify: Callable[[], Awaitable[T | None]],
    exc: DataverseError,
) -> T | None:
    try:
        existing = await verify()
    except DataverseError as verify_exc:
        logger.warning("Could not verify %s after %s error: %s", operation, exc.kind, verify_exc.message)
        return None
    if existing is not None:
        logger.info("%s completed remotely despite %s error", operation, exc.kind)
    return existing


async def with_retry(
    operation: str,
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    verify: Callable[[], Awaitable[T | None]] | None = None,
) -> T:
    """Run `call` under `policy`.

    When `verify` is given, a timeout or connection failure is followed by a read;
    if it finds the object, that result is returned instead of sending `call` again.
    """
    attempt = 1
    while True:
        try:
            return await call()
        except DataverseError as exc:
            if verify is not None and exc.kind in UNCERTAIN_KINDS:
                existing = await _verify_after_failure(operation, verify, exc)
                if existing is not None:
                    return existing
            if attempt >= policy.max_attempts or not policy.retryable(exc):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retrying %s after %s error (attempt %s/%s, waiting %.1fs): %s",
                operation,
                exc.kind,
                attempt,
                policy.max_attempts,
                delay,
                exc.message,
            )
            await wait(delay, operation)
            attempt += 1


async def poll_until_found(
    operation: str,
    fetch: Callable[[], Awaitable[T | None]],
    policy: RetryPolicy,
) -> T | None:
    for attempt in range(1, policy.max_attempts + 1):
        await wait(policy.delay_for(attempt), operation)
        result = await fetch()
        if result:
            return result
        logger.info("%s not visible yet (poll %s/%s)", operation, attempt, policy.max_attempts)
    return None


@dataclass
class DataverseConnection:
    instance_url: str
    access_token: str
    api_version: str = field(default_factory=lambda: settings.dataverse_api_version)
    transport: httpx.AsyncBaseTransport | None = None

    @property
    def base_url(self) -> str:
        return f"{self.instance_url.rstrip('/')}/api/data/{self.api_version}/"

    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "OData-Version": "4.0",
            "OData-MaxVersion": "4.0",
            "Accept": "application/json",
            "Content-Type": "application/json; charset=utf-8",
        }


def _odata_quote(value: str) -> str:
    return value.replace("'", "''")


def _parse_dataverse_error(response: httpx.Response) -> tuple[str, str]:
    fallback_code = "dataverse_request_failed"
    fallback_message = f"Dataverse API request failed with status {response.status_code}"

    try:
        payload = response.json()
    except ValueError:
        body = response.text.strip()
        return fallback_code, body or fallback_message

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return (
                str(error.get("code") or fallback_code),
                str(error.get("message") or fallback_message),
            )
        return (
            str(payload.get("code") or fallback_code),
            str(payload.get("message") or fallback_message),
        )

    return fallback_code, fallback_message


def _created_id(response: httpx.Response) -> str | None:
    for header in ("OData-EntityId", "Location"):
        value = response.headers.get(header)
        if value:
            match = ENTITY_ID_PATTERN.search(value)
            if match:
                return match.group(1)
    body = _json_body(response)
    for key in ("MetadataId", "publisherid", "solutionid", "id"):
        if body.get(key):
            return str(body[key])
    return None


def _json_body(response: httpx.Response) -> dict:
    if response.status_code == 204 or not response.content:
        return {}
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


async def _request(
    conn: DataverseConnection,
    method: str,
    path: str,
    *,
    operation: str,
    json: dict | None = None,
    params: dict[str, str] | None = None,
    timeout: float | None = None,
) -> httpx.Response:
    url = f"{conn.base_url}{path}"
    try:
        async with httpx.AsyncClient(
            timeout=timeout or settings.dataverse_timeout_seconds,
            transport=conn.transport,
        ) as client:
            response = await client.request(
                method,
                url,
                headers=conn.headers(),
                json=json,
                params=params,
            )
    except httpx.TimeoutException as exc:
        raise DataverseError(
            f"{operation} timed out",
            code="dataverse_timeout",
            kind="timeout",
            operation=operation,
        ) from exc
    except httpx.HTTPError as exc:
        raise DataverseError(
            str(exc) or f"{operation} could not reach Dataverse",
            code="dataverse_unreachable",
            kind="transient",
            operation=operation,
        ) from exc

    if response.status_code >= 400:
        code, message = _parse_dataverse_error(response)
        raise DataverseError(
            message,
            status_code=response.status_code,
            code=code,
            kind=classify_error(response.status_code, message),
            operation=operation,
        )
    return response


async def _query(
    conn: DataverseConnection,
    entity_set: str,
    *,
    operation: str,
    params: dict[str, str],
) -> list[dict]:
    response = await _request(conn, "GET", entity_set, operation=operation, params=params)
    records = _json_body(response).get("value")
    if not isinstance(records, list):
        return []
    return [record for record in records if isinstance(record, dict)]


async def _get_optional(
    conn: DataverseConnection,
    path: str,
    *,
    operation: str,
    params: dict[str, str] | None = None,
) -> dict | None:
    try:
        response = await _request(conn, "GET", path, operation=operation, params=params)
    except DataverseError as exc:
        if exc.not_found:
            return None
        raise
    return _json_body(response)


async def find_publisher_by_name(conn: DataverseConnection, unique_name: str) -> dict | None:
    records = await _query(
        conn,
        "publishers",
        operation="find_publisher",
        params={
            "$filter": f"uniquename eq '{_odata_quote(unique_name)}'",
            "$select": PUBLISHER_SELECT,
        },
    )
    return records[0] if records else None


async def find_publisher_by_prefix(conn: DataverseConnection, prefix: str) -> dict | None:
    records = await _query(
        conn,
        "publishers",
        operation="find_publisher",
        params={
            "$filter": f"customizationprefix eq '{_odata_quote(prefix)}'",
            "$select": PUBLISHER_SELECT,
        },
    )
    return records[0] if records else None


async def create_publisher(
    conn: DataverseConnection,
    unique_name: str,
    friendly_name: str,
    prefix: str,
    description: str = "",
) -> str | None:
    payload = {
        "uniquename": unique_name,
        "friendlyname": friendly_name,
        "description": description,
        "customizationprefix": prefix,
        "customizationoptionvalueprefix": 10000,
    }
    response = await _request(conn, "POST", "publishers", operation="create_publisher", json=payload)
    return _created_id(response)


async def delete_publisher(conn: DataverseConnection, publisher_id: str) -> None:
    await _request(conn, "DELETE", f"publishers({publisher_id})", operation="delete_publisher")


async def find_solution(conn: DataverseConnection, unique_name: str) -> dict | None:
    records = await _query(
        conn,
        "solutions",
        operation="find_solution",
        params={
            "$select": SOLUTION_SELECT,
            "$expand": SOLUTION_PUBLISHER_EXPAND,
            "$filter": f"uniquename eq '{_odata_quote(unique_name)}'",
        },
    )
    return records[0] if records else None


async def create_solution(
    conn: DataverseConnection,
    unique_name: str,
    friendly_name: str,
    publisher_id: str,
    description: str = "",
) -> str | None:
    payload = {
        "uniquename": unique_name,
        "friendlyname": friendly_name,
        "description": description,
        "version": "1.0.0.0",
        "publisherid@odata.bind": f"/publishers({publisher_id})",
    }
    response = await _request(conn, "POST", "solutions", operation="create_solution", json=payload)
    return _created_id(response)


async def delete_solution(conn: DataverseConnection, solution_id: str) -> None:
    await _request(conn, "DELETE", f"solutions({solution_id})", operation="delete_solution")


def _entity_path(logical_name: str) -> str:
    return f"EntityDefinitions(LogicalName='{_odata_quote(logical_name)}')"


async def create_entity(conn: DataverseConnection, payload: dict) -> str | None:
    response = await _request(
        conn,
        "POST",
        "EntityDefinitions",
        operation="create_entity",
        json=payload,
    )
    return _created_id(response)


async def get_entity(
    conn: DataverseConnection,
    logical_name: str,
    select: str = "LogicalName,MetadataId",
) -> dict | None:
    return await _get_optional(
        conn,
        _entity_path(logical_name),
        operation="get_entity",
        params={"$select": select},
    )


async def entity_exists(conn: DataverseConnection, logical_name: str) -> bool:
    records = await _query(
        conn,
        "EntityDefinitions",
        operation="entity_exists",
        params={
            "$filter": f"LogicalName eq '{_odata_quote(logical_name)}'",
            "$select": "LogicalName",
        },
    )
    return bool(records)


async def delete_entity(
    conn: DataverseConnection,
    logical_name: str,
    timeout: float | None = None,
) -> None:
    await _request(
        conn,
        "DELETE",
        _entity_path(logical_name),
        operation="delete_entity",
        timeout=timeout,
    )


async def create_attribute(
    conn: DataverseConnection,
    entity_logical_name: str,
    payload: dict,
) -> str | None:
    response = await _request(
        conn,
        "POST",
        f"{_entity_path(entity_logical_name)}/Attributes",
        operation="create_attribute",
        json=payload,
    )
    return _created_id(response)


async def find_relationship(conn: DataverseConnection, schema_name: str) -> dict | None:
    records = await _query(
        conn,
        "RelationshipDefinitions",
        operation="find_relationship",
        params={
            "$select": "SchemaName,MetadataId",
            "$filter": f"SchemaName eq '{_odata_quote(schema_name)}'",
        },
    )
    return records[0] if records else None


async def create_relationship(conn: DataverseConnection, payload: dict) -> str | None:
    response = await _request(
        conn,
        "POST",
        "RelationshipDefinitions",
        operation="create_relationship",
        json=payload,
    )
    return _created_id(response)


async def delete_relationship(conn: DataverseConnection, schema_name: str) -> None:
    await _request(
        conn,
        "DELETE",
        f"RelationshipDefinitions(SchemaName='{_odata_quote(schema_name)}')",
        operation="delete_relationship",
    )


async def list_global_choices(conn: DataverseConnection) -> list[dict]:
    return await _query(
        conn,
        "GlobalOptionSetDefinitions",
        operation="list_global_choices",
        params={"$select": "Name,MetadataId,DisplayName"},
    )


async def get_global_choice(conn: DataverseConnection, name: str) -> dict | None:
    return await _get_optional(
        conn,
        f"GlobalOptionSetDefinitions(Name='{_odata_quote(name)}')",
        operation="get_global_choice",
    )


async def create_global_choice(conn: DataverseConnection, payload: dict) -> str | None:
    response = await _request(
        conn,
        "POST",
        "GlobalOptionSetDefinitions",
        operation="create_global_choice",
        json=payload,
    )
    return _created_id(response)


async def delete_global_choice(conn: DataverseConnection, metadata_id: str) -> None:
    await _request(
        conn,
        "DELETE",
        f"GlobalOptionSetDefinitions({metadata_id})",
        operation="delete_global_choice",
    )


async def add_solution_component(
    conn: DataverseConnection,
    solution_unique_name: str,
    component_id: str,
    component_type: int,
    *,
    add_required_components: bool = False,
) -> None:
    payload = {
        "ComponentId": component_id,
        "ComponentType": component_type,
        "SolutionUniqueName": solution_unique_name,
        "AddRequiredComponents": add_required_components,
        "DoNotIncludeSubcomponents": False,
    }
    await _request(
        conn,
        "POST",
        "AddSolutionComponent",
        operation="add_solution_component",
        json=payload,
    )
