import logging

from app.services import dataverse
from app.services.dataverse import DataverseConnection

logger = logging.getLogger(__name__)


class ProvisioningError(Exception):
    def __init__(self, message: str, *, code: str, cause: dataverse.DataverseError | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.cause = cause


def _publisher_view(record: dict) -> dict:
    return {
        "id": record.get("publisherid"),
        "unique_name": record.get("uniquename"),
        "friendly_name": record.get("friendlyname"),
        "prefix": record.get("customizationprefix"),
    }


def _solution_view(record: dict, publisher: dict | None = None) -> dict:
    expanded = record.get("publisherid")
    if not isinstance(expanded, dict):
        expanded = {}
    publisher = publisher or {}
    return {
        "id": record.get("solutionid"),
        "unique_name": record.get("uniquename"),
        "friendly_name": record.get("friendlyname"),
        "publisher_id": expanded.get("publisherid")
        or record.get("_publisherid_value")
        or publisher.get("id"),
        "publisher_prefix": expanded.get("customizationprefix") or publisher.get("prefix"),
    }


async def _find_publisher(conn: DataverseConnection, unique_name: str, prefix: str) -> dict | None:
    existing = await dataverse.find_publisher_by_name(conn, unique_name)
    if existing is not None:
        return existing
    existing = await dataverse.find_publisher_by_prefix(conn, prefix)
    if existing is not None:
        logger.info(
            "Reusing publisher %s that already owns prefix %s",
            existing.get("uniquename"),
            prefix,
        )
    return existing


async def ensure_publisher(conn: DataverseConnection, spec: dict) -> dict:
    unique_name = str(spec["unique_name"]).strip()
    prefix = str(spec["prefix"]).strip().lower()
    friendly_name = str(spec.get("friendly_name") or unique_name).strip()

    try:
        existing = await _find_publisher(conn, unique_name, prefix)
    except dataverse.DataverseError as exc:
        raise ProvisioningError(
            f"Publisher lookup failed: {exc.message}",
            code="publisher_failed",
            cause=exc,
        ) from exc
    if existing is not None:
        return {**_publisher_view(existing), "created": False}

    try:
        await dataverse.create_publisher(
            conn,
            unique_name=unique_name,
            friendly_name=friendly_name,
            prefix=prefix,
            description=str(spec.get("description") or ""),
        )
    except dataverse.DataverseError as exc:
        # another caller may have created it between the lookup and the create
        raced = await _find_publisher(conn, unique_name, prefix)
        if raced is not None:
            logger.info("Publisher %s appeared concurrently, reusing it", unique_name)
            return {**_publisher_view(raced), "created": False}
        raise ProvisioningError(
            f"Publisher creation failed: {exc.message}",
            code="publisher_failed",
            cause=exc,
        ) from exc

    created = await dataverse.poll_until_found(
        f"publisher {unique_name}",
        lambda: dataverse.find_publisher_by_name(conn, unique_name),
        dataverse.PUBLISHER_POLL,
    )
    if created is None:
        raise ProvisioningError(
            "Created publisher but could not retrieve it.",
            code="publisher_not_materialized",
        )
    logger.info("Created publisher %s (%s)", unique_name, prefix)
    return {**_publisher_view(created), "created": True}


async def ensure_solution(
    conn: DataverseConnection,
    unique_name: str,
    display_name: str,
    publisher: dict,
    description: str = "",
) -> dict:
    try:
        existing = await dataverse.find_solution(conn, unique_name)
    except dataverse.DataverseError as exc:
        raise ProvisioningError(
            f"Solution lookup failed: {exc.message}",
            code="solution_failed",
            cause=exc,
        ) from exc
    if existing is not None:
        return {**_solution_view(existing, publisher), "created": False}

    try:
        await dataverse.create_solution(
            conn,
            unique_name=unique_name,
            friendly_name=display_name or unique_name,
            publisher_id=str(publisher["id"]),
            description=description,
        )
    except dataverse.DataverseError as exc:
        raced = await dataverse.find_solution(conn, unique_name)
        if raced is not None:
            logger.info("Solution %s appeared concurrently, reusing it", unique_name)
            return {**_solution_view(raced, publisher), "created": False}
        raise ProvisioningError(
            f"Solution creation failed: {exc.message}",
            code="solution_failed",
            cause=exc,
        ) from exc

    created = await dataverse.poll_until_found(
        f"solution {unique_name}",
        lambda: dataverse.find_solution(conn, unique_name),
        dataverse.SOLUTION_POLL,
    )
    if created is None:
        raise ProvisioningError(
            "Solution creation did not materialize.",
            code="solution_not_materialized",
        )
    logger.info("Created solution %s", unique_name)
    return {**_solution_view(created, publisher), "created": True}
