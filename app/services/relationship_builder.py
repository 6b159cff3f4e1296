import logging

from app.config import settings
from app.services import dataverse
from app.services.dataverse import DataverseConnection
from app.services.entity_builder import humanize, label, safe_name, to_schema_name
from app.services.progress import ProgressSink, emit_progress

logger = logging.getLogger(__name__)

CDM_ENTITY_MAP = {
    "account": "account",
    "contact": "contact",
    "lead": "lead",
    "opportunity": "opportunity",
    "case": "incident",
    "incident": "incident",
    "user": "systemuser",
    "systemuser": "systemuser",
    "team": "team",
    "businessunit": "businessunit",
}

CASCADE_CONFIGURATION = {
    "Assign": "NoCascade",
    "Delete": "RemoveLink",
    "Merge": "NoCascade",
    "Reparent": "NoCascade",
    "Share": "NoCascade",
    "Unshare": "NoCascade",
}


def build_cdm_map(overrides: dict[str, str] | None = None) -> dict[str, str]:
    mapping = dict(CDM_ENTITY_MAP)
    for name, logical_name in (overrides or {}).items():
        if name and logical_name:
            mapping[safe_name(name)] = str(logical_name).lower()
    return mapping


def resolve_logical_name(
    entity_name: str,
    prefix: str,
    cdm_entity_map: dict[str, str] | None = None,
) -> tuple[str, bool]:
    key = safe_name(entity_name)
    mapping = cdm_entity_map if cdm_entity_map is not None else CDM_ENTITY_MAP
    if key in mapping:
        return mapping[key], True
    return f"{prefix}_{key}", False


def relationship_schema_name(prefix: str, from_entity: str, to_entity: str) -> str:
    return f"{prefix}_{safe_name(from_entity)}_{safe_name(to_entity)}".lower()


def build_relationship_payload(
    schema_name: str,
    prefix: str,
    from_entity: str,
    referenced_entity: str,
    to_entity: str,
    referencing_entity: str,
) -> dict:
    from_base = safe_name(from_entity)
    return {
        "@odata.type": "Microsoft.Dynamics.CRM.OneToManyRelationshipMetadata",
        "SchemaName": schema_name,
        "ReferencedEntity": referenced_entity,
        "ReferencingEntity": referencing_entity,
        "ReferencedEntityNavigationPropertyName": f"{prefix}_{safe_name(to_entity)}s",
        "ReferencingEntityNavigationPropertyName": f"{prefix}_{from_base}",
        "CascadeConfiguration": dict(CASCADE_CONFIGURATION),
        "AssociatedMenuConfiguration": {
            "Behavior": "UseCollectionName",
            "Group": "Details",
            "Order": 10000,
        },
        "Lookup": {
            "@odata.type": "Microsoft.Dynamics.CRM.LookupAttributeMetadata",
            "AttributeType": "Lookup",
            "AttributeTypeName": {"Value": "LookupType"},
            "SchemaName": to_schema_name(f"{prefix}_{from_base}id"),
            "DisplayName": label(f"{humanize(from_entity)} Reference"),
            "Description": label(f"Lookup to {humanize(from_entity)}"),
            "RequiredLevel": {"Value": "None", "CanBeChanged": True},
        },
    }


async def _endpoint_problem(conn: DataverseConnection, logical_name: str) -> str | None:
    try:
        record = await dataverse.get_entity(conn, logical_name, select="MetadataId")
    except dataverse.DataverseError as exc:
        return f"Could not verify table {logical_name}: {exc.message}"
    if record is None:
        return f"Table {logical_name} does not exist or is not queryable yet"
    return None


async def _created_relationship_id(conn: DataverseConnection, schema_name: str) -> str | None:
    record = await dataverse.find_relationship(conn, schema_name)
    if record is None:
        return None
    return record.get("MetadataId") or ""


async def create_relationships_smart(
    conn: DataverseConnection,
    relationships: list[dict],
    *,
    publisher_prefix: str,
    cdm_entity_map: dict[str, str] | None = None,
    progress: ProgressSink | None = None,
) -> dict:
    created: list[dict] = []
    failed: list[dict] = []
    if not relationships:
        return {"created": created, "failed": failed}

    emit_progress(
        progress,
        "relationships",
        f"Waiting for {len(relationships)} relationship endpoint(s) to settle",
        count=len(relationships),
    )
    await dataverse.wait(settings.relationship_batch_settle_seconds, "relationship endpoints")

    for index, relationship in enumerate(relationships, start=1):
        from_entity = str(relationship["from_entity"])
        to_entity = str(relationship["to_entity"])
        schema_name = relationship_schema_name(publisher_prefix, from_entity, to_entity)
        referenced, _ = resolve_logical_name(from_entity, publisher_prefix, cdm_entity_map)
        referencing, _ = resolve_logical_name(to_entity, publisher_prefix, cdm_entity_map)
        entry = {
            "from_entity": from_entity,
            "to_entity": to_entity,
            "schema_name": schema_name,
            "referenced_entity": referenced,
            "referencing_entity": referencing,
        }
        emit_progress(
            progress,
            "relationships",
            f"Creating relationship {schema_name} ({index}/{len(relationships)})",
            schema_name=schema_name,
        )

        problem = await _endpoint_problem(conn, referenced) or await _endpoint_problem(conn, referencing)
        if problem:
            logger.warning("Skipping relationship %s: %s", schema_name, problem)
            failed.append({**entry, "error": {"code": "endpoint_missing", "message": problem}})
            continue

        try:
            existing = await dataverse.find_relationship(conn, schema_name)
            if existing is not None:
                created.append({**entry, "existing": True})
                continue

            payload = build_relationship_payload(
                schema_name,
                publisher_prefix,
                from_entity,
                referenced,
                to_entity,
                referencing,
            )
            await dataverse.with_retry(
                f"create relationship {schema_name}",
                lambda: dataverse.create_relationship(conn, payload),
                dataverse.RELATIONSHIP_CREATE_RETRY,
                verify=lambda: _created_relationship_id(conn, schema_name),
            )
        except dataverse.DataverseError as exc:
            logger.warning("Relationship %s failed: %s", schema_name, exc.message)
            failed.append({**entry, "error": exc.to_dict()})
            await dataverse.wait(settings.relationship_failure_delay_seconds, schema_name)
            continue

        logger.info("Created relationship %s", schema_name)
        created.append({**entry, "existing": False})
        await dataverse.wait(settings.relationship_success_delay_seconds, schema_name)

    return {"created": created, "failed": failed}
