import logging
import re

from app.config import settings
from app.services import dataverse
from app.services.dataverse import DataverseConnection
from app.services.progress import ProgressSink, emit_progress

logger = logging.getLogger(__name__)

PRIMARY_NAME_MAX_LENGTH = 850
DEFAULT_STRING_MAX_LENGTH = 4000
MEMO_MAX_LENGTH = 2000

RESERVED_ATTRIBUTE_NAMES = {
    "status",
    "statecode",
    "statuscode",
    "description",
    "createdon",
    "modifiedon",
}

ATTRIBUTE_TYPE_ALIASES = {
    "int": "integer",
    "integer": "integer",
    "number": "integer",
    "decimal": "decimal",
    "money": "money",
    "currency": "money",
    "boolean": "boolean",
    "bool": "boolean",
    "datetime": "datetime",
    "date": "date",
    "dateonly": "date",
    "float": "double",
    "double": "double",
    "email": "email",
    "phone": "phone",
    "url": "url",
    "text": "memo",
    "memo": "memo",
    "textarea": "memo",
    "image": "image",
    "file": "file",
}

STRING_FORMATS = {
    "email": ("Email", 100),
    "phone": ("Phone", 50),
    "url": ("Url", 200),
}

_UNSAFE_CHARS = re.compile(r"[^a-z0-9_]")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


def safe_name(value: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", str(value).strip().lower())
    return _REPEATED_UNDERSCORES.sub("_", cleaned).strip("_")


def to_schema_name(logical_name: str) -> str:
    prefix, _, rest = logical_name.partition("_")
    if not rest:
        return logical_name
    parts = [part[:1].upper() + part[1:] for part in rest.split("_") if part]
    return f"{prefix}_{'_'.join(parts)}"


def humanize(value: str) -> str:
    words = [word for word in re.split(r"[_\s]+", str(value).strip()) if word]
    return " ".join(word[:1].upper() + word[1:] for word in words)


def entity_logical_name(prefix: str, entity_name: str) -> str:
    return f"{prefix}_{safe_name(entity_name)}"


def primary_column_name(entity: dict) -> str:
    return safe_name(entity.get("primary_column_name") or "name") or "name"


def attribute_logical_name(prefix: str, entity_name: str, attribute_name: str) -> str:
    base = safe_name(attribute_name)
    if base in RESERVED_ATTRIBUTE_NAMES:
        return f"{prefix}_{safe_name(entity_name)}_{base}"
    return f"{prefix}_{base}"


def label(text: str) -> dict:
    return {
        "@odata.type": "Microsoft.Dynamics.CRM.Label",
        "LocalizedLabels": [
            {
                "@odata.type": "Microsoft.Dynamics.CRM.LocalizedLabel",
                "Label": text,
                "LanguageCode": settings.dataverse_language_code,
            }
        ],
    }


def _required_level(required: bool) -> dict:
    return {
        "Value": "ApplicationRequired" if required else "None",
        "CanBeChanged": True,
        "ManagedPropertyLogicalName": "canmodifyrequirementlevelsettings",
    }


def materialized_attributes(entity: dict) -> list[dict]:
    entity_base = safe_name(entity["name"])
    implicit = {"name", f"{entity_base}_name", "status", primary_column_name(entity)}

    attributes = entity.get("attributes")
    if not isinstance(attributes, list):
        return []

    kept = []
    for attribute in attributes:
        if not isinstance(attribute, dict) or not attribute.get("name"):
            continue
        if attribute.get("is_primary_key") or attribute.get("is_foreign_key"):
            continue
        if safe_name(attribute["name"]) in implicit:
            continue
        kept.append(attribute)
    return kept


def build_entity_payload(entity: dict, prefix: str) -> dict:
    logical_name = entity_logical_name(prefix, entity["name"])
    display_name = entity.get("display_name") or humanize(entity["name"])
    primary_logical = f"{logical_name}_{primary_column_name(entity)}"
    primary_display = humanize(entity.get("primary_column_name") or "name")

    return {
        "@odata.type": "Microsoft.Dynamics.CRM.EntityMetadata",
        "SchemaName": to_schema_name(logical_name),
        "DisplayName": label(display_name),
        "DisplayCollectionName": label(entity.get("plural_name") or f"{display_name}s"),
        "Description": label(entity.get("description") or f"{display_name} table"),
        "OwnershipType": "UserOwned",
        "IsActivity": False,
        "HasActivities": False,
        "HasNotes": False,
        "Attributes": [
            {
                "@odata.type": "Microsoft.Dynamics.CRM.StringAttributeMetadata",
                "SchemaName": to_schema_name(primary_logical),
                "AttributeType": "String",
                "AttributeTypeName": {"Value": "StringType"},
                "FormatName": {"Value": "Text"},
                "MaxLength": PRIMARY_NAME_MAX_LENGTH,
                "IsPrimaryName": True,
                "RequiredLevel": _required_level(True),
                "DisplayName": label(primary_display),
                "Description": label(f"Primary name column for {display_name}"),
            }
        ],
    }


def _type_specific_metadata(attribute_type: str) -> dict:
    if attribute_type == "integer":
        return {
            "@odata.type": "Microsoft.Dynamics.CRM.IntegerAttributeMetadata",
            "AttributeType": "Integer",
            "Format": "None",
            "MinValue": -2147483648,
            "MaxValue": 2147483647,
        }
    if attribute_type == "decimal":
        return {
            "@odata.type": "Microsoft.Dynamics.CRM.DecimalAttributeMetadata",
            "AttributeType": "Decimal",
            "Precision": 2,
            "MinValue": -100000000000,
            "MaxValue": 100000000000,
        }
    if attribute_type == "money":
        return {
            "@odata.type": "Microsoft.Dynamics.CRM.MoneyAttributeMetadata",
            "AttributeType": "Money",
            "Precision": 2,
            "PrecisionSource": 2,
            "MinValue": -922337203685477,
            "MaxValue": 922337203685477,
        }
    if attribute_type == "boolean":
        return {
            "@odata.type": "Microsoft.Dynamics.CRM.BooleanAttributeMetadata",
            "AttributeType": "Boolean",
            "DefaultValue": False,
            "OptionSet": {
                "@odata.type": "Microsoft.Dynamics.CRM.BooleanOptionSetMetadata",
                "TrueOption": {"Value": 1, "Label": label("Yes")},
                "FalseOption": {"Value": 0, "Label": label("No")},
                "OptionSetType": "Boolean",
            },
        }
    if attribute_type in {"datetime", "date"}:
        return {
            "@odata.type": "Microsoft.Dynamics.CRM.DateTimeAttributeMetadata",
            "AttributeType": "DateTime",
            "Format": "DateOnly" if attribute_type == "date" else "DateAndTime",
        }
    if attribute_type == "double":
        return {
            "@odata.type": "Microsoft.Dynamics.CRM.DoubleAttributeMetadata",
            "AttributeType": "Double",
            "Precision": 2,
            "MinValue": -100000000000,
            "MaxValue": 100000000000,
        }
    if attribute_type in STRING_FORMATS:
        format_name, max_length = STRING_FORMATS[attribute_type]
        return {
            "@odata.type": "Microsoft.Dynamics.CRM.StringAttributeMetadata",
            "AttributeType": "String",
            "FormatName": {"Value": format_name},
            "MaxLength": max_length,
        }
    if attribute_type == "memo":
        return {
            "@odata.type": "Microsoft.Dynamics.CRM.MemoAttributeMetadata",
            "AttributeType": "Memo",
            "Format": "TextArea",
            "MaxLength": MEMO_MAX_LENGTH,
        }
    if attribute_type == "image":
        return {
            "@odata.type": "Microsoft.Dynamics.CRM.ImageAttributeMetadata",
            "AttributeType": "Virtual",
            "AttributeTypeName": {"Value": "ImageType"},
            "CanStoreFullImage": True,
        }
    if attribute_type == "file":
        return {
            "@odata.type": "Microsoft.Dynamics.CRM.FileAttributeMetadata",
            "AttributeType": "Virtual",
            "AttributeTypeName": {"Value": "FileType"},
            "MaxSizeInKB": 32768,
        }
    return {
        "@odata.type": "Microsoft.Dynamics.CRM.StringAttributeMetadata",
        "AttributeType": "String",
        "FormatName": {"Value": "Text"},
        "MaxLength": DEFAULT_STRING_MAX_LENGTH,
    }


def normalize_attribute_type(raw_type: str | None) -> str:
    return ATTRIBUTE_TYPE_ALIASES.get(str(raw_type or "").strip().lower(), "string")


def build_attribute_payload(attribute: dict, entity_name: str, prefix: str) -> dict:
    logical_name = attribute_logical_name(prefix, entity_name, attribute["name"])
    display_name = attribute.get("display_name") or humanize(attribute["name"])
    payload = _type_specific_metadata(normalize_attribute_type(attribute.get("type")))
    payload.update(
        {
            "SchemaName": to_schema_name(logical_name),
            "DisplayName": label(display_name),
            "Description": label(attribute.get("description") or display_name),
            "RequiredLevel": _required_level(bool(attribute.get("required"))),
        }
    )
    return payload


def _error_entry(component: str, name: str, exc: dataverse.DataverseError) -> dict:
    return {"component": component, "name": name, **exc.to_dict()}


async def _add_entity_to_solution(
    conn: DataverseConnection,
    logical_name: str,
    metadata_id: str | None,
    solution_unique_name: str,
) -> None:
    if not metadata_id:
        record = await dataverse.get_entity(conn, logical_name)
        metadata_id = (record or {}).get("MetadataId")
    if not metadata_id:
        raise dataverse.DataverseError(
            f"Could not resolve MetadataId for {logical_name}",
            code="metadata_id_missing",
            kind="not_found",
            operation="add_solution_component",
        )
    await dataverse.with_retry(
        f"add {logical_name} to solution",
        lambda: dataverse.add_solution_component(
            conn,
            solution_unique_name,
            metadata_id,
            dataverse.COMPONENT_TYPE_ENTITY,
        ),
        dataverse.SOLUTION_COMPONENT_RETRY,
    )


async def create_entity(
    conn: DataverseConnection,
    entity: dict,
    prefix: str,
    solution_unique_name: str | None = None,
) -> dict:
    logical_name = entity_logical_name(prefix, entity["name"])
    payload = build_entity_payload(entity, prefix)

    async def created_metadata_id() -> str | None:
        record = await dataverse.get_entity(conn, logical_name)
        if record is None:
            return None
        return record.get("MetadataId") or ""

    metadata_id = await dataverse.with_retry(
        f"create entity {logical_name}",
        lambda: dataverse.create_entity(conn, payload),
        dataverse.ENTITY_CREATE_RETRY,
        verify=created_metadata_id,
    )
    logger.info("Created entity %s", logical_name)

    warnings: list[str] = []
    if solution_unique_name:
        try:
            await _add_entity_to_solution(conn, logical_name, metadata_id, solution_unique_name)
        except dataverse.DataverseError as exc:
            logger.warning("Could not add %s to solution %s: %s", logical_name, solution_unique_name, exc.message)
            warnings.append(f"Table {logical_name} was created but could not be added to the solution: {exc.message}")

    return {
        "name": entity["name"],
        "logical_name": logical_name,
        "display_name": payload["DisplayName"]["LocalizedLabels"][0]["Label"],
        "metadata_id": metadata_id,
        "warnings": warnings,
    }


async def create_attribute(
    conn: DataverseConnection,
    entity_logical_name: str,
    attribute: dict,
    entity_name: str,
    prefix: str,
) -> str:
    payload = build_attribute_payload(attribute, entity_name, prefix)
    await dataverse.with_retry(
        f"create attribute {payload['SchemaName']}",
        lambda: dataverse.create_attribute(conn, entity_logical_name, payload),
        dataverse.ATTRIBUTE_CREATE_RETRY,
    )
    return payload["SchemaName"].lower()


async def _probe_entity(conn: DataverseConnection, logical_name: str) -> str | None:
    try:
        record = await dataverse.get_entity(conn, logical_name, select="LogicalName")
    except dataverse.DataverseError as exc:
        return f"Existence check for {logical_name} failed: {exc.message}"
    if record is None:
        return f"Table {logical_name} is not queryable yet"
    return None


async def create_entities(
    conn: DataverseConnection,
    entities: list[dict],
    *,
    prefix: str,
    solution_unique_name: str | None = None,
    progress: ProgressSink | None = None,
) -> dict:
    created: list[dict] = []
    skipped: list[dict] = []
    errors: list[dict] = []
    warnings: list[str] = []
    attributes_created = 0

    for index, entity in enumerate(entities, start=1):
        logical_name = entity_logical_name(prefix, entity["name"])
        emit_progress(
            progress,
            "entities",
            f"Creating table {logical_name} ({index}/{len(entities)})",
            entity=logical_name,
        )

        try:
            existing = await dataverse.get_entity(conn, logical_name)
        except dataverse.DataverseError as exc:
            errors.append(_error_entry("entity", entity["name"], exc))
            continue
        if existing is not None:
            warnings.append(f"Table {logical_name} already exists; it was left unchanged")
            skipped.append({"name": entity["name"], "logical_name": logical_name})
            continue

        try:
            entity_result = await create_entity(conn, entity, prefix, solution_unique_name)
        except dataverse.DataverseError as exc:
            logger.warning("Entity %s failed: %s", logical_name, exc.message)
            errors.append(_error_entry("entity", entity["name"], exc))
            continue
        warnings.extend(entity_result.pop("warnings"))

        await dataverse.wait(settings.entity_settle_seconds, f"{logical_name} metadata")
        probe_warning = await _probe_entity(conn, logical_name)
        if probe_warning:
            logger.warning(probe_warning)
            warnings.append(probe_warning)

        entity_result["attributes"] = []
        for attribute in materialized_attributes(entity):
            try:
                attribute_name = await create_attribute(
                    conn,
                    logical_name,
                    attribute,
                    entity["name"],
                    prefix,
                )
            except dataverse.DataverseError as exc:
                logger.warning(
                    "Attribute %s on %s failed: %s",
                    attribute["name"],
                    logical_name,
                    exc.message,
                )
                errors.append(_error_entry("attribute", f"{logical_name}.{attribute['name']}", exc))
                continue
            entity_result["attributes"].append(attribute_name)
            attributes_created += 1

        created.append(entity_result)

    return {
        "created": created,
        "skipped": skipped,
        "errors": errors,
        "warnings": warnings,
        "attributes_created": attributes_created,
    }
