import logging

from app.services import dataverse
from app.services.dataverse import DataverseConnection
from app.services.entity_builder import humanize, label, safe_name
from app.services.progress import ProgressSink, emit_progress

logger = logging.getLogger(__name__)

OPTION_VALUE_BASE = 100000000


def global_choice_name(prefix: str, name: str) -> str:
    base = safe_name(name)
    if base.startswith(f"{prefix}_"):
        return base
    return f"{prefix}_{base}"


def display_label(record: dict) -> str | None:
    display_name = record.get("DisplayName")
    if not isinstance(display_name, dict):
        return None
    user_label = display_name.get("UserLocalizedLabel")
    if isinstance(user_label, dict) and user_label.get("Label"):
        return str(user_label["Label"])
    localized = display_name.get("LocalizedLabels")
    if isinstance(localized, list):
        for item in localized:
            if isinstance(item, dict) and item.get("Label"):
                return str(item["Label"])
    return None


def build_global_choice_payload(choice: dict, prefix: str) -> dict:
    name = global_choice_name(prefix, choice["name"])
    display_name = choice.get("display_name") or humanize(choice["name"])
    options = []
    for index, option in enumerate(choice.get("options") or []):
        value = option.get("value")
        options.append(
            {
                "Value": value if value is not None else OPTION_VALUE_BASE + index,
                "Label": label(str(option["label"])),
                "Description": label(str(option.get("description") or option["label"])),
            }
        )
    return {
        "@odata.type": "Microsoft.Dynamics.CRM.OptionSetMetadata",
        "Name": name,
        "DisplayName": label(display_name),
        "Description": label(choice.get("description") or display_name),
        "OptionSetType": "Picklist",
        "IsGlobal": True,
        "Options": options,
    }


async def _attach_to_solution(
    conn: DataverseConnection,
    metadata_id: str,
    solution_unique_name: str,
    name: str,
) -> None:
    await dataverse.with_retry(
        f"add global choice {name} to solution",
        lambda: dataverse.add_solution_component(
            conn,
            solution_unique_name,
            metadata_id,
            dataverse.COMPONENT_TYPE_OPTION_SET,
        ),
        dataverse.SOLUTION_COMPONENT_RETRY,
    )


async def create_custom_global_choices(
    conn: DataverseConnection,
    choices: list[dict],
    *,
    prefix: str,
    solution_unique_name: str,
    progress: ProgressSink | None = None,
) -> dict:
    created: list[dict] = []
    reused: list[dict] = []
    errors: list[dict] = []
    warnings: list[str] = []
    if not choices:
        return {"created": created, "reused": reused, "errors": errors, "warnings": warnings}

    existing_names = {
        str(record.get("Name") or "").lower()
        for record in await dataverse.list_global_choices(conn)
    }

    for choice in choices:
        payload = build_global_choice_payload(choice, prefix)
        name = payload["Name"]
        display_name = payload["DisplayName"]["LocalizedLabels"][0]["Label"]
        emit_progress(progress, "global-choices", f"Creating global choice {name}", name=name)

        try:
            if name.lower() in existing_names:
                record = await dataverse.get_global_choice(conn, name)
                target = reused
                logger.info("Global choice %s already exists, reusing it", name)
            else:
                await dataverse.create_global_choice(conn, payload)
                record = await dataverse.poll_until_found(
                    f"global choice {name}",
                    lambda: dataverse.get_global_choice(conn, name),
                    dataverse.GLOBAL_CHOICE_POLL,
                )
                target = created
            if record is None:
                errors.append(
                    {
                        "component": "global_choice",
                        "name": name,
                        "code": "global_choice_not_materialized",
                        "message": f"Global choice {name} was created but never became readable",
                    }
                )
                continue
            await _attach_to_solution(conn, str(record["MetadataId"]), solution_unique_name, name)
        except dataverse.DataverseError as exc:
            logger.warning("Global choice %s failed: %s", name, exc.message)
            errors.append({"component": "global_choice", "name": name, **exc.to_dict()})
            continue

        target.append({"name": name, "display_name": display_name, "metadata_id": record["MetadataId"]})

    return {"created": created, "reused": reused, "errors": errors, "warnings": warnings}


async def add_existing_global_choices(
    conn: DataverseConnection,
    names: list[str],
    *,
    solution_unique_name: str,
    progress: ProgressSink | None = None,
) -> dict:
    added: list[str] = []
    warnings: list[str] = []
    for name in names:
        emit_progress(progress, "global-choices", f"Adding global choice {name} to solution", name=name)
        try:
            record = await dataverse.get_global_choice(conn, name)
            if record is None:
                warnings.append(f"Global choice {name} was not found and was not added")
                continue
            await _attach_to_solution(conn, str(record["MetadataId"]), solution_unique_name, name)
        except dataverse.DataverseError as exc:
            warnings.append(f"Global choice {name} could not be added to the solution: {exc.message}")
            continue
        added.append(name)
    return {"added": added, "warnings": warnings}


async def find_prefixed_choice(
    conn: DataverseConnection,
    display_name: str,
    prefix: str,
) -> dict | None:
    wanted = display_name.strip().lower()
    for record in await dataverse.list_global_choices(conn):
        name = str(record.get("Name") or "").lower()
        if not name.startswith(f"{prefix.lower()}_"):
            continue
        if (display_label(record) or "").strip().lower() == wanted or name == wanted:
            return record
    return None
