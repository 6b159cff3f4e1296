import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from app.services import dataverse, entity_builder, global_choices, provisioner, relationship_builder
from app.services.dataverse import DataverseConnection
from app.services.deploy_validators import DeploymentValidationError, validate_deploy_request
from app.services.deployment_history import DeploymentHistory
from app.services.entity_builder import safe_name
from app.services.progress import ProgressSink, emit_progress

logger = logging.getLogger(__name__)

DiagramParser = Callable[[str], dict]


def generate_deployment_id() -> str:
    return f"deploy_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_dict_list(value: object) -> list[dict]:
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    return []


def _apply_parser(plan: dict, parser: DiagramParser | None) -> dict:
    diagram = plan.get("diagram")
    if parser is None or not diagram or plan.get("entities"):
        return plan
    parsed = parser(str(diagram))
    return {
        **plan,
        "entities": parsed.get("entities") or [],
        "relationships": parsed.get("relationships") or [],
        "warnings": [*(plan.get("warnings") or []), *(parsed.get("warnings") or [])],
    }


def categorize_entities(entities: list[dict], cdm_map: dict[str, str]) -> tuple[list[dict], list[dict]]:
    cdm_entities = []
    custom_entities = []
    for entity in entities:
        if safe_name(entity["name"]) in cdm_map:
            cdm_entities.append(entity)
        else:
            custom_entities.append(entity)
    return cdm_entities, custom_entities


def generate_deployment_summary(result: dict) -> str:
    if not result.get("success"):
        return f"Deployment failed: {result.get('error') or 'unknown error'}"

    parts = []
    if result.get("cdm_entities_integrated"):
        parts.append(f"{len(result['cdm_entities_integrated'])} CDM tables added")
    if result.get("entities_created"):
        parts.append(f"{result['entities_created']} custom tables created")
    if result.get("relationships_created"):
        parts.append(f"{result['relationships_created']} relationships created")
    if result.get("relationships_failed"):
        parts.append(f"{result['relationships_failed']} relationships failed")
    if result.get("global_choices_created"):
        parts.append(f"{result['global_choices_created']} global choices created")
    if result.get("global_choices_added"):
        parts.append(f"{result['global_choices_added']} existing global choices added")

    if not parts:
        return "Solution deployed successfully"
    return f"Solution deployed successfully: {', '.join(parts)}"


def _solution_info(plan: dict, publisher: dict | None, solution: dict | None) -> dict:
    publisher = publisher or {}
    solution = solution or {}
    return {
        "solution_name": solution.get("unique_name") or plan.get("solution_name"),
        "solution_display_name": solution.get("friendly_name") or plan.get("solution_display_name"),
        "solution_id": solution.get("id"),
        "solution_created": bool(solution.get("created")),
        "publisher_name": publisher.get("friendly_name"),
        "publisher_unique_name": publisher.get("unique_name"),
        "publisher_prefix": solution.get("publisher_prefix") or publisher.get("prefix"),
        "publisher_id": publisher.get("id") or solution.get("publisher_id"),
        "publisher_created": bool(publisher.get("created")),
    }


def _empty_rollback_data() -> dict:
    return {
        "relationships": [],
        "custom_entities": [],
        "cdm_entities": [],
        "global_choices_created": [],
    }


async def _record(history: DeploymentHistory | None, result: dict, plan: dict) -> None:
    if history is None:
        return
    try:
        await history.record_deployment(
            {
                "deployment_id": result["deployment_id"],
                "timestamp": result["timestamp"],
                "status": "success" if result["success"] else "failed",
                "solution_info": result["solution_info"],
                "summary": {
                    "text": result["summary"],
                    "entities_created": result["entities_created"],
                    "attributes_created": result["attributes_created"],
                    "relationships_created": result["relationships_created"],
                    "relationships_failed": result["relationships_failed"],
                    "global_choices_created": result["global_choices_created"],
                    "cdm_entities": result["cdm_entities_integrated"],
                    "total_entities": len(_as_dict_list(plan.get("entities"))),
                    "total_relationships": len(_as_dict_list(plan.get("relationships"))),
                },
                "rollback_data": result["rollback_data"],
                "rollback_info": {"rollbacks": []},
                "warnings": result["warnings"],
                "error": result.get("error"),
            }
        )
    except Exception:
        logger.exception(
            "Failed to record deployment history",
            extra={"deployment_id": result["deployment_id"]},
        )
        result["warnings"].append("Deployment result could not be recorded in history")


async def execute_deployment(
    conn: DataverseConnection,
    plan: dict,
    *,
    history: DeploymentHistory | None = None,
    progress: ProgressSink | None = None,
    parser: DiagramParser | None = None,
) -> dict:
    deployment_id = generate_deployment_id()
    emit_progress(progress, "validating", "Validating deployment request", deployment_id=deployment_id)

    plan = _apply_parser(plan, parser)
    validation_errors = validate_deploy_request(plan)
    if validation_errors:
        raise DeploymentValidationError("Invalid deployment request", validation_errors)

    result: dict = {
        "success": False,
        "deployment_id": deployment_id,
        "timestamp": _utc_now(),
        "entities_created": 0,
        "attributes_created": 0,
        "relationships_created": 0,
        "relationships_failed": 0,
        "cdm_entities_integrated": [],
        "global_choices_created": 0,
        "global_choices_reused": 0,
        "global_choices_added": 0,
        "errors": [],
        "warnings": [str(warning) for warning in plan.get("warnings") or []],
        "summary": "",
        "solution_info": _solution_info(plan, None, None),
        "rollback_data": _empty_rollback_data(),
    }

    entities = _as_dict_list(plan.get("entities"))
    cdm_map = relationship_builder.build_cdm_map(plan.get("cdm_entity_map"))
    cdm_entities, custom_entities = categorize_entities(entities, cdm_map)

    emit_progress(progress, "publisher", "Ensuring publisher", deployment_id=deployment_id)
    try:
        publisher = await provisioner.ensure_publisher(conn, plan["publisher"])
        result["solution_info"] = _solution_info(plan, publisher, None)

        emit_progress(progress, "solution", "Ensuring solution", deployment_id=deployment_id)
        solution = await provisioner.ensure_solution(
            conn,
            plan["solution_name"],
            plan.get("solution_display_name") or plan["solution_name"],
            publisher,
            description=str(plan.get("solution_description") or ""),
        )
    except (provisioner.ProvisioningError, dataverse.DataverseError) as exc:
        message = getattr(exc, "message", str(exc))
        logger.error("Deployment %s aborted: %s", deployment_id, message)
        result["error"] = message
        result["errors"].append({"component": "provisioning", "message": message})
        result["summary"] = generate_deployment_summary(result)
        emit_progress(progress, "failed", message, deployment_id=deployment_id)
        await _record(history, result, plan)
        return result

    result["solution_info"] = _solution_info(plan, publisher, solution)
    prefix = result["solution_info"]["publisher_prefix"]
    solution_name = solution["unique_name"]

    emit_progress(
        progress,
        "entities",
        f"Creating {len(custom_entities)} custom table(s)",
        deployment_id=deployment_id,
        custom=len(custom_entities),
        cdm=len(cdm_entities),
    )
    entity_result = await entity_builder.create_entities(
        conn,
        custom_entities,
        prefix=prefix,
        solution_unique_name=solution_name,
        progress=progress,
    )
    result["entities_created"] = len(entity_result["created"])
    result["attributes_created"] = entity_result["attributes_created"]
    result["errors"].extend(entity_result["errors"])
    result["warnings"].extend(entity_result["warnings"])
    result["rollback_data"]["custom_entities"] = [
        {
            "name": entity["name"],
            "logical_name": entity["logical_name"],
            "display_name": entity["display_name"],
        }
        for entity in entity_result["created"]
    ]
    result["cdm_entities_integrated"] = [entity["name"] for entity in cdm_entities]
    result["rollback_data"]["cdm_entities"] = [
        {"name": entity["name"], "logical_name": cdm_map[safe_name(entity["name"])]}
        for entity in cdm_entities
    ]

    relationships = _as_dict_list(plan.get("relationships"))
    emit_progress(
        progress,
        "relationships",
        f"Creating {len(relationships)} relationship(s)",
        deployment_id=deployment_id,
    )
    relationship_result = await relationship_builder.create_relationships_smart(
        conn,
        relationships,
        publisher_prefix=prefix,
        cdm_entity_map=cdm_map,
        progress=progress,
    )
    result["relationships_created"] = len(relationship_result["created"])
    result["relationships_failed"] = len(relationship_result["failed"])
    for failure in relationship_result["failed"]:
        result["warnings"].append(
            f"Relationship {failure['schema_name']} was not created: {failure['error'].get('message')}"
        )
    result["rollback_data"]["relationships"] = [
        {
            "from_entity": item["from_entity"],
            "to_entity": item["to_entity"],
            "schema_name": item["schema_name"],
        }
        for item in relationship_result["created"]
    ]

    custom_choices = _as_dict_list(plan.get("global_choices"))
    selected_choices = [str(name) for name in plan.get("selected_choices") or [] if name]
    emit_progress(
        progress,
        "global-choices",
        f"Processing {len(custom_choices) + len(selected_choices)} global choice(s)",
        deployment_id=deployment_id,
    )
    try:
        choice_result = await global_choices.create_custom_global_choices(
            conn,
            custom_choices,
            prefix=prefix,
            solution_unique_name=solution_name,
            progress=progress,
        )
        added_result = await global_choices.add_existing_global_choices(
            conn,
            selected_choices,
            solution_unique_name=solution_name,
            progress=progress,
        )
    except dataverse.DataverseError as exc:
        logger.warning("Global choice processing failed for %s: %s", deployment_id, exc.message)
        result["errors"].append({"component": "global_choice", **exc.to_dict()})
    else:
        result["global_choices_created"] = len(choice_result["created"])
        result["global_choices_reused"] = len(choice_result["reused"])
        result["global_choices_added"] = len(added_result["added"])
        result["errors"].extend(choice_result["errors"])
        result["warnings"].extend(choice_result["warnings"])
        result["warnings"].extend(added_result["warnings"])
        result["rollback_data"]["global_choices_created"] = [
            {"name": item["name"], "display_name": item["display_name"]}
            for item in choice_result["created"]
        ]

    result["success"] = True
    result["summary"] = generate_deployment_summary(result)
    await _record(history, result, plan)
    emit_progress(progress, "completed", result["summary"], deployment_id=deployment_id)
    logger.info("Deployment %s completed: %s", deployment_id, result["summary"])
    return result
