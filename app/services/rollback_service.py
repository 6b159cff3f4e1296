import logging
import re
import time
import uuid
from datetime import datetime, timezone

from app.config import settings
from app.services import dataverse, global_choices
from app.services.dataverse import DataverseConnection
from app.services.deploy_validators import RollbackValidationError, validate_rollback_configuration
from app.services.deployment_history import DeploymentHistory
from app.services.entity_builder import safe_name
from app.services.progress import ProgressSink, emit_progress
from app.services.relationship_builder import relationship_schema_name
from app.services.rollback_filter import (
    choice_key,
    entity_key,
    filter_remaining_components,
    relationship_key,
    remaining_categories,
)

logger = logging.getLogger(__name__)

ROLLBACKABLE_STATUSES = {"success", "modified", "rolled-back"}
GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


class ActiveRollbackRegistry:
    """In-flight rollbacks by id. Observability only; nothing here blocks or cancels work."""

    def __init__(self) -> None:
        self._active: dict[str, dict] = {}

    def start(self, rollback_id: str, deployment_id: str) -> dict:
        entry = {
            "rollback_id": rollback_id,
            "deployment_id": deployment_id,
            "status": "starting",
            "start_time": datetime.now(timezone.utc).isoformat(),
        }
        self._active[rollback_id] = entry
        return dict(entry)

    def update(self, rollback_id: str, status: str) -> None:
        entry = self._active.get(rollback_id)
        if entry is not None:
            entry["status"] = status

    def finish(self, rollback_id: str) -> None:
        self._active.pop(rollback_id, None)

    def get(self, rollback_id: str) -> dict | None:
        entry = self._active.get(rollback_id)
        return dict(entry) if entry is not None else None

    def list_active(self) -> list[dict]:
        return [dict(entry) for entry in self._active.values()]


def generate_rollback_id() -> str:
    return f"rollback_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _new_results() -> dict:
    return {
        "relationships_deleted": 0,
        "relationships_processed": 0,
        "custom_entities_deleted": 0,
        "custom_entities_processed": 0,
        "cdm_entities_skipped": 0,
        "global_choices_deleted": 0,
        "solution_deleted": False,
        "publisher_deleted": False,
        "halted": False,
        "halted_at": None,
        "errors": [],
        "warnings": [],
        "removed_components": {
            "relationships": [],
            "custom_entities": [],
            "cdm_entities": [],
            "custom_global_choices": [],
            "solution": False,
            "publisher": False,
        },
    }


def _error(component: str, name: str, exc: dataverse.DataverseError) -> dict:
    return {"component": component, "name": name, **exc.to_dict()}


def _relationship_candidates(relationship: dict, prefix: str | None) -> list[str]:
    schema_name = relationship.get("schema_name")
    if schema_name:
        return [str(schema_name)]
    from_entity = str(relationship.get("from_entity") or "")
    to_entity = str(relationship.get("to_entity") or "")
    if not (prefix and from_entity and to_entity):
        return []
    forward = relationship_schema_name(prefix, from_entity, to_entity)
    reverse = relationship_schema_name(prefix, to_entity, from_entity)
    return [forward] if forward == reverse else [forward, reverse]


def _qualified_entity_name(entity: dict, prefix: str | None) -> str:
    logical_name = str(entity.get("logical_name") or "").lower()
    if logical_name and prefix and logical_name.startswith(f"{prefix.lower()}_"):
        return logical_name
    base = safe_name(logical_name or str(entity.get("name") or ""))
    return f"{prefix}_{base}" if prefix else base


async def _delete_relationship(conn: DataverseConnection, candidates: list[str]) -> bool:
    for schema_name in candidates:
        try:
            await dataverse.delete_relationship(conn, schema_name)
        except dataverse.DataverseError as exc:
            if exc.not_found:
                continue
            raise
        return True
    return False


async def _delete_entity(conn: DataverseConnection, logical_name: str) -> bool:
    if await dataverse.get_entity(conn, logical_name, select="LogicalName") is None:
        return False
    try:
        await dataverse.delete_entity(
            conn,
            logical_name,
            timeout=settings.entity_delete_timeout_seconds,
        )
    except dataverse.DataverseError as exc:
        if exc.not_found:
            return False
        if exc.kind != "timeout":
            raise
        logger.warning("Deleting %s timed out, checking whether it completed", logical_name)
        await dataverse.wait(settings.entity_delete_recheck_seconds, f"{logical_name} deletion")
        if await dataverse.entity_exists(conn, logical_name):
            raise
    return True


async def _resolve_publisher_id(conn: DataverseConnection, solution_info: dict) -> str | None:
    publisher_id = solution_info.get("publisher_id")
    if publisher_id and GUID_PATTERN.match(str(publisher_id)):
        return str(publisher_id)
    prefix = solution_info.get("publisher_prefix")
    if not prefix:
        return None
    record = await dataverse.find_publisher_by_prefix(conn, str(prefix))
    return str(record["publisherid"]) if record else None


def _halt(results: dict, step: str) -> dict:
    results["halted"] = True
    results["halted_at"] = step
    logger.error("Rollback halted at %s", step)
    return results


async def rollback_components(
    conn: DataverseConnection,
    rollback_data: dict,
    options: dict[str, bool],
    *,
    progress: ProgressSink | None = None,
) -> dict:
    results = _new_results()
    removed = results["removed_components"]
    solution_info = rollback_data.get("solution_info") or {}
    prefix = solution_info.get("publisher_prefix")

    relationships = rollback_data.get("relationships") or []
    if options.get("relationships") and relationships:
        emit_progress(progress, "relationships", f"Deleting {len(relationships)} relationship(s)")
        for relationship in relationships:
            candidates = _relationship_candidates(relationship, prefix)
            key = relationship_key(relationship)
            results["relationships_processed"] += 1
            if not candidates:
                results["warnings"].append(f"Relationship {key} has no resolvable schema name; skipped")
                continue
            try:
                deleted = await _delete_relationship(conn, candidates)
            except dataverse.DataverseError as exc:
                results["errors"].append(_error("relationship", candidates[0], exc))
                return _halt(results, "relationships")
            if deleted:
                results["relationships_deleted"] += 1
            else:
                results["warnings"].append(f"Relationship {candidates[0]} was already removed")
            removed["relationships"].append(key)
    else:
        emit_progress(progress, "relationships", "No relationships to delete", skipped=True)

    entities = rollback_data.get("custom_entities") or []
    if options.get("custom_entities") and entities:
        emit_progress(progress, "custom-entities", f"Deleting {len(entities)} custom table(s)")
        for entity in entities:
            logical_name = _qualified_entity_name(entity, prefix)
            results["custom_entities_processed"] += 1
            emit_progress(progress, "custom-entities", f"Deleting table {logical_name}", entity=logical_name)
            try:
                deleted = await _delete_entity(conn, logical_name)
            except dataverse.DataverseError as exc:
                results["errors"].append(_error("entity", logical_name, exc))
                return _halt(results, "custom_entities")
            if deleted:
                results["custom_entities_deleted"] += 1
            else:
                results["warnings"].append(f"Table {logical_name} was not found; it may already be deleted")
            removed["custom_entities"].append(entity_key(entity))

    cdm_entities = rollback_data.get("cdm_entities") or []
    if options.get("cdm_entities") and cdm_entities:
        emit_progress(progress, "cdm-entities", f"{len(cdm_entities)} CDM table(s) need manual removal")
        for entity in cdm_entities:
            name = entity.get("logical_name") or entity.get("name")
            results["warnings"].append(
                f"CDM table {name} must be removed from the solution manually; "
                "the platform API does not support removing solution components"
            )
            results["cdm_entities_skipped"] += 1
            removed["cdm_entities"].append(entity_key(entity))

    choices = rollback_data.get("global_choices_created") or []
    if options.get("custom_global_choices") and choices:
        emit_progress(progress, "global-choices", f"Deleting {len(choices)} global choice(s)")
        for choice in choices:
            label = str(choice.get("display_name") or choice.get("name"))
            try:
                record = await global_choices.find_prefixed_choice(conn, label, prefix or "")
                if record is None:
                    results["warnings"].append(f"Global choice {label} was not found; it may already be deleted")
                else:
                    await dataverse.delete_global_choice(conn, str(record["MetadataId"]))
                    results["global_choices_deleted"] += 1
            except dataverse.DataverseError as exc:
                results["warnings"].append(f"Global choice {label} could not be deleted: {exc.message}")
                continue
            removed["custom_global_choices"].append(choice_key(choice))

    if options.get("solution"):
        solution_id = str(solution_info["solution_id"])
        emit_progress(progress, "solution", f"Deleting solution {solution_info.get('solution_name')}")
        try:
            await dataverse.delete_solution(conn, solution_id)
            results["solution_deleted"] = True
        except dataverse.DataverseError as exc:
            if not exc.not_found:
                results["errors"].append(_error("solution", solution_id, exc))
                return _halt(results, "solution")
            results["warnings"].append(f"Solution {solution_info.get('solution_name')} was already removed")
        removed["solution"] = True

    if options.get("publisher"):
        emit_progress(progress, "publisher", f"Deleting publisher {solution_info.get('publisher_name')}")
        try:
            publisher_id = await _resolve_publisher_id(conn, solution_info)
            if publisher_id is None:
                results["warnings"].append("Publisher was not found; it may already be deleted")
            else:
                await dataverse.delete_publisher(conn, publisher_id)
                results["publisher_deleted"] = True
            removed["publisher"] = True
        except dataverse.DataverseError as exc:
            if exc.not_found:
                results["warnings"].append("Publisher was already removed")
                removed["publisher"] = True
            else:
                results["warnings"].append(f"Publisher could not be deleted: {exc.message}")

    return results


def generate_rollback_summary(results: dict) -> str:
    parts = []
    if results.get("relationships_deleted"):
        parts.append(f"{results['relationships_deleted']} relationship(s) deleted")
    if results.get("custom_entities_deleted"):
        parts.append(f"{results['custom_entities_deleted']} custom table(s) deleted")
    if results.get("global_choices_deleted"):
        parts.append(f"{results['global_choices_deleted']} global choice(s) deleted")
    if results.get("solution_deleted"):
        parts.append("solution deleted")
    if results.get("publisher_deleted"):
        parts.append("publisher deleted")

    heading = "Rollback halted" if results.get("halted") else "Rollback completed"
    if not parts:
        return f"{heading}: no components removed"
    return f"{heading}: {', '.join(parts)}"


def _rollback_history(deployment: dict) -> list[dict]:
    rollback_info = deployment.get("rollback_info")
    if not isinstance(rollback_info, dict):
        return []
    rollbacks = rollback_info.get("rollbacks")
    return [entry for entry in rollbacks if isinstance(entry, dict)] if isinstance(rollbacks, list) else []


async def _load_rollbackable_deployment(history: DeploymentHistory, deployment_id: str) -> dict:
    deployment = await history.get_deployment_by_id(deployment_id)
    if deployment is None:
        raise RollbackValidationError(
            f"Deployment {deployment_id} not found",
            [{"field": "deployment_id", "message": "Deployment not found"}],
            code="deployment_not_found",
            status_code=404,
        )
    status = deployment.get("status")
    if status not in ROLLBACKABLE_STATUSES:
        raise RollbackValidationError(
            f"Deployment {deployment_id} cannot be rolled back from status {status}",
            [{"field": "deployment_id", "message": f"Only successful deployments can be rolled back (status: {status})"}],
            code="deployment_not_successful",
        )
    if not isinstance(deployment.get("rollback_data"), dict):
        raise RollbackValidationError(
            f"Deployment {deployment_id} has no rollback data",
            [{"field": "deployment_id", "message": "Deployment has no rollback data"}],
            code="rollback_data_missing",
        )
    return deployment


async def can_rollback(history: DeploymentHistory, deployment_id: str) -> dict:
    try:
        deployment = await _load_rollbackable_deployment(history, deployment_id)
    except RollbackValidationError as exc:
        return {"can_rollback": False, "reason": exc.message, "available_components": []}

    available = remaining_categories(
        deployment["rollback_data"],
        _rollback_history(deployment),
        deployment.get("solution_info"),
    )
    return {
        "can_rollback": bool(available),
        "reason": None if available else "All components have already been rolled back",
        "available_components": available,
    }


async def execute_rollback(
    conn: DataverseConnection,
    deployment_id: str,
    options: dict | None,
    *,
    history: DeploymentHistory,
    registry: ActiveRollbackRegistry,
    progress: ProgressSink | None = None,
) -> dict:
    emit_progress(progress, "validation", "Validating rollback request", deployment_id=deployment_id)
    deployment = await _load_rollbackable_deployment(history, deployment_id)
    rollback_history = _rollback_history(deployment)
    solution_info = deployment.get("solution_info") or {}

    filtered = filter_remaining_components(
        deployment["rollback_data"],
        rollback_history,
        options,
        solution_info,
    )
    effective_data = filtered["effective_rollback_data"]
    validation = validate_rollback_configuration(
        filtered["requested_options"],
        effective_data,
        effective_data["solution_info"],
    )
    if not validation["valid"]:
        messages = "; ".join(error["message"] for error in validation["errors"])
        raise RollbackValidationError(
            f"Invalid rollback configuration: {messages}",
            validation["errors"],
        )
    for warning in validation["warnings"]:
        logger.warning("Rollback of %s: %s", deployment_id, warning)

    rollback_id = generate_rollback_id()
    registry.start(rollback_id, deployment_id)
    try:
        registry.update(rollback_id, "executing")
        results = await rollback_components(
            conn,
            effective_data,
            filtered["effective_options"],
            progress=progress,
        )
        results["warnings"] = [*validation["warnings"], *results["warnings"]]
        summary = generate_rollback_summary(results)

        entry = {
            "rollback_id": rollback_id,
            "rollback_timestamp": datetime.now(timezone.utc).isoformat(),
            "rollback_options": filtered["requested_options"],
            "rollback_results": results,
        }
        updated_history = [*rollback_history, entry]
        remaining = remaining_categories(deployment["rollback_data"], updated_history, solution_info)
        deployment_status = "rolled-back" if not remaining else "modified"
        await history.update_deployment(
            deployment_id,
            deployment_status,
            {
                "rollback_info": {"rollbacks": updated_history},
                "last_rollback": entry,
            },
        )
        registry.update(rollback_id, "failed" if results["errors"] else "completed")
    finally:
        registry.finish(rollback_id)

    emit_progress(progress, "completed", summary, rollback_id=rollback_id)
    logger.info("Rollback %s of %s: %s", rollback_id, deployment_id, summary)
    return {
        "status": "failed" if results["errors"] else "success",
        "rollback_id": rollback_id,
        "deployment_id": deployment_id,
        "deployment_status": deployment_status,
        "results": results,
        "summary": summary,
        "warnings": results["warnings"],
        "errors": results["errors"],
    }
