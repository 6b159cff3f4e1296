from __future__ import annotations

import re
from typing import Any


ValidationError = dict[str, str]

PUBLISHER_PREFIX_PATTERN = re.compile(r"^[a-z]{2,8}$")
SOLUTION_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

ROLLBACK_CATEGORIES = (
    "relationships",
    "custom_entities",
    "cdm_entities",
    "custom_global_choices",
    "solution",
    "publisher",
)


class DeploymentValidationError(Exception):
    def __init__(self, message: str, errors: list[ValidationError]) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors


class RollbackValidationError(Exception):
    def __init__(
        self,
        message: str,
        errors: list[ValidationError],
        *,
        code: str = "rollback_invalid",
        status_code: int = 400,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.errors = errors
        self.code = code
        self.status_code = status_code


def _add_error(errors: list[ValidationError], field: str, message: str) -> None:
    errors.append({"field": field, "message": message})


def _is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _validate_required_string(
    *,
    errors: list[ValidationError],
    payload: dict[str, Any],
    key: str,
    path: str,
    label: str | None = None,
) -> str:
    value = payload.get(key)
    if _is_non_empty_string(value):
        return str(value).strip()
    _add_error(errors, f"{path}.{key}" if path else key, f"{label or key} must be a non-empty string")
    return ""


def _validate_list(
    errors: list[ValidationError],
    payload: dict[str, Any],
    key: str,
) -> list:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        _add_error(errors, key, f"{key} must be a list when provided")
        return []
    return value


def _validate_publisher(errors: list[ValidationError], publisher: Any) -> None:
    if not isinstance(publisher, dict):
        _add_error(errors, "publisher", "publisher must be an object")
        return

    _validate_required_string(errors=errors, payload=publisher, key="unique_name", path="publisher")
    _validate_required_string(errors=errors, payload=publisher, key="friendly_name", path="publisher")
    prefix = _validate_required_string(errors=errors, payload=publisher, key="prefix", path="publisher")
    if prefix and not PUBLISHER_PREFIX_PATTERN.match(prefix):
        _add_error(
            errors,
            "publisher.prefix",
            "prefix must be 2-8 lowercase letters",
        )
    if prefix.startswith("mscrm"):
        _add_error(errors, "publisher.prefix", "prefix cannot start with 'mscrm'")


def _validate_entities(errors: list[ValidationError], entities: list) -> set[str]:
    names: set[str] = set()
    for entity_index, entity in enumerate(entities):
        entity_path = f"entities[{entity_index}]"
        if not isinstance(entity, dict):
            _add_error(errors, entity_path, "entity entry must be an object")
            continue

        name = _validate_required_string(errors=errors, payload=entity, key="name", path=entity_path)
        if name:
            if name.lower() in names:
                _add_error(errors, f"{entity_path}.name", f"Duplicate entity name '{name}'")
            names.add(name.lower())

        attributes = entity.get("attributes")
        if attributes is None:
            continue
        if not isinstance(attributes, list):
            _add_error(errors, f"{entity_path}.attributes", "attributes must be a list when provided")
            continue
        for attribute_index, attribute in enumerate(attributes):
            attribute_path = f"{entity_path}.attributes[{attribute_index}]"
            if not isinstance(attribute, dict):
                _add_error(errors, attribute_path, "attribute entry must be an object")
                continue
            _validate_required_string(errors=errors, payload=attribute, key="name", path=attribute_path)
    return names


def _validate_relationships(errors: list[ValidationError], relationships: list) -> None:
    for index, relationship in enumerate(relationships):
        path = f"relationships[{index}]"
        if not isinstance(relationship, dict):
            _add_error(errors, path, "relationship entry must be an object")
            continue
        from_entity = _validate_required_string(
            errors=errors,
            payload=relationship,
            key="from_entity",
            path=path,
        )
        to_entity = _validate_required_string(
            errors=errors,
            payload=relationship,
            key="to_entity",
            path=path,
        )
        if from_entity and to_entity and from_entity.lower() == to_entity.lower():
            _add_error(errors, path, "Self-referencing relationships are not supported")


def _validate_global_choices(errors: list[ValidationError], choices: list) -> None:
    for index, choice in enumerate(choices):
        path = f"global_choices[{index}]"
        if not isinstance(choice, dict):
            _add_error(errors, path, "global choice entry must be an object")
            continue
        _validate_required_string(errors=errors, payload=choice, key="name", path=path)
        options = choice.get("options")
        if not isinstance(options, list) or not options:
            _add_error(errors, f"{path}.options", "options must be a non-empty list")
            continue
        seen_values: set[int] = set()
        for option_index, option in enumerate(options):
            option_path = f"{path}.options[{option_index}]"
            if not isinstance(option, dict):
                _add_error(errors, option_path, "option entry must be an object")
                continue
            _validate_required_string(errors=errors, payload=option, key="label", path=option_path)
            value = option.get("value")
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                _add_error(errors, f"{option_path}.value", "value must be an integer when provided")
            elif value in seen_values:
                _add_error(errors, f"{option_path}.value", f"Duplicate option value {value}")
            else:
                seen_values.add(value)


def validate_deploy_request(plan: dict) -> list[ValidationError]:
    errors: list[ValidationError] = []
    if not isinstance(plan, dict):
        return [{"field": "plan", "message": "Deployment request must be an object"}]

    solution_name = _validate_required_string(errors=errors, payload=plan, key="solution_name", path="")
    if solution_name and not SOLUTION_NAME_PATTERN.match(solution_name):
        _add_error(
            errors,
            "solution_name",
            "solution_name must start with a letter and contain only letters, digits and underscores",
        )
    _validate_publisher(errors, plan.get("publisher"))

    entities = _validate_list(errors, plan, "entities")
    _validate_entities(errors, entities)
    _validate_relationships(errors, _validate_list(errors, plan, "relationships"))
    _validate_global_choices(errors, _validate_list(errors, plan, "global_choices"))

    for index, name in enumerate(_validate_list(errors, plan, "selected_choices")):
        if not _is_non_empty_string(name):
            _add_error(errors, f"selected_choices[{index}]", "selected choice must be a non-empty string")

    return errors


def normalize_rollback_options(options: dict | None) -> dict[str, bool]:
    """No options means a full rollback; otherwise only the categories set to true."""
    if options is None:
        return {category: True for category in ROLLBACK_CATEGORIES}
    if not isinstance(options, dict):
        options = {}
    return {category: bool(options.get(category, False)) for category in ROLLBACK_CATEGORIES}


def validate_rollback_configuration(
    options: dict[str, bool],
    rollback_data: dict,
    solution_info: dict | None = None,
) -> dict:
    errors: list[ValidationError] = []
    warnings: list[str] = []
    solution_info = solution_info or {}

    relationship_count = len(rollback_data.get("relationships") or [])
    custom_entity_count = len(rollback_data.get("custom_entities") or [])
    cdm_entity_count = len(rollback_data.get("cdm_entities") or [])
    choice_count = len(rollback_data.get("global_choices_created") or [])

    if options["custom_entities"] and not options["relationships"] and relationship_count:
        _add_error(
            errors,
            "options.custom_entities",
            "Cannot delete custom tables without deleting relationships first. "
            f"Found {relationship_count} relationship(s) that must be deleted.",
        )

    if options["solution"]:
        remaining = []
        if not options["relationships"] and relationship_count:
            remaining.append("relationships")
        if not options["custom_entities"] and custom_entity_count:
            remaining.append("custom entities")
        if not options["cdm_entities"] and cdm_entity_count:
            remaining.append("CDM entities")
        if remaining:
            _add_error(
                errors,
                "options.solution",
                f"Cannot delete solution while it contains {' and '.join(remaining)}. "
                "All entities must be removed first.",
            )

    if options["publisher"] and not options["solution"] and solution_info.get("solution_id"):
        _add_error(
            errors,
            "options.publisher",
            "Cannot delete publisher without deleting solution first. "
            f"Solution \"{solution_info.get('solution_name') or solution_info['solution_id']}\" must be deleted.",
        )

    entities_remain = (not options["custom_entities"] and custom_entity_count) or (
        not options["cdm_entities"] and cdm_entity_count
    )
    if options["custom_global_choices"] and choice_count and entities_remain:
        warnings.append(
            "Deleting custom global choices while entities still exist may cause references to break. "
            "Consider removing all entities first."
        )

    if not any(options.values()):
        _add_error(errors, "options", "At least one component must be selected for rollback")

    return {
        "valid": not errors,
        "errors": errors,
        "warnings": warnings,
        "config": dict(options),
    }
