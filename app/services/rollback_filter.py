from __future__ import annotations

from app.services.deploy_validators import ROLLBACK_CATEGORIES, normalize_rollback_options

ITEM_CATEGORIES = {
    "relationships": "relationships",
    "custom_entities": "custom_entities",
    "cdm_entities": "cdm_entities",
    "custom_global_choices": "global_choices_created",
}


def normalize_relationships(value: object) -> list[dict]:
    """Accepts the list form or the older map keyed by "from->to"."""
    if isinstance(value, dict):
        items = []
        for key, item in value.items():
            entry = dict(item) if isinstance(item, dict) else {}
            from_entity, separator, to_entity = str(key).partition("->")
            if separator:
                entry.setdefault("from_entity", from_entity.strip())
                entry.setdefault("to_entity", to_entity.strip())
            items.append(entry)
        return items
    if isinstance(value, list):
        return [dict(item) for item in value if isinstance(item, dict)]
    return []


def normalize_global_choices(value: object) -> list[dict]:
    if not isinstance(value, list):
        return []
    items = []
    for item in value:
        if isinstance(item, str) and item.strip():
            items.append({"name": item.strip(), "display_name": item.strip()})
        elif isinstance(item, dict) and (item.get("name") or item.get("display_name")):
            items.append(dict(item))
    return items


def relationship_key(relationship: dict) -> str:
    schema_name = relationship.get("schema_name")
    if schema_name:
        return str(schema_name).lower()
    return f"{relationship.get('from_entity', '')}->{relationship.get('to_entity', '')}".lower()


def entity_key(entity: dict) -> str:
    return str(entity.get("logical_name") or entity.get("name") or "").lower()


def choice_key(choice: dict) -> str:
    return str(choice.get("name") or choice.get("display_name") or "").lower()


ITEM_KEYS = {
    "relationships": relationship_key,
    "custom_entities": entity_key,
    "cdm_entities": entity_key,
    "custom_global_choices": choice_key,
}


def normalize_rollback_data(rollback_data: dict | None) -> dict:
    rollback_data = rollback_data or {}
    return {
        "relationships": normalize_relationships(rollback_data.get("relationships")),
        "custom_entities": [
            dict(item) for item in rollback_data.get("custom_entities") or [] if isinstance(item, dict)
        ],
        "cdm_entities": [
            dict(item) for item in rollback_data.get("cdm_entities") or [] if isinstance(item, dict)
        ],
        "global_choices_created": normalize_global_choices(rollback_data.get("global_choices_created")),
    }


def collect_removed_components(rollback_history: list[dict] | None) -> dict:
    removed: dict = {category: set() for category in ITEM_CATEGORIES}
    removed.update({"solution": False, "publisher": False, "exhausted": set()})

    for entry in rollback_history or []:
        if not isinstance(entry, dict):
            continue
        options = entry.get("rollback_options") or {}
        results = entry.get("rollback_results") or {}
        recorded = results.get("removed_components") if isinstance(results, dict) else None

        if isinstance(recorded, dict):
            for category in ITEM_CATEGORIES:
                removed[category].update(str(key).lower() for key in recorded.get(category) or [])
            removed["solution"] = removed["solution"] or bool(recorded.get("solution"))
            removed["publisher"] = removed["publisher"] or bool(recorded.get("publisher"))
            continue

        # entries without per-item results count the whole selected category as removed
        for category in ROLLBACK_CATEGORIES:
            if options.get(category):
                if category in ITEM_CATEGORIES:
                    removed["exhausted"].add(category)
                else:
                    removed[category] = True
    return removed


def filter_remaining_components(
    rollback_data: dict | None,
    rollback_history: list[dict] | None,
    requested_options: dict | None,
    solution_info: dict | None = None,
) -> dict:
    options = normalize_rollback_options(requested_options)
    removed = collect_removed_components(rollback_history)
    data = normalize_rollback_data(rollback_data)

    effective_data: dict = {}
    effective_options: dict[str, bool] = {}
    for category, data_key in ITEM_CATEGORIES.items():
        if category in removed["exhausted"]:
            remaining = []
        else:
            key_of = ITEM_KEYS[category]
            remaining = [item for item in data[data_key] if key_of(item) not in removed[category]]
        effective_data[data_key] = remaining
        effective_options[category] = options[category] and bool(remaining)

    info = dict(solution_info or {})
    if removed["solution"]:
        info["solution_id"] = None
    if removed["publisher"]:
        info["publisher_id"] = None
    effective_data["solution_info"] = info

    effective_options["solution"] = options["solution"] and bool(info.get("solution_id"))
    effective_options["publisher"] = options["publisher"] and not removed["publisher"] and bool(
        info.get("publisher_id") or info.get("publisher_prefix")
    )

    return {
        "requested_options": options,
        "effective_options": effective_options,
        "effective_rollback_data": effective_data,
    }


def remaining_categories(
    rollback_data: dict | None,
    rollback_history: list[dict] | None,
    solution_info: dict | None = None,
) -> list[str]:
    filtered = filter_remaining_components(rollback_data, rollback_history, None, solution_info)
    return [category for category in ROLLBACK_CATEGORIES if filtered["effective_options"][category]]
