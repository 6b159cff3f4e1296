"""Tests for computing what a rollback pass still has left to remove."""

from __future__ import annotations

import copy

from app.services.rollback_filter import (
    collect_removed_components,
    filter_remaining_components,
    normalize_relationships,
    remaining_categories,
)

ROLLBACK_DATA = {
    "relationships": [
        {"from_entity": "Professor", "to_entity": "Course", "schema_name": "ts_professor_course"},
        {"from_entity": "Contact", "to_entity": "Course", "schema_name": "ts_contact_course"},
    ],
    "custom_entities": [
        {"name": "Professor", "logical_name": "ts_professor"},
        {"name": "Course", "logical_name": "ts_course"},
    ],
    "cdm_entities": [{"name": "Contact", "logical_name": "contact"}],
    "global_choices_created": [{"name": "ts_course_level", "display_name": "Course Level"}],
}
SOLUTION_INFO = {
    "solution_name": "UniversitySolution",
    "solution_id": "sol-1",
    "publisher_prefix": "ts",
    "publisher_id": "pub-1",
}


def _pass(options: dict, removed: dict) -> dict:
    return {"rollback_options": options, "rollback_results": {"removed_components": removed}}


def test_no_history_keeps_everything():
    filtered = filter_remaining_components(ROLLBACK_DATA, [], None, SOLUTION_INFO)

    assert all(filtered["effective_options"].values())
    assert filtered["effective_rollback_data"]["relationships"] == ROLLBACK_DATA["relationships"]
    assert filtered["effective_rollback_data"]["solution_info"]["solution_id"] == "sol-1"


def test_removed_relationship_is_subtracted():
    history = [_pass({"relationships": True}, {"relationships": ["ts_professor_course"]})]

    filtered = filter_remaining_components(ROLLBACK_DATA, history, None, SOLUTION_INFO)

    remaining = filtered["effective_rollback_data"]["relationships"]
    assert [item["schema_name"] for item in remaining] == ["ts_contact_course"]
    assert filtered["effective_options"]["relationships"] is True


def test_fully_removed_category_is_switched_off():
    history = [
        _pass(
            {"relationships": True, "custom_entities": True},
            {
                "relationships": ["ts_professor_course", "ts_contact_course"],
                "custom_entities": ["ts_professor", "ts_course"],
            },
        )
    ]

    filtered = filter_remaining_components(ROLLBACK_DATA, history, None, SOLUTION_INFO)

    assert filtered["effective_options"]["relationships"] is False
    assert filtered["effective_options"]["custom_entities"] is False
    assert filtered["effective_options"]["cdm_entities"] is True
    assert filtered["requested_options"]["relationships"] is True


def test_removed_solution_and_publisher_are_cleared():
    history = [_pass({"solution": True, "publisher": True}, {"solution": True, "publisher": True})]

    filtered = filter_remaining_components(ROLLBACK_DATA, history, None, SOLUTION_INFO)

    info = filtered["effective_rollback_data"]["solution_info"]
    assert info["solution_id"] is None
    assert info["publisher_id"] is None
    assert filtered["effective_options"]["solution"] is False
    assert filtered["effective_options"]["publisher"] is False


def test_unrequested_categories_stay_off():
    filtered = filter_remaining_components(
        ROLLBACK_DATA,
        [],
        {"relationships": True, "custom_entities": False, "cdm_entities": False},
        SOLUTION_INFO,
    )

    assert filtered["effective_options"]["relationships"] is True
    assert filtered["effective_options"]["custom_entities"] is False
    assert filtered["effective_options"]["custom_global_choices"] is False
    assert filtered["effective_options"]["solution"] is False


def test_history_without_results_exhausts_selected_categories():
    history = [{"rollback_options": {"relationships": True, "custom_entities": False, "solution": True}}]

    removed = collect_removed_components(history)
    filtered = filter_remaining_components(ROLLBACK_DATA, history, None, SOLUTION_INFO)

    assert removed["exhausted"] == {"relationships"}
    assert removed["solution"] is True
    assert filtered["effective_rollback_data"]["relationships"] == []
    assert len(filtered["effective_rollback_data"]["custom_entities"]) == 2
    assert filtered["effective_options"]["solution"] is False


def test_relationship_map_form_is_normalized():
    relationships = normalize_relationships({"Professor->Course": {"schema_name": "ts_professor_course"}})

    assert relationships == [
        {"schema_name": "ts_professor_course", "from_entity": "Professor", "to_entity": "Course"}
    ]


def test_remaining_categories_after_two_passes():
    history = [
        _pass(
            {"relationships": True},
            {"relationships": ["ts_professor_course", "ts_contact_course"]},
        ),
        _pass(
            {"custom_entities": True, "cdm_entities": True, "custom_global_choices": True},
            {
                "custom_entities": ["ts_professor", "ts_course"],
                "cdm_entities": ["contact"],
                "custom_global_choices": ["ts_course_level"],
            },
        ),
    ]

    assert remaining_categories(ROLLBACK_DATA, history, SOLUTION_INFO) == ["solution", "publisher"]
    assert remaining_categories(ROLLBACK_DATA, [], SOLUTION_INFO) == [
        "relationships",
        "custom_entities",
        "cdm_entities",
        "custom_global_choices",
        "solution",
        "publisher",
    ]


def test_filtering_leaves_caller_inputs_untouched():
    rollback_data = copy.deepcopy(ROLLBACK_DATA)
    solution_info = dict(SOLUTION_INFO)
    requested = {"relationships": True, "custom_entities": True}
    history = [_pass({"relationships": True, "solution": True}, {"relationships": ["ts_professor_course"], "solution": True})]

    filtered = filter_remaining_components(rollback_data, history, requested, solution_info)
    filtered["effective_rollback_data"]["relationships"][0]["schema_name"] = "changed"
    filtered["effective_rollback_data"]["custom_entities"].clear()
    filtered["requested_options"]["publisher"] = True

    assert requested == {"relationships": True, "custom_entities": True}
    assert rollback_data == ROLLBACK_DATA
    assert solution_info == SOLUTION_INFO
    assert filtered["effective_rollback_data"]["solution_info"]["solution_id"] is None
