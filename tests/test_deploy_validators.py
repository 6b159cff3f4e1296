"""Tests for deployment request and rollback configuration validation."""

from __future__ import annotations

from app.services.deploy_validators import (
    normalize_rollback_options,
    validate_deploy_request,
    validate_rollback_configuration,
)

ROLLBACK_DATA = {
    "relationships": [{"from_entity": "Professor", "to_entity": "Course", "schema_name": "ts_professor_course"}],
    "custom_entities": [{"name": "Professor", "logical_name": "ts_professor"}],
    "cdm_entities": [{"name": "Contact", "logical_name": "contact"}],
    "global_choices_created": [{"name": "ts_course_level", "display_name": "Course Level"}],
}
SOLUTION_INFO = {"solution_name": "UniversitySolution", "solution_id": "sol-1", "publisher_prefix": "ts"}


def _options(**overrides) -> dict:
    return {**normalize_rollback_options(None), **overrides}


def _fields(errors: list[dict]) -> list[str]:
    return [error["field"] for error in errors]


def test_valid_deploy_request_has_no_errors(university_plan):
    assert validate_deploy_request(university_plan) == []


def test_deploy_request_reports_each_problem(university_plan):
    plan = {
        **university_plan,
        "solution_name": "1bad name",
        "publisher": {"unique_name": "p", "friendly_name": "", "prefix": "TooLongPrefix"},
        "relationships": [{"from_entity": "Course", "to_entity": "course"}],
        "global_choices": [{"name": "level", "options": [{"label": "A", "value": 1}, {"label": "B", "value": 1}]}],
    }

    assert _fields(validate_deploy_request(plan)) == [
        "solution_name",
        "publisher.friendly_name",
        "publisher.prefix",
        "relationships[0]",
        "global_choices[0].options[1].value",
    ]


def test_duplicate_entity_names_are_rejected(university_plan):
    plan = {**university_plan, "entities": [{"name": "Course"}, {"name": "course"}]}
    assert _fields(validate_deploy_request(plan)) == ["entities[1].name"]


def test_omitted_options_select_everything():
    assert normalize_rollback_options(None) == {
        "relationships": True,
        "custom_entities": True,
        "cdm_entities": True,
        "custom_global_choices": True,
        "solution": True,
        "publisher": True,
    }


def test_supplied_options_select_only_true_categories():
    assert normalize_rollback_options({"relationships": True}) == {
        "relationships": True,
        "custom_entities": False,
        "cdm_entities": False,
        "custom_global_choices": False,
        "solution": False,
        "publisher": False,
    }


def test_full_rollback_is_valid():
    result = validate_rollback_configuration(_options(), ROLLBACK_DATA, SOLUTION_INFO)
    assert result["valid"] is True
    assert result["warnings"] == []


def test_entities_without_relationships_is_rejected():
    result = validate_rollback_configuration(
        _options(relationships=False, solution=False, publisher=False),
        ROLLBACK_DATA,
        SOLUTION_INFO,
    )
    assert result["valid"] is False
    assert _fields(result["errors"]) == ["options.custom_entities"]


def test_entities_without_relationships_is_allowed_when_none_remain():
    data = {**ROLLBACK_DATA, "relationships": []}
    result = validate_rollback_configuration(
        _options(relationships=False, solution=False, publisher=False),
        data,
        SOLUTION_INFO,
    )
    assert result["valid"] is True


def test_solution_requires_entities_removed():
    result = validate_rollback_configuration(
        _options(custom_entities=False, cdm_entities=False, publisher=False),
        ROLLBACK_DATA,
        SOLUTION_INFO,
    )
    assert _fields(result["errors"]) == ["options.solution"]
    assert "custom entities and CDM entities" in result["errors"][0]["message"]


def test_publisher_requires_solution_removed():
    result = validate_rollback_configuration(
        _options(solution=False),
        ROLLBACK_DATA,
        SOLUTION_INFO,
    )
    assert _fields(result["errors"]) == ["options.publisher"]

    without_solution = validate_rollback_configuration(
        _options(solution=False),
        ROLLBACK_DATA,
        {**SOLUTION_INFO, "solution_id": None},
    )
    assert without_solution["valid"] is True


def test_choices_with_remaining_entities_only_warns():
    result = validate_rollback_configuration(
        normalize_rollback_options(
            {
                "relationships": False,
                "custom_entities": False,
                "cdm_entities": False,
                "custom_global_choices": True,
                "solution": False,
                "publisher": False,
            }
        ),
        ROLLBACK_DATA,
        SOLUTION_INFO,
    )
    assert result["valid"] is True
    assert len(result["warnings"]) == 1


def test_nothing_selected_is_rejected():
    options = {key: False for key in _options()}
    result = validate_rollback_configuration(options, ROLLBACK_DATA, SOLUTION_INFO)
    assert _fields(result["errors"]) == ["options"]
