"""Tests for one-to-many relationship creation."""

from __future__ import annotations

import pytest

from app.services import dataverse, relationship_builder
from app.services.relationship_builder import (
    build_cdm_map,
    build_relationship_payload,
    relationship_schema_name,
    resolve_logical_name,
)


def test_schema_name_is_lowercase_prefix_from_to():
    assert relationship_schema_name("ts", "Professor", "Course") == "ts_professor_course"
    assert relationship_schema_name("ts", "Student Group", "Course") == "ts_student_group_course"


def test_resolve_logical_name_prefers_cdm_map():
    cdm_map = build_cdm_map({"Customer": "account"})

    assert resolve_logical_name("Contact", "ts", cdm_map) == ("contact", True)
    assert resolve_logical_name("Customer", "ts", cdm_map) == ("account", True)
    assert resolve_logical_name("Case", "ts", cdm_map) == ("incident", True)
    assert resolve_logical_name("Course", "ts", cdm_map) == ("ts_course", False)


def test_relationship_payload_uses_remove_link_on_delete():
    payload = build_relationship_payload(
        "ts_professor_course",
        "ts",
        "Professor",
        "ts_professor",
        "Course",
        "ts_course",
    )

    assert payload["ReferencedEntity"] == "ts_professor"
    assert payload["ReferencingEntity"] == "ts_course"
    assert payload["CascadeConfiguration"]["Delete"] == "RemoveLink"
    assert payload["Lookup"]["SchemaName"] == "ts_Professorid"
    assert payload["ReferencedEntityNavigationPropertyName"] == "ts_courses"


@pytest.mark.asyncio
async def test_creates_relationships_between_custom_and_cdm_tables(fake, conn, no_waiting):
    for logical_name in ("ts_professor", "ts_course", "contact"):
        fake.add_entity(logical_name)

    result = await relationship_builder.create_relationships_smart(
        conn,
        [
            {"from_entity": "Professor", "to_entity": "Course"},
            {"from_entity": "Contact", "to_entity": "Course"},
        ],
        publisher_prefix="ts",
        cdm_entity_map=build_cdm_map(),
    )

    assert [item["schema_name"] for item in result["created"]] == ["ts_professor_course", "ts_contact_course"]
    assert result["failed"] == []
    assert fake.relationships["ts_contact_course"]["payload"]["ReferencedEntity"] == "contact"
    waits = [call.args[0] for call in no_waiting.await_args_list]
    assert waits[0] == 25.0


@pytest.mark.asyncio
async def test_existing_relationship_counts_as_created(fake, conn):
    fake.add_entity("ts_professor")
    fake.add_entity("ts_course")
    fake.add_relationship("ts_professor_course")

    result = await relationship_builder.create_relationships_smart(
        conn,
        [{"from_entity": "Professor", "to_entity": "Course"}],
        publisher_prefix="ts",
    )

    assert result["created"][0]["existing"] is True
    assert fake.calls("POST", "RelationshipDefinitions") == []


@pytest.mark.asyncio
async def test_missing_endpoint_is_reported_without_creating(fake, conn):
    fake.add_entity("ts_course")

    result = await relationship_builder.create_relationships_smart(
        conn,
        [{"from_entity": "Professor", "to_entity": "Course"}],
        publisher_prefix="ts",
    )

    assert result["created"] == []
    assert result["failed"][0]["error"]["code"] == "endpoint_missing"
    assert "ts_professor" in result["failed"][0]["error"]["message"]


@pytest.mark.asyncio
async def test_failed_relationship_does_not_stop_the_batch(fake, conn):
    for logical_name in ("ts_professor", "ts_course", "ts_student"):
        fake.add_entity(logical_name)
    fake.fail("POST", r"^RelationshipDefinitions$", message="Navigation property name is invalid")

    result = await relationship_builder.create_relationships_smart(
        conn,
        [
            {"from_entity": "Professor", "to_entity": "Course"},
            {"from_entity": "Course", "to_entity": "Student"},
        ],
        publisher_prefix="ts",
    )

    assert [item["schema_name"] for item in result["failed"]] == ["ts_professor_course"]
    assert [item["schema_name"] for item in result["created"]] == ["ts_course_student"]


@pytest.mark.asyncio
async def test_transient_relationship_errors_are_retried(fake, conn):
    fake.add_entity("ts_professor")
    fake.add_entity("ts_course")
    fake.fail("POST", r"^RelationshipDefinitions$", status_code=429, message="Too many requests", times=2)

    result = await relationship_builder.create_relationships_smart(
        conn,
        [{"from_entity": "Professor", "to_entity": "Course"}],
        publisher_prefix="ts",
    )

    assert result["created"][0]["existing"] is False
    assert len(fake.calls("POST", "RelationshipDefinitions")) == 3


@pytest.mark.asyncio
async def test_no_relationships_skips_settling(conn, no_waiting):
    result = await relationship_builder.create_relationships_smart(conn, [], publisher_prefix="ts")

    assert result == {"created": [], "failed": []}
    no_waiting.assert_not_awaited()


@pytest.mark.asyncio
async def test_timed_out_relationship_that_landed_counts_as_created(fake, conn):
    fake.add_entity("ts_professor")
    fake.add_entity("ts_course")
    fake.fail("POST", r"^RelationshipDefinitions$", timeout=True, applied=True)

    result = await relationship_builder.create_relationships_smart(
        conn,
        [{"from_entity": "Professor", "to_entity": "Course"}],
        publisher_prefix="ts",
    )

    assert [item["schema_name"] for item in result["created"]] == ["ts_professor_course"]
    assert result["failed"] == []
    assert len(fake.calls("POST", "RelationshipDefinitions")) == 1


@pytest.mark.asyncio
async def test_duplicate_relationship_post_is_rejected(fake, conn):
    fake.add_entity("ts_professor")
    fake.add_entity("ts_course")
    fake.add_relationship("ts_professor_course")
    payload = build_relationship_payload(
        "ts_professor_course",
        "ts",
        "Professor",
        "ts_professor",
        "Course",
        "ts_course",
    )

    with pytest.raises(dataverse.DataverseError, match="already exists"):
        await dataverse.create_relationship(conn, payload)
