"""Shared fixtures: a fake Dataverse org, in-memory history, and no real waiting."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from app.services.deployment_history import InMemoryDeploymentHistory
from app.services.progress import ProgressRecorder
from app.services.rollback_service import ActiveRollbackRegistry
from tests.fake_dataverse import FakeDataverse


@pytest.fixture(autouse=True)
def no_waiting():
    with patch("app.services.dataverse.wait", new_callable=AsyncMock) as wait:
        yield wait


@pytest.fixture
def fake() -> FakeDataverse:
    return FakeDataverse()


@pytest.fixture
def conn(fake: FakeDataverse):
    return fake.connection()


@pytest.fixture
def history() -> InMemoryDeploymentHistory:
    return InMemoryDeploymentHistory()


@pytest.fixture
def registry() -> ActiveRollbackRegistry:
    return ActiveRollbackRegistry()


@pytest.fixture
def recorder() -> ProgressRecorder:
    return ProgressRecorder()


@pytest.fixture
def university_plan() -> dict:
    return {
        "solution_name": "UniversitySolution",
        "solution_display_name": "University",
        "publisher": {
            "unique_name": "testpublisher",
            "friendly_name": "Test Publisher",
            "prefix": "ts",
        },
        "entities": [
            {
                "name": "Professor",
                "attributes": [
                    {"name": "professor_id", "type": "string", "is_primary_key": True},
                    {"name": "name", "type": "string"},
                    {"name": "email", "type": "email"},
                ],
            },
            {
                "name": "Course",
                "attributes": [
                    {"name": "course_id", "type": "string", "is_primary_key": True},
                    {"name": "professor_id", "type": "string", "is_foreign_key": True},
                    {"name": "credits", "type": "int"},
                ],
            },
            {"name": "Contact", "attributes": []},
        ],
        "relationships": [
            {"from_entity": "Professor", "to_entity": "Course"},
            {"from_entity": "Contact", "to_entity": "Course"},
        ],
        "global_choices": [
            {
                "name": "course_level",
                "display_name": "Course Level",
                "options": [{"label": "Intro"}, {"label": "Advanced"}],
            }
        ],
    }
