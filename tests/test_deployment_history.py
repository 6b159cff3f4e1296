"""Tests for deployment history stores and progress sinks."""

from __future__ import annotations

import asyncio

import pytest

from app.services.deployment_history import InMemoryDeploymentHistory
from app.services.progress import ProgressRecorder, QueueProgressSink, emit_progress


def _record(deployment_id: str, timestamp: str) -> dict:
    return {
        "deployment_id": deployment_id,
        "status": "success",
        "timestamp": timestamp,
        "rollback_data": {"custom_entities": [{"name": "Course"}]},
        "rollback_info": {"rollbacks": []},
    }


@pytest.mark.asyncio
async def test_in_memory_history_round_trip(history: InMemoryDeploymentHistory):
    await history.record_deployment(_record("deploy_1", "2026-01-01T00:00:00+00:00"))

    record = await history.get_deployment_by_id("deploy_1")
    record["rollback_data"]["custom_entities"].clear()

    stored = await history.get_deployment_by_id("deploy_1")
    assert stored["rollback_data"]["custom_entities"] == [{"name": "Course"}]
    assert await history.get_deployment_by_id("deploy_missing") is None


@pytest.mark.asyncio
async def test_update_merges_patch_and_status(history: InMemoryDeploymentHistory):
    await history.record_deployment(_record("deploy_1", "2026-01-01T00:00:00+00:00"))

    updated = await history.update_deployment(
        "deploy_1",
        "modified",
        {"rollback_info": {"rollbacks": [{"rollback_id": "rollback_1"}]}},
    )

    assert updated["status"] == "modified"
    assert updated["rollback_data"] == {"custom_entities": [{"name": "Course"}]}
    assert (await history.get_deployment_by_id("deploy_1"))["rollback_info"]["rollbacks"][0]["rollback_id"] == "rollback_1"
    assert await history.update_deployment("deploy_missing", "modified", {}) is None


@pytest.mark.asyncio
async def test_list_is_newest_first_and_limited(history: InMemoryDeploymentHistory):
    await history.record_deployment(_record("deploy_old", "2026-01-01T00:00:00+00:00"))
    await history.record_deployment(_record("deploy_new", "2026-02-01T00:00:00+00:00"))

    records = await history.list_deployments(limit=1)

    assert [record["deployment_id"] for record in records] == ["deploy_new"]


def test_recorder_keeps_events_in_order():
    recorder = ProgressRecorder()

    emit_progress(recorder, "publisher", "Ensuring publisher")
    emit_progress(recorder, "solution", "Ensuring solution", deployment_id="deploy_1")

    assert recorder.stages() == ["publisher", "solution"]
    assert recorder.events[1].context == {"deployment_id": "deploy_1"}
    assert recorder.events[1].to_dict()["message"] == "Ensuring solution"


def test_failing_sink_does_not_raise():
    class BrokenSink:
        def emit(self, event):
            raise RuntimeError("closed")

    emit_progress(BrokenSink(), "entities", "Creating table")
    emit_progress(None, "entities", "Creating table")


@pytest.mark.asyncio
async def test_queue_sink_delivers_events():
    sink = QueueProgressSink(asyncio.Queue())

    emit_progress(sink, "relationships", "Creating relationship")

    event = await sink.queue.get()
    assert event.stage == "relationships"
