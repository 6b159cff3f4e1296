import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from app.auth.dependencies import get_current_auth
from app.models.deployments import (
    ActiveRollbackItem,
    ActiveRollbacksResponse,
    CanRollbackResponse,
    DeployHistoryItem,
    DeployHistoryRequest,
    DeployHistoryResponse,
    DeploymentLookupRequest,
    DeployRequest,
    DeployResponse,
    DeployStatusResponse,
    RollbackRequest,
    RollbackResponse,
)
from app.services import deploy_service, rollback_service, token_manager
from app.services.dataverse import DataverseConnection, DataverseError
from app.services.deploy_validators import DeploymentValidationError, RollbackValidationError
from app.services.deployment_history import DeploymentHistory
from app.services.progress import ProgressRecorder, QueueProgressSink
from app.services.rollback_service import ActiveRollbackRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/deploy", tags=["deploy"])


def get_deployment_history(request: Request) -> DeploymentHistory:
    return request.app.state.deployment_history


def get_rollback_registry(request: Request) -> ActiveRollbackRegistry:
    return request.app.state.rollback_registry


async def get_dataverse_connection() -> DataverseConnection:
    return await token_manager.get_connection()


def _dataverse_http_error(error: DataverseError) -> HTTPException:
    return HTTPException(
        status_code=502,
        detail={
            "code": error.code,
            "message": error.message,
            "status_code": error.status_code,
            "operation": error.operation,
        },
    )


def _validation_http_error(error: DeploymentValidationError | RollbackValidationError) -> HTTPException:
    return HTTPException(
        status_code=getattr(error, "status_code", 400),
        detail={
            "code": getattr(error, "code", "deployment_invalid"),
            "message": error.message,
            "errors": error.errors,
        },
    )


def _error_payload(error: Exception) -> dict:
    if isinstance(error, (DeploymentValidationError, RollbackValidationError)):
        return _validation_http_error(error).detail
    if isinstance(error, DataverseError):
        return _dataverse_http_error(error).detail
    return {"code": "deploy_failed", "message": str(error) or "Deployment failed"}


@router.post("/execute", response_model=DeployResponse)
async def deploy_execute(
    body: DeployRequest,
    auth=Depends(get_current_auth),
    history: DeploymentHistory = Depends(get_deployment_history),
    conn: DataverseConnection = Depends(get_dataverse_connection),
) -> DeployResponse:
    auth.assert_permission("deploy.write")
    recorder = ProgressRecorder()

    try:
        result = await deploy_service.execute_deployment(
            conn,
            body.model_dump(),
            history=history,
            progress=recorder,
        )
    except DeploymentValidationError as error:
        raise _validation_http_error(error) from error
    except DataverseError as error:
        raise _dataverse_http_error(error) from error

    return DeployResponse(
        **result,
        progress=[event.to_dict() for event in recorder.events],
    )


@router.post("/execute-stream")
async def deploy_execute_stream(
    body: DeployRequest,
    auth=Depends(get_current_auth),
    history: DeploymentHistory = Depends(get_deployment_history),
    conn: DataverseConnection = Depends(get_dataverse_connection),
) -> StreamingResponse:
    auth.assert_permission("deploy.write")
    sink = QueueProgressSink()
    task = asyncio.create_task(
        deploy_service.execute_deployment(
            conn,
            body.model_dump(),
            history=history,
            progress=sink,
        )
    )

    def finished(done: asyncio.Task) -> None:
        error = None if done.cancelled() else done.exception()
        if error is not None and not isinstance(error, (DeploymentValidationError, DataverseError)):
            logger.error("Streamed deployment failed", exc_info=error)
        sink.queue.put_nowait(None)

    task.add_done_callback(finished)

    async def stream():
        while True:
            event = await sink.queue.get()
            if event is None:
                break
            yield json.dumps({"type": "progress", **event.to_dict()}) + "\n"

        try:
            result = task.result()
        except Exception as error:
            yield json.dumps({"type": "error", "error": _error_payload(error)}) + "\n"
            return
        yield json.dumps({"type": "result", "result": result}) + "\n"

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@router.post("/status", response_model=DeployStatusResponse)
async def deploy_status(
    body: DeploymentLookupRequest,
    auth=Depends(get_current_auth),
    history: DeploymentHistory = Depends(get_deployment_history),
) -> DeployStatusResponse:
    auth.assert_permission("deploy.read")

    record = await history.get_deployment_by_id(body.deployment_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Deployment not found")

    return DeployStatusResponse(
        deployment_id=record["deployment_id"],
        status=record.get("status", "failed"),
        timestamp=record.get("timestamp"),
        solution_info=record.get("solution_info") or {},
        summary=record.get("summary") or {},
        rollback_data=record.get("rollback_data") or {},
        rollback_info=record.get("rollback_info") or {},
        last_rollback=record.get("last_rollback"),
        warnings=[str(warning) for warning in record.get("warnings") or []],
        error=record.get("error"),
    )


@router.post("/history", response_model=DeployHistoryResponse)
async def deploy_history(
    body: DeployHistoryRequest,
    auth=Depends(get_current_auth),
    history: DeploymentHistory = Depends(get_deployment_history),
) -> DeployHistoryResponse:
    auth.assert_permission("deploy.read")

    records = await history.list_deployments(limit=body.limit)
    return DeployHistoryResponse(
        data=[
            DeployHistoryItem(
                deployment_id=record["deployment_id"],
                status=record.get("status", "failed"),
                timestamp=record.get("timestamp"),
                solution_name=(record.get("solution_info") or {}).get("solution_name"),
                summary=(record.get("summary") or {}).get("text"),
                rollback_count=len((record.get("rollback_info") or {}).get("rollbacks") or []),
            )
            for record in records
        ]
    )


@router.post("/rollback", response_model=RollbackResponse)
async def deploy_rollback(
    body: RollbackRequest,
    auth=Depends(get_current_auth),
    history: DeploymentHistory = Depends(get_deployment_history),
    registry: ActiveRollbackRegistry = Depends(get_rollback_registry),
    conn: DataverseConnection = Depends(get_dataverse_connection),
) -> RollbackResponse:
    auth.assert_permission("deploy.write")
    recorder = ProgressRecorder()

    try:
        result = await rollback_service.execute_rollback(
            conn,
            body.deployment_id,
            body.options.model_dump() if body.options is not None else None,
            history=history,
            registry=registry,
            progress=recorder,
        )
    except RollbackValidationError as error:
        raise _validation_http_error(error) from error
    except DataverseError as error:
        raise _dataverse_http_error(error) from error

    return RollbackResponse(
        **result,
        progress=[event.to_dict() for event in recorder.events],
    )


@router.post("/can-rollback", response_model=CanRollbackResponse)
async def deploy_can_rollback(
    body: DeploymentLookupRequest,
    auth=Depends(get_current_auth),
    history: DeploymentHistory = Depends(get_deployment_history),
) -> CanRollbackResponse:
    auth.assert_permission("deploy.read")
    return CanRollbackResponse(**await rollback_service.can_rollback(history, body.deployment_id))


@router.post("/rollbacks/active", response_model=ActiveRollbacksResponse)
async def deploy_active_rollbacks(
    auth=Depends(get_current_auth),
    registry: ActiveRollbackRegistry = Depends(get_rollback_registry),
) -> ActiveRollbacksResponse:
    auth.assert_permission("deploy.read")
    return ActiveRollbacksResponse(
        data=[ActiveRollbackItem(**entry) for entry in registry.list_active()]
    )
