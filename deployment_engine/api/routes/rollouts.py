import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Response

from deployment_engine.api.container import get_engine_service
from deployment_engine.api.schemas.rollout import CancelResponse, RolloutAccepted, RolloutResponse
from deployment_engine.core.errors import (
    ConfigError,
    DeploymentEngineError,
    PreconditionError,
    ReloadRejected,
    RollbackUnavailableError,
    RolloutInProgressError,
)
from deployment_engine.core.models import ServiceKind

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rollouts", tags=["rollouts"])


def _to_http(e: DeploymentEngineError) -> HTTPException:
    if isinstance(e, RolloutInProgressError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ConfigError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, RollbackUnavailableError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ReloadRejected):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, PreconditionError):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _run_in_background(service, environment: str, lease):
    try:
        service.rollout(environment, lease=lease)
    except DeploymentEngineError as e:
        logger.error(f"[api] rollout of '{environment}' failed: {e}")


@router.post("/{environment}", status_code=202)
def trigger_rollout(
    environment: str,
    background_tasks: BackgroundTasks,
    response: Response,
    wait: bool = False,
    service=Depends(get_engine_service),
):
    """
    Converge an environment. Runs in the background unless wait=true,
    in which case the finished rollout is returned.

    The environment is reserved before the request is answered, so a second
    trigger is rejected with 409 even before the first rollout has started.
    """
    if wait:
        try:
            record = service.rollout(environment)
        except DeploymentEngineError as e:
            raise _to_http(e)
        response.status_code = 200
        return RolloutResponse.from_record(record)

    try:
        lease = service.reserve_rollout(environment)
    except DeploymentEngineError as e:
        raise _to_http(e)

    background_tasks.add_task(_run_in_background, service, environment, lease)
    return RolloutAccepted(environment=environment, status="accepted")


@router.get("/{environment}", response_model=RolloutResponse)
def get_rollout_status(
    environment: str,
    service=Depends(get_engine_service),
):
    record = service.status(environment)

    if not record:
        raise HTTPException(status_code=404, detail="No rollout recorded for this environment")

    return RolloutResponse.from_record(record)


@router.post("/{environment}/cancel", response_model=CancelResponse)
def cancel_rollout(
    environment: str,
    service=Depends(get_engine_service),
):
    rollout_id = service.cancel(environment)
    return CancelResponse(
        environment=environment,
        rollout_id=rollout_id,
        cancelled=rollout_id is not None,
    )


@router.post("/{environment}/rollback/{kind}", response_model=RolloutResponse)
def rollback_service(
    environment: str,
    kind: ServiceKind,
    service=Depends(get_engine_service),
):
    try:
        record = service.rollback(environment, kind)
    except DeploymentEngineError as e:
        raise _to_http(e)

    return RolloutResponse.from_record(record)
