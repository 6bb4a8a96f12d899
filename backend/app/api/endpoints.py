from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from app.core.errors import EndpointNotConnectedError, EndpointNotFoundError
from app.dependencies import get_connection_manager
from app.schemas.endpoints import EndpointStatusResponse, PublishRequest, PublishResponse
from app.services.connection_manager import ConnectionManager


router = APIRouter(prefix="/api", tags=["endpoints"])


@router.get("/endpoints/status", response_model=list[EndpointStatusResponse])
def get_endpoint_statuses(
    manager: ConnectionManager = Depends(get_connection_manager),
) -> list[EndpointStatusResponse]:
    return [EndpointStatusResponse.model_validate(item) for item in manager.get_all_statuses()]


@router.post("/endpoints/{endpoint_id}/retry", response_model=EndpointStatusResponse)
def post_endpoint_retry(
    endpoint_id: int,
    manager: ConnectionManager = Depends(get_connection_manager),
) -> EndpointStatusResponse:
    try:
        result = manager.retry(endpoint_id)
    except EndpointNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Endpoint not found")
    return EndpointStatusResponse.model_validate(result)


@router.post("/endpoints/{endpoint_id}/disconnect", response_model=EndpointStatusResponse)
def post_endpoint_disconnect(
    endpoint_id: int,
    manager: ConnectionManager = Depends(get_connection_manager),
) -> EndpointStatusResponse:
    try:
        result = manager.disconnect(endpoint_id)
    except EndpointNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Endpoint not found")
    return EndpointStatusResponse.model_validate(result)


@router.post("/endpoints/{endpoint_id}/publish", response_model=PublishResponse)
def post_endpoint_publish(
    endpoint_id: int,
    payload: PublishRequest,
    manager: ConnectionManager = Depends(get_connection_manager),
) -> PublishResponse:
    try:
        published, error = manager.publish(endpoint_id, payload.payload)
    except EndpointNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Endpoint not found")
    except EndpointNotConnectedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return PublishResponse(endpoint_id=endpoint_id, published=published, error=error)
