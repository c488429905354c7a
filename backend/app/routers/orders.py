"""定投订单 API 路由"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.db import get_session
from app.core.errors import (
    ConflictError,
    DcaError,
    OrderNotFoundError,
    OwnershipError,
    ValidationError,
)
from app.schemas.credential import AuthorizationRequest, CredentialResponse
from app.schemas.order import (
    CancelResponse,
    ExecuteRequest,
    ExecuteResponse,
    ExecutionRecordResponse,
    OrderCreateRequest,
    OrderCreateResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatsResponse,
    OwnerActionRequest,
    SweepResponse,
)
from app.services.execution_pipeline import ExecutionPipeline, execution_pipeline
from app.services.order_service import OrderService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def get_pipeline() -> ExecutionPipeline:
    return execution_pipeline


def get_order_service(
    session: AsyncSession = Depends(get_session),
    pipeline: ExecutionPipeline = Depends(get_pipeline),
    settings: Settings = Depends(get_settings),
) -> OrderService:
    return OrderService(session, pipeline, settings)


def _http_error(e: DcaError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, OwnershipError):
        return HTTPException(status_code=403, detail=e.message)
    if isinstance(e, OrderNotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, ConflictError):
        return HTTPException(status_code=409, detail=e.message)
    logger.error(f"订单操作失败: {e}")
    return HTTPException(status_code=500, detail=e.message)


async def _internal_error(session: AsyncSession, action: str, e: Exception) -> HTTPException:
    await session.rollback()
    logger.error(f"{action}失败: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=f"{action}失败: {str(e)}")


@router.post("", response_model=OrderCreateResponse)
async def create_order(
    request: OrderCreateRequest,
    service: OrderService = Depends(get_order_service),
    session: AsyncSession = Depends(get_session),
) -> OrderCreateResponse:
    """
    创建定投订单

    同时为订单签发委托凭证，返回所有者需要确认的授权说明。
    """
    try:
        order, credential, authorization = await service.create_order(
            owner_identity=request.owner_identity,
            execution_identity=request.execution_identity,
            sell_asset=request.sell_asset,
            buy_asset=request.buy_asset,
            total_amount=int(request.total_amount),
            frequency=request.frequency,
            duration_days=request.duration_days,
            fee_basis_points=request.fee_basis_points,
        )
        return OrderCreateResponse(
            order=OrderResponse.model_validate(order),
            credential=CredentialResponse.model_validate(credential),
            authorization=AuthorizationRequest(**authorization),
        )
    except HTTPException:
        raise
    except DcaError as e:
        raise _http_error(e)
    except Exception as e:
        raise await _internal_error(session, "创建订单", e)


@router.get("", response_model=OrderListResponse)
async def list_orders(
    owner: str = Query(..., description="订单所有者身份"),
    service: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    orders, stats = await service.list_orders(owner)
    return OrderListResponse(
        orders=[OrderResponse.model_validate(o) for o in orders],
        stats=OrderStatsResponse(**stats),
    )


@router.get("/stats", response_model=OrderStatsResponse)
async def order_stats(
    owner: str = Query(..., description="订单所有者身份"),
    service: OrderService = Depends(get_order_service),
) -> OrderStatsResponse:
    return OrderStatsResponse(**await service.stats(owner))


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    try:
        return OrderResponse.model_validate(await service.get_order(order_id))
    except DcaError as e:
        raise _http_error(e)


@router.get("/{order_id}/executions", response_model=list[ExecutionRecordResponse])
async def list_executions(
    order_id: str,
    service: OrderService = Depends(get_order_service),
) -> list[ExecutionRecordResponse]:
    try:
        records = await service.list_executions(order_id)
    except DcaError as e:
        raise _http_error(e)
    return [ExecutionRecordResponse.model_validate(r) for r in records]


@router.post("/{order_id}/pause", response_model=OrderResponse)
async def pause_order(
    order_id: str,
    request: OwnerActionRequest,
    service: OrderService = Depends(get_order_service),
    session: AsyncSession = Depends(get_session),
) -> OrderResponse:
    try:
        return OrderResponse.model_validate(await service.pause(order_id, request.owner_identity))
    except HTTPException:
        raise
    except DcaError as e:
        raise _http_error(e)
    except Exception as e:
        raise await _internal_error(session, "暂停订单", e)


@router.post("/{order_id}/resume", response_model=OrderResponse)
async def resume_order(
    order_id: str,
    request: OwnerActionRequest,
    service: OrderService = Depends(get_order_service),
    session: AsyncSession = Depends(get_session),
) -> OrderResponse:
    try:
        return OrderResponse.model_validate(await service.resume(order_id, request.owner_identity))
    except HTTPException:
        raise
    except DcaError as e:
        raise _http_error(e)
    except Exception as e:
        raise await _internal_error(session, "恢复订单", e)


@router.post("/{order_id}/cancel", response_model=CancelResponse)
async def cancel_order(
    order_id: str,
    request: OwnerActionRequest,
    service: OrderService = Depends(get_order_service),
    session: AsyncSession = Depends(get_session),
) -> CancelResponse:
    """取消订单，作废委托凭证，并尝试把执行账户中的资产转回所有者"""
    try:
        order, sweep = await service.cancel(order_id, request.owner_identity)
        return CancelResponse(order=OrderResponse.model_validate(order), sweep=SweepResponse(**sweep))
    except HTTPException:
        raise
    except DcaError as e:
        raise _http_error(e)
    except Exception as e:
        raise await _internal_error(session, "取消订单", e)


@router.post("/{order_id}/sweep", response_model=SweepResponse)
async def sweep_order_funds(
    order_id: str,
    request: OwnerActionRequest,
    service: OrderService = Depends(get_order_service),
) -> SweepResponse:
    try:
        return SweepResponse(**await service.sweep(order_id, request.owner_identity))
    except DcaError as e:
        raise _http_error(e)


@router.post("/{order_id}/credential", response_model=OrderCreateResponse)
async def reissue_credential(
    order_id: str,
    request: OwnerActionRequest,
    service: OrderService = Depends(get_order_service),
    session: AsyncSession = Depends(get_session),
) -> OrderCreateResponse:
    """重新签发委托凭证（旧凭证立即撤销）"""
    try:
        order, credential, authorization = await service.reissue_credential(order_id, request.owner_identity)
        return OrderCreateResponse(
            order=OrderResponse.model_validate(order),
            credential=CredentialResponse.model_validate(credential),
            authorization=AuthorizationRequest(**authorization),
        )
    except HTTPException:
        raise
    except DcaError as e:
        raise _http_error(e)
    except Exception as e:
        raise await _internal_error(session, "重新签发凭证", e)


@router.post("/{order_id}/execute", response_model=ExecuteResponse)
async def execute_order(
    order_id: str,
    request: ExecuteRequest,
    service: OrderService = Depends(get_order_service),
    session: AsyncSession = Depends(get_session),
) -> ExecuteResponse:
    """
    手动执行一期

    凭证未覆盖本期操作时返回 pending_authorization，不提交任何交易。
    """
    try:
        result = await service.execute_manually(order_id, request.caller_identity)
    except HTTPException:
        raise
    except DcaError as e:
        raise _http_error(e)
    except Exception as e:
        raise await _internal_error(session, "手动执行订单", e)

    execution = result["execution"]
    authorization = result["authorization"]
    return ExecuteResponse(
        status=result["status"],
        execution=ExecutionRecordResponse.model_validate(execution) if execution is not None else None,
        authorization=AuthorizationRequest(**authorization) if authorization is not None else None,
    )
