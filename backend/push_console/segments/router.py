# backend/push_console/segments/router.py

from __future__ import annotations

from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, status

from push_console.notifications.errors import InvalidPayloadError, NotificationError
from push_console.notifications.schemas import DeviceListResponse, SegmentListResponse
from push_console.upstream.client import UpstreamClient
from push_console.upstream.config import get_upstream_settings

from .service import SegmentService

router = APIRouter(prefix="/segments", tags=["segments"])


@lru_cache()
def get_segment_service() -> SegmentService:
    """
    SegmentService のシングルトンインスタンスを取得する。

    テストでは dependency_overrides で差し替える前提。
    """
    return SegmentService(UpstreamClient(get_upstream_settings()))


def _to_http(exc: NotificationError) -> HTTPException:
    if isinstance(exc, InvalidPayloadError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_detail())
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_detail())


@router.get(
    "",
    response_model=SegmentListResponse,
    summary="セグメント一覧の取得",
)
def list_segments(
    service: SegmentService = Depends(get_segment_service),
) -> SegmentListResponse:
    try:
        items = service.list_segments()
    except NotificationError as exc:
        raise _to_http(exc) from exc

    return SegmentListResponse(items=items, count=len(items))


@router.get(
    "/{segment_id}/members",
    response_model=DeviceListResponse,
    summary="セグメントに属するユーザー一覧",
)
def list_segment_members(
    segment_id: str,
    service: SegmentService = Depends(get_segment_service),
) -> DeviceListResponse:
    try:
        items = service.list_members(segment_id)
    except NotificationError as exc:
        raise _to_http(exc) from exc

    return DeviceListResponse(items=items, count=len(items))


@router.post(
    "/sync",
    status_code=status.HTTP_202_ACCEPTED,
    summary="セグメント再計算の依頼",
    description="上流 CRM にセグメントの再計算を依頼する。結果はここでは返さない。",
)
def sync_segments(
    service: SegmentService = Depends(get_segment_service),
) -> dict:
    try:
        service.sync()
    except NotificationError as exc:
        raise _to_http(exc) from exc

    return {"status": "accepted"}
