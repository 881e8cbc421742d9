# backend/push_console/notifications/router.py

"""
通知ライフサイクル用の FastAPI ルーター定義。

- /notifications 系: 一覧・作成・編集・予約・キャンセル・削除・送信
- /audience 系: 送信先の選択肢（グループ・デバイスディレクトリ）

エラー分類は kind 付きの detail として返し、UI 側で個別のメッセージを出せるようにする。
"""

from __future__ import annotations

import logging
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Response, status

from .errors import (
    EmptyAudienceError,
    InvalidPayloadError,
    InvalidScheduleError,
    InvalidTransitionError,
    NotificationError,
    NotificationNotFoundError,
    ResolutionFailedError,
    UpstreamFailureError,
)
from .factory import get_notification_service
from .reconciliation import Snapshot
from .schemas import (
    CreateNotificationRequest,
    DeviceListResponse,
    DispatchResult,
    Notification,
    NotificationListResponse,
    RescheduleRequest,
    SaveEditsRequest,
    ScheduleRequest,
    SendRequest,
    UserGroupListResponse,
)
from .service import NotificationService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["notifications"])

_STATUS_BY_ERROR = (
    (InvalidPayloadError, status.HTTP_400_BAD_REQUEST),
    (InvalidScheduleError, status.HTTP_400_BAD_REQUEST),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (EmptyAudienceError, 422),
    (NotificationNotFoundError, status.HTTP_404_NOT_FOUND),
    (ResolutionFailedError, status.HTTP_502_BAD_GATEWAY),
    (UpstreamFailureError, status.HTTP_502_BAD_GATEWAY),
)


def _raise_http(exc: NotificationError) -> NoReturn:
    """NotificationError を HTTPException に変換して投げる。"""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=status_code, detail=exc.to_detail()) from exc
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=exc.to_detail(),
    ) from exc


def _raise_unexpected(action: str, exc: Exception) -> NoReturn:
    # 想定外の例外は 500 として返す（詳細はログ側で確認）
    logger.exception("Unexpected error during %s", action)
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Internal server error during {action}.",
    ) from exc


# ---- 一覧 ----------------------------------------------------------------


@router.get(
    "/notifications",
    response_model=NotificationListResponse,
    summary="通知一覧の取得",
)
def list_notifications(
    service: NotificationService = Depends(get_notification_service),
) -> NotificationListResponse:
    try:
        items = service.list_notifications()
    except NotificationError as exc:
        _raise_http(exc)
    except Exception as exc:  # noqa: BLE001
        _raise_unexpected("list notifications", exc)

    return NotificationListResponse(items=items, count=len(items))


@router.get(
    "/notifications/scheduled",
    response_model=NotificationListResponse,
    summary="予約済み通知一覧の取得",
)
def list_scheduled_notifications(
    service: NotificationService = Depends(get_notification_service),
) -> NotificationListResponse:
    try:
        items = service.list_scheduled()
    except NotificationError as exc:
        _raise_http(exc)
    except Exception as exc:  # noqa: BLE001
        _raise_unexpected("list scheduled notifications", exc)

    return NotificationListResponse(items=items, count=len(items))


# ---- 作成・編集 ----------------------------------------------------------


@router.post(
    "/notifications",
    response_model=Notification,
    status_code=status.HTTP_201_CREATED,
    summary="通知の新規作成（予約を含む）",
)
def create_notification(
    body: CreateNotificationRequest,
    service: NotificationService = Depends(get_notification_service),
) -> Notification:
    """
    DRAFT -> PENDING。sendAt を指定すると予約通知として保存する。
    """
    try:
        return service.create(
            body,
            target=body.target,
            send_at=body.send_at,
            created_by=body.created_by,
        )
    except NotificationError as exc:
        _raise_http(exc)
    except Exception as exc:  # noqa: BLE001
        _raise_unexpected("create notification", exc)


@router.patch(
    "/notifications/{notification_id}",
    response_model=Notification,
    summary="編集内容の保存（変更フィールドのみ）",
)
def save_notification_edits(
    notification_id: str,
    body: SaveEditsRequest,
    service: NotificationService = Depends(get_notification_service),
) -> Notification:
    """
    body.original（編集セッション開始時点の値）と body.current を比較し、
    変更されたフィールドだけを上流に書き戻す。
    """
    try:
        notification = service.get_notification(notification_id)
        return service.save_edits(
            notification,
            Snapshot.from_content(body.original),
            body.current,
        )
    except NotificationError as exc:
        _raise_http(exc)
    except Exception as exc:  # noqa: BLE001
        _raise_unexpected("save notification", exc)


@router.post(
    "/notifications/{notification_id}/schedule",
    response_model=Notification,
    summary="保存済み通知の予約",
)
def schedule_notification(
    notification_id: str,
    body: ScheduleRequest,
    service: NotificationService = Depends(get_notification_service),
) -> Notification:
    try:
        notification = service.get_notification(notification_id)
        return service.schedule(notification, send_at=body.send_at, target=body.target)
    except NotificationError as exc:
        _raise_http(exc)
    except Exception as exc:  # noqa: BLE001
        _raise_unexpected("schedule notification", exc)


@router.patch(
    "/notifications/{notification_id}/schedule",
    response_model=Notification,
    summary="予約日時・送信先の変更",
)
def reschedule_notification(
    notification_id: str,
    body: RescheduleRequest,
    service: NotificationService = Depends(get_notification_service),
) -> Notification:
    try:
        notification = service.get_notification(notification_id)
        return service.reschedule(notification, send_at=body.send_at, target=body.target)
    except NotificationError as exc:
        _raise_http(exc)
    except Exception as exc:  # noqa: BLE001
        _raise_unexpected("reschedule notification", exc)


@router.post(
    "/notifications/{notification_id}/cancel",
    response_model=Notification,
    summary="予約のキャンセル",
)
def cancel_notification(
    notification_id: str,
    service: NotificationService = Depends(get_notification_service),
) -> Notification:
    """
    PENDING -> CANCELLED。既にキャンセル済みの場合はそのまま 200 を返す。
    """
    try:
        notification = service.get_notification(notification_id)
        return service.cancel(notification)
    except NotificationError as exc:
        _raise_http(exc)
    except Exception as exc:  # noqa: BLE001
        _raise_unexpected("cancel notification", exc)


@router.delete(
    "/notifications/{notification_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="通知の削除",
)
def delete_notification(
    notification_id: str,
    service: NotificationService = Depends(get_notification_service),
) -> Response:
    try:
        service.delete(notification_id)
    except NotificationError as exc:
        _raise_http(exc)
    except Exception as exc:  # noqa: BLE001
        _raise_unexpected("delete notification", exc)

    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---- 送信 ----------------------------------------------------------------


@router.post(
    "/notifications/send",
    response_model=DispatchResult,
    summary="通知の送信",
    description=(
        "notificationId を指定すると保存済み通知として送信し、成功時に sent に遷移する。"
        "指定しない場合はアドホック送信として扱う。"
    ),
)
def send_notification(
    body: SendRequest,
    service: NotificationService = Depends(get_notification_service),
) -> DispatchResult:
    try:
        notification = None
        snapshot = None
        if body.notification_id:
            notification = service.get_notification(body.notification_id)
            if body.original is not None:
                snapshot = Snapshot.from_content(body.original)

        return service.send(
            body.current,
            target=body.target,
            notification=notification,
            snapshot=snapshot,
        )
    except NotificationError as exc:
        _raise_http(exc)
    except Exception as exc:  # noqa: BLE001
        _raise_unexpected("send notification", exc)


# ---- 送信先の選択肢 -------------------------------------------------------


@router.get(
    "/audience/groups",
    response_model=UserGroupListResponse,
    summary="選択可能なユーザーグループ一覧",
    tags=["audience"],
)
def list_user_groups(
    service: NotificationService = Depends(get_notification_service),
) -> UserGroupListResponse:
    try:
        items = service.list_groups()
    except NotificationError as exc:
        _raise_http(exc)
    except Exception as exc:  # noqa: BLE001
        _raise_unexpected("list user groups", exc)

    return UserGroupListResponse(items=items, count=len(items))


@router.get(
    "/audience/directory",
    response_model=DeviceListResponse,
    summary="デバイスディレクトリ（登録ユーザー）一覧",
    tags=["audience"],
)
def list_directory(
    service: NotificationService = Depends(get_notification_service),
) -> DeviceListResponse:
    try:
        items = service.list_directory()
    except NotificationError as exc:
        _raise_http(exc)
    except Exception as exc:  # noqa: BLE001
        _raise_unexpected("list directory", exc)

    return DeviceListResponse(items=items, count=len(items))
