# backend/push_console/notifications/lifecycle.py

"""
通知のライフサイクル（状態遷移）定義。

状態:
- DRAFT: まだ永続化されていない
- PENDING: 保存済み・未送信（sendAt は任意）
- SENT: 送信済み（終端）
- CANCELLED: キャンセル済み（終端）

遷移:
- DRAFT -> PENDING: title / body が空でなく、data が JSON オブジェクトとして解釈できること
- PENDING -> PENDING: 編集・再予約。sendAt を指定する場合は過去でないこと
- PENDING -> SENT: 送信が上流で成功した場合のみ
- PENDING -> CANCELLED: いつでも可。CANCELLED に対するキャンセルは何もしない

このモジュールは検証と新しい Notification の生成だけを行い、上流への通信はしない。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from .errors import InvalidPayloadError, InvalidScheduleError, InvalidTransitionError
from .reconciliation import parse_data
from .schemas import Notification, NotificationContent, NotificationStatus


class LifecycleState(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"


_TRANSITIONS: Mapping[LifecycleState, FrozenSet[LifecycleState]] = {
    LifecycleState.DRAFT: frozenset({LifecycleState.PENDING}),
    LifecycleState.PENDING: frozenset(
        {LifecycleState.PENDING, LifecycleState.SENT, LifecycleState.CANCELLED}
    ),
    LifecycleState.SENT: frozenset(),
    LifecycleState.CANCELLED: frozenset(),
}

_STATE_BY_STATUS = {
    NotificationStatus.PENDING: LifecycleState.PENDING,
    NotificationStatus.SENT: LifecycleState.SENT,
    NotificationStatus.CANCELLED: LifecycleState.CANCELLED,
}


@dataclass(frozen=True)
class ValidatedContent:
    """検証済みの title / body / data。"""

    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict, hash=False)


def state_of(notification: Optional[Notification]) -> LifecycleState:
    """通知の現在状態。未保存（None）は DRAFT。"""
    if notification is None:
        return LifecycleState.DRAFT
    return _STATE_BY_STATUS[notification.status]


def is_terminal(state: LifecycleState) -> bool:
    return not _TRANSITIONS[state]


def ensure_transition(current: LifecycleState, target: LifecycleState) -> None:
    """
    current -> target が定義された遷移かを確認する。

    :raises InvalidTransitionError: 定義されていない遷移の場合。
    """
    if target not in _TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Transition {current.value} -> {target.value} is not allowed."
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ensure_schedule(send_at: datetime, now: datetime) -> datetime:
    """
    sendAt が過去でないことを確認し、UTC に揃えて返す。

    ちょうど now と同じ時刻は許可する。

    :raises InvalidScheduleError: sendAt が now より前の場合。
    """
    send_at_utc = _as_utc(send_at)
    if send_at_utc < _as_utc(now):
        raise InvalidScheduleError(
            f"sendAt must not be in the past: {send_at_utc.isoformat()}"
        )
    return send_at_utc


def validate_content(content: NotificationContent) -> ValidatedContent:
    """
    title / body / data を検証する。

    :raises InvalidPayloadError: title / body が空、または data が不正な場合。
    """
    title = content.title.strip()
    body = content.body.strip()
    if not title or not body:
        raise InvalidPayloadError("Title and body are required.")

    return ValidatedContent(title=title, body=body, data=parse_data(content.data))


def require_id(notification: Notification) -> str:
    if not notification.id or not notification.id.strip():
        raise InvalidPayloadError("Notification id is required.")
    return notification.id


def validate_edit(
    notification: Notification,
    *,
    now: datetime,
    send_at: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    PENDING -> PENDING（編集・予約・再予約）の検証。

    :return: UTC に揃えた sendAt（指定がなければ None）
    :raises InvalidTransitionError: 終端状態の通知を編集しようとした場合。
    :raises InvalidScheduleError: sendAt が過去の場合。
    """
    require_id(notification)
    ensure_transition(state_of(notification), LifecycleState.PENDING)
    if send_at is None:
        return None
    return ensure_schedule(send_at, now)


def validate_send(notification: Notification) -> None:
    """PENDING -> SENT の事前検証（送信先の解決はオーケストレータ側で行う）。"""
    require_id(notification)
    ensure_transition(state_of(notification), LifecycleState.SENT)


def needs_cancel(notification: Notification) -> bool:
    """
    PENDING -> CANCELLED の検証。

    :return: 上流への書き込みが必要なら True。既に CANCELLED の場合は False（何もしない）。
    :raises InvalidTransitionError: SENT の通知をキャンセルしようとした場合。
    """
    require_id(notification)
    current = state_of(notification)
    if current == LifecycleState.CANCELLED:
        return False
    ensure_transition(current, LifecycleState.CANCELLED)
    return True


def apply_fields(notification: Notification, fields: Mapping[str, Any]) -> Notification:
    """上流に書き込んだフィールド（camelCase）を手元の Notification に反映する。"""
    updated = notification.model_dump(by_alias=True)
    updated.update(fields)
    return Notification.model_validate(updated)


def mark_sent(notification: Notification, content: ValidatedContent) -> Notification:
    """送信成功後の Notification。配信した内容を title / body / data に反映する。"""
    return notification.model_copy(
        update={
            "title": content.title,
            "body": content.body,
            "data": dict(content.data),
            "status": NotificationStatus.SENT,
        }
    )


def mark_cancelled(notification: Notification) -> Notification:
    return notification.model_copy(update={"status": NotificationStatus.CANCELLED})
