# backend/push_console/notifications/service.py

"""
通知の作成・編集・予約・キャンセル・送信を行うサービス層。

送信（send）は次の順で進める:
  1. title / body / data の検証、ライフサイクル上の送信可否の確認
  2. 編集セッションの Snapshot と現在の入力の差分検出
  3. 送信先の解決（0件・解決失敗ならここで中断し、上流には何も書き込まない）
  4. 差分があれば部分更新で書き戻す
     - best_effort: 失敗してもログを残して続行
     - strict: 失敗したら UpstreamFailure として中断
  5. 現在の入力内容で送信
  6. 送信成功時のみ SENT に遷移

NOTE:
  - 同じ通知の送信を同時に 2回呼ぶと、両方とも送信される（ロックは持たない）。
    UI 側で実行中のボタンを無効化する前提。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from push_console.upstream.client import UpstreamClient, UpstreamClientError
from push_console.upstream.config import ReconciliationMode

from .audience import (
    AudienceResolver,
    dedupe_tokens,
    selectable_groups,
    selector_for_notification,
    selector_wire_fields,
)
from .errors import (
    InvalidPayloadError,
    NotificationNotFoundError,
    UpstreamFailureError,
)
from .lifecycle import (
    apply_fields,
    ensure_schedule,
    mark_cancelled,
    mark_sent,
    needs_cancel,
    validate_content,
    validate_edit,
    validate_send,
)
from .reconciliation import ChangeSet, Snapshot, diff
from .schemas import (
    AllUsersSelector,
    DeviceUser,
    DispatchResult,
    Notification,
    NotificationContent,
    NotificationStatus,
    TargetSelector,
    UserGroup,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 送信レスポンスに含まれうる「プロバイダに拒否されたトークン」のキー
_REJECTED_TOKEN_KEYS = ("failedTokens", "invalidTokens")


def _rejected_tokens(response: Dict[str, Any]) -> List[str]:
    rejected: List[Any] = []
    for key in _REJECTED_TOKEN_KEYS:
        value = response.get(key)
        if isinstance(value, list):
            rejected.extend(value)
    return dedupe_tokens(rejected)


class NotificationService:
    """
    UpstreamClient を利用して、通知ライフサイクルの各操作を提供するサービス。

    - 入力検証（InvalidPayload / InvalidSchedule / InvalidTransition）は通信前に行う
    - 上流呼び出しの失敗はすべて UpstreamFailureError（action 付き）に変換する
    """

    def __init__(
        self,
        client: UpstreamClient,
        *,
        resolver: Optional[AudienceResolver] = None,
        reconciliation_mode: ReconciliationMode = ReconciliationMode.BEST_EFFORT,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._client = client
        self._resolver = resolver or AudienceResolver(
            fetch_directory=client.fetch_directory,
            fetch_groups=client.fetch_groups,
        )
        self._reconciliation_mode = reconciliation_mode
        self._clock = clock

    # ---- 内部ヘルパー -------------------------------------------------

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def _call(self, action: str, func: Callable[..., T], *args: Any) -> T:
        """上流呼び出しを行い、失敗を UpstreamFailureError に変換する。"""
        try:
            return func(*args)
        except UpstreamClientError as exc:
            raise UpstreamFailureError.from_client_error(action, exc) from exc

    # ---- 一覧取得 ------------------------------------------------------

    def list_notifications(self) -> List[Notification]:
        return self._call("fetchNotifications", self._client.fetch_notifications)

    def list_scheduled(self) -> List[Notification]:
        return self._call("fetchScheduled", self._client.fetch_scheduled)

    def list_groups(self) -> List[UserGroup]:
        """UI の選択肢に出すグループ一覧（"All Users" の合成グループは除く）。"""
        groups = self._call("fetchGroups", self._client.fetch_groups)
        return selectable_groups(groups)

    def list_directory(self) -> List[DeviceUser]:
        return self._call("fetchDirectory", self._client.fetch_directory)

    def get_notification(self, notification_id: str) -> Notification:
        """
        ID で通知を探す。通知一覧に無ければ予約一覧も探す。

        :raises NotificationNotFoundError: どちらにも存在しない場合。
        """
        for notification in self.list_notifications():
            if notification.id == notification_id:
                return notification
        for notification in self.list_scheduled():
            if notification.id == notification_id:
                return notification
        raise NotificationNotFoundError(notification_id)

    # ---- 作成・編集 ----------------------------------------------------

    def create(
        self,
        content: NotificationContent,
        *,
        target: TargetSelector,
        send_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> Notification:
        """
        DRAFT -> PENDING。新しい通知を保存する。

        :raises InvalidPayloadError: title / body が空、または data が不正な場合。
        :raises InvalidScheduleError: sendAt が過去の場合。
        :raises UpstreamFailureError: 保存に失敗した場合。
        """
        validated = validate_content(content)
        now = self._now()

        payload: Dict[str, Any] = {
            "title": validated.title,
            "body": validated.body,
            "status": NotificationStatus.PENDING.value,
        }
        if validated.data:
            payload["data"] = validated.data
        if send_at is not None:
            payload["sendAt"] = ensure_schedule(send_at, now).isoformat()
        if created_by:
            payload["createdBy"] = created_by
        payload.update(selector_wire_fields(target, partial=False))

        notification_id = self._call("create", self._client.create_notification, payload)
        logger.info("Notification created: id=%s scheduled=%s", notification_id, send_at is not None)

        return Notification.model_validate(
            {**payload, "id": notification_id, "createdAt": now.isoformat()}
        )

    def save_edits(
        self,
        notification: Notification,
        snapshot: Snapshot,
        current: NotificationContent,
    ) -> Notification:
        """
        PENDING -> PENDING。編集セッションの変更を部分更新で保存する。

        変更がなければ上流は呼ばない。
        """
        validate_edit(notification, now=self._now())
        validate_content(current)
        changes = diff(snapshot, current)
        if changes.is_empty:
            return notification

        fields = changes.to_update_fields()
        self._call("update", self._client.update_notification, notification.id, fields)
        logger.info(
            "Notification updated: id=%s fields=%s",
            notification.id,
            ",".join(changes.changed_fields),
        )
        return apply_fields(notification, fields)

    def schedule(
        self,
        notification: Notification,
        *,
        send_at: datetime,
        target: Optional[TargetSelector] = None,
    ) -> Notification:
        """
        PENDING -> PENDING。保存済みの通知に sendAt と送信先を設定する。

        target を省略した場合、保存済みの送信先は変更しない。
        """
        send_at_utc = validate_edit(notification, now=self._now(), send_at=send_at)

        fields: Dict[str, Any] = {
            "sendAt": send_at_utc.isoformat(),
            "status": NotificationStatus.PENDING.value,
        }
        if target is not None:
            fields.update(selector_wire_fields(target, partial=True))

        self._call("schedule", self._client.update_notification, notification.id, fields)
        logger.info("Notification scheduled: id=%s sendAt=%s", notification.id, fields["sendAt"])
        return apply_fields(notification, fields)

    def reschedule(
        self,
        notification: Notification,
        *,
        send_at: Optional[datetime] = None,
        target: Optional[TargetSelector] = None,
    ) -> Notification:
        """PENDING -> PENDING。予約済み通知の sendAt / 送信先を変更する。"""
        if send_at is None and target is None:
            raise InvalidPayloadError("Either sendAt or target must be provided to reschedule.")

        send_at_utc = validate_edit(notification, now=self._now(), send_at=send_at)

        updates: Dict[str, Any] = {}
        if send_at_utc is not None:
            updates["sendAt"] = send_at_utc.isoformat()
        if target is not None:
            updates.update(selector_wire_fields(target, partial=True))

        self._call("reschedule", self._client.cancel_or_reschedule, notification.id, updates)
        logger.info("Notification rescheduled: id=%s fields=%s", notification.id, ",".join(updates))
        return apply_fields(notification, updates)

    def cancel(self, notification: Notification) -> Notification:
        """
        PENDING -> CANCELLED。

        既に CANCELLED の場合は上流を呼ばずにそのまま返す。
        """
        if not needs_cancel(notification):
            logger.info("Notification already cancelled: id=%s", notification.id)
            return notification

        self._call(
            "cancel",
            self._client.cancel_or_reschedule,
            notification.id,
            {"status": NotificationStatus.CANCELLED.value},
        )
        logger.info("Notification cancelled: id=%s", notification.id)
        return mark_cancelled(notification)

    def delete(self, notification_id: str) -> None:
        if not notification_id or not notification_id.strip():
            raise InvalidPayloadError("Notification id is required.")
        self._call("delete", self._client.delete_notification, notification_id)
        logger.info("Notification deleted: id=%s", notification_id)

    # ---- 送信 ----------------------------------------------------------

    def send(
        self,
        current: NotificationContent,
        *,
        target: Optional[TargetSelector] = None,
        notification: Optional[Notification] = None,
        snapshot: Optional[Snapshot] = None,
    ) -> DispatchResult:
        """
        送信処理のメインシーケンス。

        :param current: 送信する title / body / data（ユーザーが画面で見ている値）
        :param target: 送信先。省略時は保存済み通知の userGroup / targetTokens から決める
            （アドホック送信では全ユーザー）。
        :param notification: 保存済みの通知。None の場合はアドホック送信。
        :param snapshot: 編集セッション開始時点の値。省略時は notification から取る。
        :raises EmptyAudienceError / ResolutionFailedError: 送信先が決まらない場合（書き込み前に中断）。
        :raises UpstreamFailureError: 送信に失敗した場合（状態は変えない）。
        """
        validated = validate_content(current)

        changes = ChangeSet()
        if notification is not None:
            validate_send(notification)
            changes = diff(snapshot or Snapshot.capture(notification), current)

        if target is None:
            target = (
                selector_for_notification(notification)
                if notification is not None
                else AllUsersSelector()
            )

        tokens = self._resolver.resolve(target)

        update_applied = True
        if notification is not None and not changes.is_empty:
            update_applied = self._write_back(notification, changes)

        response = self._call(
            "dispatch",
            self._client.dispatch,
            tokens,
            validated.title,
            validated.body,
            validated.data or None,
            notification.id if notification is not None else None,
        )

        failed_tokens = _rejected_tokens(response)
        if failed_tokens:
            logger.warning(
                "Dispatch partially rejected by provider: %d of %d tokens",
                len(failed_tokens),
                len(tokens),
            )

        sent = mark_sent(notification, validated) if notification is not None else None
        logger.info(
            "Notification sent: id=%s audience=%d",
            notification.id if notification is not None else "(ad-hoc)",
            len(tokens),
        )

        return DispatchResult(
            notification=sent,
            audience_size=len(tokens),
            updated_fields=changes.changed_fields if update_applied else [],
            update_applied=update_applied,
            failed_tokens=failed_tokens,
        )

    def _write_back(self, notification: Notification, changes: ChangeSet) -> bool:
        """
        送信前の部分更新。

        :return: 書き戻しに成功したら True、best_effort で失敗を無視した場合は False。
        :raises UpstreamFailureError: strict モードで書き戻しに失敗した場合。
        """
        try:
            self._client.update_notification(notification.id, changes.to_update_fields())
        except UpstreamClientError as exc:
            if self._reconciliation_mode == ReconciliationMode.STRICT:
                raise UpstreamFailureError.from_client_error("update", exc) from exc
            logger.warning(
                "Pre-dispatch update failed for id=%s; continuing with dispatch: %s",
                notification.id,
                exc,
            )
            return False
        return True
