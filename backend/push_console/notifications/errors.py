# backend/push_console/notifications/errors.py

"""
通知エンジンのエラー分類。

- InvalidPayload / InvalidSchedule / InvalidTransition:
    入力検証の時点で投げる。上流への通信は一切行わない。
- EmptyAudience / ResolutionFailed:
    送信先の解決に失敗した場合。送信シーケンスは書き込み前に中断する。
- UpstreamFailure:
    上流（永続化・送信）呼び出しの失敗。どのアクションで失敗したかを保持する。

router 層では kind を使って HTTP ステータスと UI 向けメッセージに変換する。
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class NotificationError(RuntimeError):
    """通知エンジン全般の基底例外。"""

    kind = "NotificationError"

    def to_detail(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class InvalidPayloadError(NotificationError):
    """title / body が空、または data が JSON オブジェクトとして解釈できない。"""

    kind = "InvalidPayload"


class InvalidScheduleError(NotificationError):
    """sendAt が過去を指している。"""

    kind = "InvalidSchedule"


class InvalidTransitionError(NotificationError):
    """終端状態（sent / cancelled）からの遷移、または定義されていない遷移。"""

    kind = "InvalidTransition"


class EmptyAudienceError(NotificationError):
    """重複排除後の送信先が 0 件だった。"""

    kind = "EmptyAudience"


class ResolutionFailedError(NotificationError):
    """送信先の解決に必要なディレクトリ / グループの取得に失敗した。"""

    kind = "ResolutionFailed"

    def __init__(self, selector: str, message: str) -> None:
        super().__init__(f"Failed to resolve audience for {selector}: {message}")
        self.selector = selector

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["selector"] = self.selector
        return detail


class UpstreamFailureError(NotificationError):
    """上流呼び出し（保存・更新・キャンセル・削除・送信）の失敗。"""

    kind = "UpstreamFailure"

    def __init__(
        self,
        action: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        upstream_body: Any = None,
    ) -> None:
        super().__init__(f"Upstream call failed during '{action}': {message}")
        self.action = action
        self.status_code = status_code
        self.upstream_body = upstream_body

    @classmethod
    def from_client_error(cls, action: str, exc: Exception) -> "UpstreamFailureError":
        """
        上流クライアントの例外から生成する。

        HTTP ステータスと上流のレスポンス本文はそのまま呼び出し元に渡す。
        """
        return cls(
            action,
            str(exc),
            status_code=getattr(exc, "status_code", None),
            upstream_body=getattr(exc, "body", None),
        )

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["action"] = self.action
        if self.status_code is not None:
            detail["statusCode"] = self.status_code
        if self.upstream_body is not None:
            detail["upstreamBody"] = self.upstream_body
        return detail


class NotificationNotFoundError(NotificationError):
    """指定 ID の通知が上流の一覧に存在しない。"""

    kind = "NotFound"

    def __init__(self, notification_id: str) -> None:
        super().__init__(f"Notification not found: {notification_id}")
        self.notification_id = notification_id
