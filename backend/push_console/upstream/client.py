# backend/push_console/upstream/client.py

"""
上流ハンドラ（ドキュメントストア / セグメント）との通信を担当するクライアントモジュール。

- 例外は UpstreamClientError 系に統一し、HTTP ステータスの意味づけはしない
  （どのステータスでも「上流呼び出しの失敗」として上位レイヤに渡す）
- 一覧系のレスポンスは normalizer で正規化してから返す
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import httpx

from push_console.notifications.normalizer import (
    normalize_devices,
    normalize_groups,
    normalize_notifications,
    normalize_segments,
)
from push_console.notifications.schemas import DeviceUser, Notification, Segment, UserGroup

from .config import UpstreamSettings, get_upstream_settings

FETCH_USERS_PATH = "/fetchUsersHandler"
FETCH_USER_GROUPS_PATH = "/fetchUserGroupsHandler"
FETCH_NOTIFICATIONS_PATH = "/fetchNotificationsHandler"
FETCH_SCHEDULED_PATH = "/fetchScheduledNotificationsHandler"
SAVE_NOTIFICATION_PATH = "/saveNotificationHandler"
UPDATE_NOTIFICATION_PATH = "/updateNotificationHandler"
UPDATE_OR_CANCEL_SCHEDULED_PATH = "/updateOrCancelScheduledNotificationHandler"
DELETE_NOTIFICATION_PATH = "/deleteNotificationHandler"
EXECUTE_NOTIFICATION_PATH = "/executeNotificationHandler"

FETCH_SEGMENTS_PATH = "/fetchSegmentNamesHandler"
FETCH_SEGMENT_MEMBERS_PATH = "/matchUsersToSegmentsHandler"
SYNC_SEGMENTS_PATH = "/fetchCustomerSegmentsHandler"

# _request が「本文が JSON ではなかった」ことを表す番兵
_NON_JSON = object()


class UpstreamClientError(Exception):
    """上流クライアント全般の基底例外。"""


def upstream_error_text(body: Any) -> Optional[str]:
    """上流のエラーレスポンスから、人が読めるエラー文言を取り出す。"""
    if isinstance(body, dict):
        for key in ("message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None
    if isinstance(body, str) and body.strip():
        return body.strip()
    return None


class UpstreamHTTPError(UpstreamClientError):
    """
    HTTP ステータスコードがエラーだった場合の例外。

    上流（プロバイダ）が返したエラー文言があれば、そのままメッセージに含める。
    """

    def __init__(self, status_code: int, body: Any | None = None) -> None:
        message = f"Upstream API error: status_code={status_code}"
        detail = upstream_error_text(body)
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UpstreamConnectionError(UpstreamClientError):
    """接続エラー・タイムアウト時の例外。"""


class UpstreamRejectedError(UpstreamClientError):
    """2xx だが本文で success: false が返ってきた場合の例外。"""

    def __init__(self, message: str, body: Any | None = None) -> None:
        super().__init__(message)
        self.body = body


class UpstreamClient:
    """
    上流ハンドラへの HTTP クライアント。

    NOTE:
      - transport はテスト用（httpx.MockTransport を差し込む）。
      - 1リクエストごとに httpx.Client を生成する。同一セッションの使い回しはしない。
    """

    def __init__(
        self,
        settings: UpstreamSettings | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_upstream_settings()
        self._transport = transport

    @property
    def timeout(self) -> int:
        return self._settings.timeout_seconds

    def _build_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _request(
        self,
        method: str,
        url: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        1回分の HTTP 呼び出しを行い、JSON（パース済み）を返す。

        :raises UpstreamConnectionError: 接続エラーやタイムアウト時。
        :raises UpstreamHTTPError: 上流が 2xx 以外を返した場合。
        :return: JSON 本文。本文が空なら None、JSON でなければ _NON_JSON。
        """
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers=self._build_headers(),
                )
        except httpx.RequestError as exc:
            raise UpstreamConnectionError(str(exc)) from exc

        if response.status_code // 100 != 2:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            raise UpstreamHTTPError(status_code=response.status_code, body=body)

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError:
            return _NON_JSON

    def _fetch(self, url: str, *, params: Optional[Dict[str, str]] = None) -> Any:
        payload = self._request("GET", url, params=params)
        if payload is _NON_JSON:
            raise UpstreamClientError(f"Upstream returned a non-JSON response for {url}")
        return payload

    def _write(self, method: str, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        payload = self._request(method, url, json=body)
        if not isinstance(payload, dict):
            return {}
        if payload.get("success") is False:
            message = payload.get("message") or payload.get("error") or "request rejected"
            raise UpstreamRejectedError(str(message), body=payload)
        return payload

    def _api(self, path: str) -> str:
        return f"{self._settings.api_base_url}{path}"

    def _segments(self, path: str) -> str:
        return f"{self._settings.segments_base_url}{path}"

    # ---- 一覧取得 ------------------------------------------------------

    def fetch_directory(self) -> List[DeviceUser]:
        """登録済みデバイス（ユーザー）一覧を取得する。"""
        payload = self._fetch(self._api(FETCH_USERS_PATH))
        return normalize_devices(payload, source=FETCH_USERS_PATH)

    def fetch_groups(self) -> List[UserGroup]:
        """ユーザーグループ一覧を取得する。"""
        payload = self._fetch(self._api(FETCH_USER_GROUPS_PATH))
        return normalize_groups(payload, source=FETCH_USER_GROUPS_PATH)

    def fetch_notifications(self) -> List[Notification]:
        """通知一覧を取得する。"""
        payload = self._fetch(self._api(FETCH_NOTIFICATIONS_PATH))
        return normalize_notifications(payload, source=FETCH_NOTIFICATIONS_PATH)

    def fetch_scheduled(self) -> List[Notification]:
        """予約済み通知一覧を取得する。"""
        payload = self._fetch(self._api(FETCH_SCHEDULED_PATH))
        return normalize_notifications(payload, source=FETCH_SCHEDULED_PATH)

    # ---- 書き込み ------------------------------------------------------

    def create_notification(self, payload: Dict[str, Any]) -> str:
        """
        通知を新規保存し、上流が払い出した ID を返す。

        :raises UpstreamClientError: レスポンスに id が含まれていない場合。
        """
        body = self._write("POST", self._api(SAVE_NOTIFICATION_PATH), payload)
        notification_id = body.get("id")
        if not isinstance(notification_id, str) or not notification_id:
            raise UpstreamClientError("Upstream did not return an id for the saved notification.")
        return notification_id

    def update_notification(self, notification_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """変更されたフィールドだけを部分更新する。"""
        body = {"notificationId": notification_id, **fields}
        return self._write("PATCH", self._api(UPDATE_NOTIFICATION_PATH), body)

    def cancel_or_reschedule(self, notification_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """予約済み通知の sendAt / userGroup 変更、またはキャンセルを行う。"""
        body = {"notificationId": notification_id, "updates": updates}
        return self._write("PATCH", self._api(UPDATE_OR_CANCEL_SCHEDULED_PATH), body)

    def delete_notification(self, notification_id: str) -> Dict[str, Any]:
        """通知を削除する。"""
        body = {"notificationId": notification_id}
        return self._write("POST", self._api(DELETE_NOTIFICATION_PATH), body)

    def dispatch(
        self,
        tokens: Sequence[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
        notification_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        解決済みのトークンに対して通知を送信する。

        notification_id を渡すと、上流側で送信後のステータス更新が行われる。
        title / body / data は保存済みの値より優先される。
        """
        payload: Dict[str, Any] = {
            "targetTokens": list(tokens),
            "title": title,
            "body": body,
        }
        if data:
            payload["data"] = data
        if notification_id:
            payload["notificationId"] = notification_id

        return self._write("POST", self._api(EXECUTE_NOTIFICATION_PATH), payload)

    # ---- セグメント（閲覧専用） -----------------------------------------

    def fetch_segments(self) -> List[Segment]:
        """セグメント一覧を取得する。"""
        payload = self._fetch(self._segments(FETCH_SEGMENTS_PATH))
        return normalize_segments(payload, source=FETCH_SEGMENTS_PATH)

    def fetch_segment_members(self, segment_id: str) -> List[DeviceUser]:
        """セグメントに属するユーザーを取得する（キャッシュしない）。"""
        payload = self._fetch(
            self._segments(FETCH_SEGMENT_MEMBERS_PATH),
            params={"segmentName": segment_id},
        )
        return normalize_devices(payload, source=FETCH_SEGMENT_MEMBERS_PATH)

    def sync_segments(self) -> None:
        """上流にセグメントの再計算を依頼する（結果は待たない）。"""
        self._request("GET", self._segments(SYNC_SEGMENTS_PATH))
