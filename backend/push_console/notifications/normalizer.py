# backend/push_console/notifications/normalizer.py

"""
上流レスポンスの正規化（Response Normalizer）。

上流ハンドラはバージョンや実装によってレスポンスの形が揃っていない:
- 配列そのもの
- {"users": [...]} / {"notifications": [...]} / {"data": [...]} など

ここでは「形の判定」と「1件ごとの既定値補完」を分けて扱う。
形の判定は SHAPE_MATCHERS に上から順に試す。新しい別名が増えた場合は
ここに 1行追加するだけでよい。

どの関数も例外を投げない。想定外の形は空リスト + warning ログにする。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .schemas import DeviceUser, Notification, NotificationStatus, Segment, UserGroup

logger = logging.getLogger(__name__)

ShapeMatcher = Callable[[Any], Optional[List[Any]]]
ModelT = TypeVar("ModelT", bound=BaseModel)


def _match_bare_array(payload: Any) -> Optional[List[Any]]:
    if isinstance(payload, list):
        return payload
    return None


def _match_array_field(name: str) -> ShapeMatcher:
    def _match(payload: Any) -> Optional[List[Any]]:
        if isinstance(payload, dict) and isinstance(payload.get(name), list):
            return payload[name]
        return None

    return _match


# 優先順位順。先に一致したものを採用する。
SHAPE_MATCHERS: Tuple[Tuple[str, ShapeMatcher], ...] = (
    ("array", _match_bare_array),
    ("users", _match_array_field("users")),
    ("notifications", _match_array_field("notifications")),
    ("data", _match_array_field("data")),
    ("groups", _match_array_field("groups")),
    ("segments", _match_array_field("segments")),
    ("segmentsWithIds", _match_array_field("segmentsWithIds")),
)


def extract_entities(payload: Any, *, source: str = "upstream") -> List[Any]:
    """
    レスポンスからエンティティ配列を取り出す。

    :param payload: 上流から返ってきた JSON（パース済み）
    :param source: ログ用のハンドラ名
    :return: 一致した配列。どの形にも一致しなければ空リスト。
    """
    for _name, matcher in SHAPE_MATCHERS:
        entities = matcher(payload)
        if entities is not None:
            return entities

    logger.warning(
        "Unexpected response format from %s: %s",
        source,
        type(payload).__name__,
    )
    return []


# ---------------------------------------------------------------------------
# フィールド単位のヘルパー
# ---------------------------------------------------------------------------


def _as_str(value: Any) -> Optional[str]:
    """空でない文字列（または数値）だけを文字列として返す。"""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, (int, float)):
        return str(value)
    return None


def _first_str(raw: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = _as_str(raw.get(key))
        if value is not None:
            return value
    return None


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item]


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """
    ISO8601 文字列、または Firestore のタイムスタンプ表現
    （{"_seconds": ..., "_nanoseconds": ...}）を datetime に変換する。

    解釈できない値は None。タイムゾーンなしの値は UTC とみなす。
    """
    parsed: Optional[datetime] = None

    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    elif isinstance(value, dict):
        seconds = value.get("_seconds", value.get("seconds"))
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            try:
                parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                return None

    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _timestamp_text(value: Any) -> str:
    """createdAt 用。文字列はそのまま、タイムスタンプ表現は ISO8601 にする。"""
    if isinstance(value, str):
        return value
    parsed = _parse_timestamp(value)
    return parsed.isoformat() if parsed is not None else ""


def _parse_status(value: Any, entity_id: str) -> NotificationStatus:
    if not isinstance(value, str) or not value.strip():
        return NotificationStatus.PENDING
    try:
        return NotificationStatus(value.strip().lower())
    except ValueError:
        logger.warning(
            "Unknown notification status %r for %s; treating as pending.",
            value,
            entity_id,
        )
        return NotificationStatus.PENDING


# ---------------------------------------------------------------------------
# エンティティ単位の正規化
# ---------------------------------------------------------------------------


def _notification_fields(raw: Dict[str, Any], index: int) -> Dict[str, Any]:
    entity_id = _first_str(raw, "id", "docId") or f"notification-{index}"
    data = raw.get("data")
    return {
        "id": entity_id,
        "title": _as_str(raw.get("title")) or "",
        "body": _as_str(raw.get("body")) or "",
        "data": data if isinstance(data, dict) else {},
        "createdAt": _timestamp_text(raw.get("createdAt", raw.get("created_at"))),
        "createdBy": _as_str(raw.get("createdBy")) or "system",
        "status": _parse_status(raw.get("status"), entity_id),
        "sendAt": _parse_timestamp(raw.get("sendAt")),
        "targetTokens": _str_list(raw.get("targetTokens")),
        "userGroup": _as_str(raw.get("userGroup")),
    }


def _device_fields(raw: Dict[str, Any], index: int) -> Dict[str, Any]:
    primary_id = _as_str(raw.get("id"))
    user_id = _as_str(raw.get("userId"))
    if primary_id is None and user_id is None:
        primary_id = f"user-{index}"

    return {
        "id": primary_id,
        "userId": user_id,
        "email": _as_str(raw.get("email")),
        "token": _as_str(raw.get("token")),
        "brand": _as_str(raw.get("brand")),
        "modelName": _as_str(raw.get("modelName")),
        "platform": _as_str(raw.get("platform")),
        "osVersion": _as_str(raw.get("osVersion")),
        "updatedAt": _timestamp_text(raw.get("updatedAt")) or None,
    }


def _group_fields(raw: Dict[str, Any], index: int) -> Dict[str, Any]:
    return {
        "id": _first_str(raw, "id", "groupId") or f"group-{index}",
        "name": _as_str(raw.get("name")),
        "metaName": _as_str(raw.get("metaName")),
        "tokens": _str_list(raw.get("tokens")),
    }


def _segment_fields(raw: Dict[str, Any], index: int) -> Dict[str, Any]:
    return {
        "id": _first_str(raw, "id", "segmentId") or f"segment-{index}",
        "name": _first_str(raw, "segmentName", "name") or "",
        "segmentId": _as_str(raw.get("segmentId")) or "",
        "segmentName": _first_str(raw, "segmentName", "name") or "",
    }


def _normalize(
    payload: Any,
    *,
    kind: str,
    model: Type[ModelT],
    to_fields: Callable[[Dict[str, Any], int], Dict[str, Any]],
    source: str,
) -> List[ModelT]:
    items: List[ModelT] = []

    for index, raw in enumerate(extract_entities(payload, source=source)):
        if not isinstance(raw, dict):
            logger.warning("Skipping non-object %s entry at index %d from %s", kind, index, source)
            continue
        try:
            items.append(model.model_validate(to_fields(raw, index)))
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed %s entry at index %d from %s: %s",
                kind,
                index,
                source,
                exc.errors()[0].get("msg") if exc.errors() else exc,
            )

    return items


def normalize_notifications(payload: Any, *, source: str = "notifications") -> List[Notification]:
    """通知一覧を正規化する（status / createdBy / data / targetTokens を既定値で補完）。"""
    return _normalize(
        payload,
        kind="notification",
        model=Notification,
        to_fields=_notification_fields,
        source=source,
    )


def normalize_devices(payload: Any, *, source: str = "users") -> List[DeviceUser]:
    """デバイスディレクトリを正規化する。"""
    return _normalize(
        payload,
        kind="user",
        model=DeviceUser,
        to_fields=_device_fields,
        source=source,
    )


def normalize_groups(payload: Any, *, source: str = "groups") -> List[UserGroup]:
    """ユーザーグループ一覧を正規化する。"""
    return _normalize(
        payload,
        kind="group",
        model=UserGroup,
        to_fields=_group_fields,
        source=source,
    )


def normalize_segments(payload: Any, *, source: str = "segments") -> List[Segment]:
    """セグメント一覧を正規化する。"""
    return _normalize(
        payload,
        kind="segment",
        model=Segment,
        to_fields=_segment_fields,
        source=source,
    )
