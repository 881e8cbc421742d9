# backend/push_console/notifications/schemas.py

"""
通知ライフサイクル・ターゲット解決で扱うスキーマ定義。

上流（ドキュメントストアのハンドラ）は camelCase のキーで値を返すため、
各モデルは snake_case のフィールド名に camelCase の alias を持たせている。
FastAPI の response_model として返す場合も alias（camelCase）で出力される。

※ デリバリートークンはデバイス宛ての宛先そのものなので、
  ログにそのまま出力しないこと。
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    """上流の camelCase キーと snake_case 属性の両方を受け付ける共通基底。"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NotificationStatus(str, Enum):
    """
    上流に永続化される通知ステータス。

    - PENDING: 保存済み・未送信（sendAt があれば予約中）
    - SENT: 送信済み（終端）
    - CANCELLED: キャンセル済み（終端）
    """

    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"


class Notification(_WireModel):
    """
    通知 1件分。

    id は永続化レイヤが払い出し、作成後は変更されない。
    sendAt は pending / cancelled の場合のみ意味を持つ（sent では履歴扱い）。
    """

    id: str = Field(..., description="通知 ID（上流が払い出す）")
    title: str = Field("", description="タイトル")
    body: str = Field("", description="本文")
    data: Dict[str, Any] = Field(default_factory=dict, description="任意の JSON データ")
    created_at: str = Field("", alias="createdAt", description="作成日時（上流の文字列表現）")
    created_by: str = Field("system", alias="createdBy", description="作成者")
    status: NotificationStatus = Field(NotificationStatus.PENDING, description="ステータス")
    send_at: Optional[datetime] = Field(None, alias="sendAt", description="予約送信日時")
    target_tokens: List[str] = Field(
        default_factory=list,
        alias="targetTokens",
        description="保存済みの送信先トークン",
    )
    user_group: Optional[str] = Field(
        None,
        alias="userGroup",
        description="送信先ユーザーグループ ID（未設定 / allUsers は全ユーザー）",
    )

    @property
    def is_scheduled(self) -> bool:
        return self.send_at is not None and self.status == NotificationStatus.PENDING


class DeviceUser(_WireModel):
    """
    デバイスディレクトリの 1レコード（ユーザー × 端末）。

    送信対象として有効かどうかは token が空でないことだけで判定する。
    同じ token が複数ユーザーに紐づくこともある。
    """

    id: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")
    email: Optional[str] = None
    token: Optional[str] = Field(None, description="デリバリートークン")
    brand: Optional[str] = None
    model_name: Optional[str] = Field(None, alias="modelName")
    platform: Optional[str] = None
    os_version: Optional[str] = Field(None, alias="osVersion")
    updated_at: Optional[str] = Field(None, alias="updatedAt")

    # pydantic の "model_" 予約プレフィックスと衝突する model_name を許可する
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )

    @property
    def identity(self) -> str:
        """UI 上の選択に使う識別子（id を優先し、無ければ userId）。"""
        return self.id or self.user_id or ""


class UserGroup(_WireModel):
    """事前計算済みのトークン集合を持つ名前付きグループ。"""

    id: str
    name: Optional[str] = None
    meta_name: Optional[str] = Field(None, alias="metaName")
    tokens: List[str] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.meta_name or self.name or self.id


class Segment(_WireModel):
    """
    上流 CRM が計算する顧客セグメント。

    閲覧専用で、送信先セレクタとしては使わない。
    """

    id: str
    name: str = ""
    segment_id: str = Field("", alias="segmentId")
    segment_name: str = Field("", alias="segmentName")


# ---------------------------------------------------------------------------
# 送信先セレクタ
# ---------------------------------------------------------------------------


class AllUsersSelector(_WireModel):
    """ディレクトリ上の全デバイスを対象にする。"""

    type: Literal["all"] = "all"


class GroupSelector(_WireModel):
    """ユーザーグループの tokens をそのまま対象にする。"""

    type: Literal["group"] = "group"
    group_id: str = Field(..., alias="groupId", min_length=1)


class ExplicitTokensSelector(_WireModel):
    """
    呼び出し元が明示的に選んだ宛先。

    - user_ids: devices のうち identity が一致するものだけを対象にする
    - tokens: そのまま対象に含めるトークン
    """

    type: Literal["explicit"] = "explicit"
    user_ids: List[str] = Field(default_factory=list, alias="userIds")
    devices: List[DeviceUser] = Field(default_factory=list)
    tokens: List[str] = Field(default_factory=list)


TargetSelector = Annotated[
    Union[AllUsersSelector, GroupSelector, ExplicitTokensSelector],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# API リクエスト / レスポンス
# ---------------------------------------------------------------------------

# data は UI の入力欄そのまま（JSON 文字列）でも、パース済みの dict でも受け付ける
RawData = Union[Dict[str, Any], str, None]


class NotificationContent(_WireModel):
    """編集セッションで扱う title / body / data の組。"""

    title: str = ""
    body: str = ""
    data: RawData = None


class CreateNotificationRequest(NotificationContent):
    """POST /notifications のリクエストボディ。"""

    send_at: Optional[datetime] = Field(None, alias="sendAt")
    target: TargetSelector = Field(default_factory=AllUsersSelector)
    created_by: Optional[str] = Field(None, alias="createdBy")


class SaveEditsRequest(_WireModel):
    """
    PATCH /notifications/{id} のリクエストボディ。

    original は編集セッションを開いた時点の値（スナップショット）。
    """

    original: NotificationContent
    current: NotificationContent


class ScheduleRequest(_WireModel):
    """POST /notifications/{id}/schedule のリクエストボディ。

    target を省略した場合、保存済みの送信先はそのまま。
    """

    send_at: datetime = Field(..., alias="sendAt")
    target: Optional[TargetSelector] = None


class RescheduleRequest(_WireModel):
    """PATCH /notifications/{id}/schedule のリクエストボディ。"""

    send_at: Optional[datetime] = Field(None, alias="sendAt")
    target: Optional[TargetSelector] = None


class SendRequest(_WireModel):
    """
    POST /notifications/send のリクエストボディ。

    notification_id が無い場合はアドホック送信として扱い、
    編集内容の書き戻しやステータス遷移は行わない。
    target を省略した場合、保存済み通知ではその送信先、アドホック送信では全ユーザー。
    """

    notification_id: Optional[str] = Field(None, alias="notificationId")
    original: Optional[NotificationContent] = None
    current: NotificationContent
    target: Optional[TargetSelector] = None


class DispatchResult(_WireModel):
    """送信処理 1回分の結果。"""

    notification: Optional[Notification] = Field(
        None,
        description="送信後の通知（アドホック送信の場合は None）",
    )
    audience_size: int = Field(..., ge=0, alias="audienceSize")
    updated_fields: List[str] = Field(
        default_factory=list,
        alias="updatedFields",
        description="送信前に書き戻したフィールド",
    )
    update_applied: bool = Field(
        True,
        alias="updateApplied",
        description="書き戻しが成功したか（書き戻し不要の場合も True）",
    )
    failed_tokens: List[str] = Field(
        default_factory=list,
        alias="failedTokens",
        description="プロバイダに拒否されたトークン（部分成功時）",
    )


class NotificationListResponse(_WireModel):
    items: List[Notification]
    count: int


class UserGroupListResponse(_WireModel):
    items: List[UserGroup]
    count: int


class DeviceListResponse(_WireModel):
    items: List[DeviceUser]
    count: int


class SegmentListResponse(_WireModel):
    items: List[Segment]
    count: int
