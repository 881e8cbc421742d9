# backend/push_console/notifications/reconciliation.py

"""
編集内容の差分検出（Edit-Reconciliation）。

保存済みの通知を開いて title / body / data を編集し、そのまま送信または保存する場合に、
「上流に書き戻す必要があるのはどのフィールドか」を判定する。

- Snapshot: 編集セッションを開いた時点の値。以後は取り直さない。
- diff(): Snapshot と現在の入力を比較し、変更されたフィールドだけを ChangeSet で返す。

書き戻しは ChangeSet.to_update_fields() の内容だけを送る部分更新にする。
このセッションで触っていないフィールドを上書きしないため。
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from .errors import InvalidPayloadError
from .schemas import Notification, NotificationContent, RawData


def parse_data(raw: RawData) -> Dict[str, Any]:
    """
    data 入力を dict に変換する。

    - None / 空文字 / 空白のみ: {}
    - dict: そのまま（コピーを返す）
    - 文字列: JSON としてパースし、オブジェクトであること

    :raises InvalidPayloadError: JSON として不正、またはオブジェクト以外の場合。
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return copy.deepcopy(raw)
    if not raw.strip():
        return {}

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidPayloadError(f"Invalid JSON format: {exc.msg}") from exc

    if not isinstance(parsed, dict):
        raise InvalidPayloadError("JSON data must be an object.")
    return parsed


@dataclass(frozen=True)
class Snapshot:
    """編集セッション開始時点の title / body / data。"""

    title: str
    body: str
    data: Mapping[str, Any] = field(default_factory=dict, hash=False)

    @classmethod
    def _build(cls, title: str, body: str, data: Dict[str, Any]) -> "Snapshot":
        return cls(
            title=title.strip(),
            body=body.strip(),
            data=MappingProxyType(copy.deepcopy(data)),
        )

    @classmethod
    def capture(cls, notification: Notification) -> "Snapshot":
        return cls._build(notification.title, notification.body, notification.data)

    @classmethod
    def from_content(cls, content: NotificationContent) -> "Snapshot":
        return cls._build(content.title, content.body, parse_data(content.data))


@dataclass(frozen=True)
class ChangeSet:
    """
    変更されたフィールドと新しい値。

    変更のないフィールドは None のまま。
    """

    title: Optional[str] = None
    body: Optional[str] = None
    data: Optional[Dict[str, Any]] = field(default=None, hash=False)

    @property
    def changed_fields(self) -> List[str]:
        return [
            name
            for name, value in (("title", self.title), ("body", self.body), ("data", self.data))
            if value is not None
        ]

    @property
    def is_empty(self) -> bool:
        return not self.changed_fields

    def to_update_fields(self) -> Dict[str, Any]:
        """部分更新リクエストに載せるフィールドだけを返す。"""
        fields: Dict[str, Any] = {}
        if self.title is not None:
            fields["title"] = self.title
        if self.body is not None:
            fields["body"] = self.body
        if self.data is not None:
            fields["data"] = self.data
        return fields


def diff(original: Snapshot, current: NotificationContent) -> ChangeSet:
    """
    Snapshot と現在の入力を比較する。

    - title / body: 前後の空白を除いた文字列が完全一致するか
    - data: パース後の値が構造的に等しいか（空・空白のみ・未指定は {} と同じ扱い）

    :raises InvalidPayloadError: 現在の data が JSON オブジェクトとして不正な場合。
    """
    title = current.title.strip()
    body = current.body.strip()
    data = parse_data(current.data)

    return ChangeSet(
        title=title if title != original.title else None,
        body=body if body != original.body else None,
        data=data if data != dict(original.data) else None,
    )
