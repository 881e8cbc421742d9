# backend/push_console/notifications/audience.py

"""
送信先の解決（Audience Resolver）。

TargetSelector（全ユーザー / グループ / 明示指定）を、
重複のないデリバリートークンのリストに展開する。

- 全ユーザー: 毎回ディレクトリを取り直す（UI 側のキャッシュは使わない）
- グループ: グループ一覧を取り直し、そのグループの tokens をそのまま使う
- 明示指定: 呼び出し元が渡したデバイス一覧から、選択された ID のものだけを使う

また、セレクタと上流の userGroup フィールドとの相互変換もここで扱う。
「全ユーザー」は内部では常に AllUsersSelector として扱い、
userGroup が未設定であることとの読み替えはこのモジュールの境界だけで行う。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from push_console.upstream.client import UpstreamClientError

from .errors import EmptyAudienceError, ResolutionFailedError
from .schemas import (
    AllUsersSelector,
    DeviceUser,
    ExplicitTokensSelector,
    GroupSelector,
    Notification,
    TargetSelector,
    UserGroup,
)

logger = logging.getLogger(__name__)

# 上流が「全ユーザー」を表すのに使う userGroup の値
ALL_USERS_GROUP_SENTINEL = "allUsers"

# グループ一覧に含まれる合成グループの表示名（選択肢には出さない）
ALL_USERS_DISPLAY_NAME = "all users"

DirectoryFetcher = Callable[[], List[DeviceUser]]
GroupFetcher = Callable[[], List[UserGroup]]


def dedupe_tokens(tokens: Iterable[Optional[str]]) -> List[str]:
    """空でないトークンだけを、最初に出現した順で重複なく返す。"""
    seen = set()
    result: List[str] = []
    for token in tokens:
        if not isinstance(token, str) or not token.strip():
            continue
        if token in seen:
            continue
        seen.add(token)
        result.append(token)
    return result


def describe_selector(selector: TargetSelector) -> str:
    """ログ・エラーメッセージ用の短い表現。"""
    if isinstance(selector, GroupSelector):
        return f"ByGroup({selector.group_id})"
    if isinstance(selector, ExplicitTokensSelector):
        return f"ExplicitTokens({len(selector.user_ids)} ids, {len(selector.tokens)} tokens)"
    return "AllUsers"


def selectable_groups(groups: Iterable[UserGroup]) -> List[UserGroup]:
    """
    UI に選択肢として出すグループ一覧。

    表示名が "All Users" の合成グループは除外する（全ユーザーはセレクタ未指定で表す）。
    """
    return [
        group
        for group in groups
        if group.display_name.strip().lower() != ALL_USERS_DISPLAY_NAME
    ]


def selector_from_user_group(value: Optional[str]) -> TargetSelector:
    """上流の userGroup フィールドをセレクタに変換する。"""
    if value is None or not value.strip() or value == ALL_USERS_GROUP_SENTINEL:
        return AllUsersSelector()
    return GroupSelector(group_id=value)


def selector_for_notification(notification: Notification) -> TargetSelector:
    """
    保存済み通知の送信先をセレクタに戻す。

    userGroup が設定されていればそれを優先し、無ければ保存済みの targetTokens、
    どちらも無ければ全ユーザーとする。
    """
    if notification.user_group and notification.user_group.strip():
        return selector_from_user_group(notification.user_group)
    if notification.target_tokens:
        return ExplicitTokensSelector(tokens=list(notification.target_tokens))
    return AllUsersSelector()


def explicit_tokens(selector: ExplicitTokensSelector) -> List[str]:
    """明示指定セレクタからトークンを取り出す（上流への問い合わせは不要）。"""
    wanted = set(selector.user_ids)
    selected = [device.token for device in selector.devices if device.identity in wanted]
    return dedupe_tokens([*selector.tokens, *selected])


def selector_wire_fields(selector: TargetSelector, *, partial: bool) -> Dict[str, Any]:
    """
    セレクタを上流に書き込むフィールドに変換する。

    :param partial: 部分更新用かどうか。
        部分更新では「フィールドなし = 変更なし」になるため、
        全ユーザーは明示的に "allUsers" を書き込み、
        使わない側のフィールド（userGroup / targetTokens）も空にする。
        新規作成では全ユーザーはフィールド自体を省略する。
    """
    if isinstance(selector, GroupSelector):
        fields: Dict[str, Any] = {"userGroup": selector.group_id}
        if partial:
            fields["targetTokens"] = []
        return fields
    if isinstance(selector, ExplicitTokensSelector):
        fields = {"targetTokens": explicit_tokens(selector)}
        if partial:
            fields["userGroup"] = None
        return fields
    if partial:
        return {"userGroup": ALL_USERS_GROUP_SENTINEL, "targetTokens": []}
    return {}


class AudienceResolver:
    """
    セレクタを送信先トークンに展開するリゾルバ。

    fetch 系は呼び出しのたびに実行する（結果をキャッシュしない）。
    """

    def __init__(
        self,
        fetch_directory: DirectoryFetcher,
        fetch_groups: GroupFetcher,
    ) -> None:
        self._fetch_directory = fetch_directory
        self._fetch_groups = fetch_groups

    def resolve(self, selector: TargetSelector) -> List[str]:
        """
        セレクタを重複のないトークンのリストに展開する。

        :raises ResolutionFailedError: ディレクトリ / グループの取得に失敗した場合、
            または指定グループが存在しない場合。
        :raises EmptyAudienceError: 重複排除後のトークンが 0 件の場合。
        """
        label = describe_selector(selector)

        if isinstance(selector, GroupSelector):
            tokens = self._resolve_group(selector, label)
        elif isinstance(selector, ExplicitTokensSelector):
            tokens = explicit_tokens(selector)
        else:
            tokens = self._resolve_all_users(label)

        if not tokens:
            raise EmptyAudienceError(f"No valid delivery tokens found for {label}.")

        logger.info("Resolved audience for %s: %d tokens", label, len(tokens))
        return tokens

    def _resolve_all_users(self, label: str) -> List[str]:
        try:
            devices = self._fetch_directory()
        except UpstreamClientError as exc:
            raise ResolutionFailedError(label, str(exc)) from exc
        return dedupe_tokens(device.token for device in devices)

    def _resolve_group(self, selector: GroupSelector, label: str) -> List[str]:
        try:
            groups = self._fetch_groups()
        except UpstreamClientError as exc:
            raise ResolutionFailedError(label, str(exc)) from exc

        for group in groups:
            if group.id == selector.group_id:
                return dedupe_tokens(group.tokens)

        raise ResolutionFailedError(label, f"user group '{selector.group_id}' was not found")
