# backend/push_console/notifications/factory.py

"""
NotificationService の簡易ファクトリ。

- 環境変数から UpstreamSettings を読み込み、UpstreamClient と NotificationService を組み立てる
- 送信前書き戻しのモード（best_effort / strict）も設定値から渡す
"""

from __future__ import annotations

from typing import Optional

from push_console.upstream.client import UpstreamClient
from push_console.upstream.config import get_upstream_settings

from .service import NotificationService

_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """
    アプリ全体で共有する NotificationService を返す。

    初回呼び出し時にのみ生成し、それ以降は同じインスタンスを返す。
    """
    global _notification_service
    if _notification_service is None:
        settings = get_upstream_settings()
        _notification_service = NotificationService(
            UpstreamClient(settings),
            reconciliation_mode=settings.reconciliation_mode,
        )
    return _notification_service


def reset_notification_service() -> None:
    """
    テスト用にシングルトン状態と設定キャッシュをリセットする。
    """
    global _notification_service
    _notification_service = None
    get_upstream_settings.cache_clear()
