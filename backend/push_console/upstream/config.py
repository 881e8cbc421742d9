# backend/push_console/upstream/config.py

"""
上流ハンドラ（ドキュメントストア / セグメント）連携に必要な設定値をまとめるモジュール。
"""

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from push_console.utils.config import get_env, get_env_int


class ReconciliationMode(str, Enum):
    """
    送信前の部分更新（編集内容の書き戻し）が失敗した場合の扱い。

    - BEST_EFFORT: ログを残して送信を続行する（デフォルト）
    - STRICT: 送信を中断して UpstreamFailure を呼び出し元に返す
    """

    BEST_EFFORT = "best_effort"
    STRICT = "strict"


@dataclass(frozen=True)
class UpstreamSettings:
    """上流ハンドラ用の設定値コンテナ。"""

    api_base_url: str
    segments_base_url: str
    timeout_seconds: int = 10
    reconciliation_mode: ReconciliationMode = ReconciliationMode.BEST_EFFORT


def _parse_reconciliation_mode(raw: str) -> ReconciliationMode:
    try:
        return ReconciliationMode(raw.lower())
    except ValueError as exc:
        allowed = ", ".join(mode.value for mode in ReconciliationMode)
        raise RuntimeError(
            f"Invalid PUSH_CONSOLE_RECONCILIATION_MODE: {raw!r} (allowed: {allowed})"
        ) from exc


@lru_cache()
def get_upstream_settings() -> UpstreamSettings:
    """
    環境変数から上流ハンドラ設定を読み込む。

    必須:
      - PUSH_CONSOLE_API_BASE_URL

    任意:
      - PUSH_CONSOLE_SEGMENTS_BASE_URL   (デフォルト: API ベース URL と同じ)
      - PUSH_CONSOLE_TIMEOUT_SECONDS     (デフォルト: 10秒)
      - PUSH_CONSOLE_RECONCILIATION_MODE (デフォルト: best_effort)
    """
    api_base_url = get_env("PUSH_CONSOLE_API_BASE_URL").rstrip("/")

    segments_base_url = get_env(
        "PUSH_CONSOLE_SEGMENTS_BASE_URL",
        default=api_base_url,
        required=False,
    ).rstrip("/")

    timeout_seconds = get_env_int("PUSH_CONSOLE_TIMEOUT_SECONDS", default=10)
    if timeout_seconds <= 0:
        raise RuntimeError(
            f"PUSH_CONSOLE_TIMEOUT_SECONDS must be positive: {timeout_seconds}"
        )

    reconciliation_mode = _parse_reconciliation_mode(
        get_env(
            "PUSH_CONSOLE_RECONCILIATION_MODE",
            default=ReconciliationMode.BEST_EFFORT.value,
            required=False,
        )
    )

    return UpstreamSettings(
        api_base_url=api_base_url,
        segments_base_url=segments_base_url,
        timeout_seconds=timeout_seconds,
        reconciliation_mode=reconciliation_mode,
    )
