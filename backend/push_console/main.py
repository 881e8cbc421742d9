# backend/push_console/main.py

"""
バックエンドアプリケーションのエントリーポイント。

主な責務:
- /notifications 系エンドポイント（作成・編集・予約・キャンセル・送信）を公開する
- /audience 系エンドポイント（グループ・デバイスディレクトリ）を公開する
- /segments 系エンドポイント（閲覧・再計算の依頼）を公開する
"""

from fastapi import FastAPI

from push_console.notifications.router import router as notifications_router
from push_console.segments.router import router as segments_router


def create_app() -> FastAPI:
    """
    FastAPI アプリケーションファクトリ。

    - 通知ライフサイクル (/notifications, /audience)
    - セグメント (/segments)
    - ヘルスチェックエンドポイント (/health)
    """
    app = FastAPI(title="Push Notification Console Backend")

    # ルーター登録
    app.include_router(notifications_router)
    app.include_router(segments_router)

    @app.get("/health", tags=["health"])
    def health_check() -> dict:
        """
        簡易ヘルスチェックエンドポイント。
        モニタリングや動作確認用。
        """
        return {"status": "ok"}

    return app


# uvicorn 実行時のエントリーポイント
app = create_app()
