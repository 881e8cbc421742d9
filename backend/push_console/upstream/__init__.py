# backend/push_console/upstream/__init__.py

"""
上流ハンドラ（ドキュメントストア / セグメント）連携モジュール。

- config: ベース URL・タイムアウト・送信前書き戻しモードの設定値
- client: 各ハンドラへの HTTP クライアント（一覧は正規化済みで返す）
"""
