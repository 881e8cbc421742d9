# backend/push_console/notifications/__init__.py

"""
通知ライフサイクル・ターゲット解決のモジュール群。

構成:
- schemas: 通知・デバイス・グループ・セグメント・送信先セレクタのスキーマ
- errors: エラー分類（InvalidPayload / InvalidSchedule / InvalidTransition / ...）
- normalizer: 上流レスポンスの正規化
- audience: 送信先セレクタ -> デリバリートークンの解決
- reconciliation: 編集セッションの差分検出
- lifecycle: 状態遷移の定義と検証
- service: 作成・編集・予約・キャンセル・送信のオーケストレーション
- factory: アプリ全体で共有する NotificationService の生成
- router: /notifications, /audience エンドポイント

NOTE:
  upstream.client がこのパッケージの normalizer / schemas を参照するため、
  ここでは service などを import しない（循環 import を避ける）。
"""
