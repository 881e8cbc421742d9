# backend/push_console/segments/__init__.py

"""
顧客セグメント（上流 CRM が計算するグルーピング）の閲覧用モジュール。

- service: セグメント一覧・メンバー取得・再計算の依頼
- router: /segments エンドポイント

セグメントは送信先セレクタとしては使わない（誰がどこに属するかの表示専用）。
"""
