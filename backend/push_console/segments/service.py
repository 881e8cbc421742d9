# backend/push_console/segments/service.py

"""
セグメント閲覧用のサービス層。

メンバー一覧は毎回上流に問い合わせる（ローカルにはキャッシュしない）。
"""

from __future__ import annotations

import logging
from typing import List

from push_console.notifications.errors import InvalidPayloadError, UpstreamFailureError
from push_console.notifications.schemas import DeviceUser, Segment
from push_console.upstream.client import UpstreamClient, UpstreamClientError

logger = logging.getLogger(__name__)


class SegmentService:
    """UpstreamClient を利用して、セグメント情報を扱いやすい形で返すサービス。"""

    def __init__(self, client: UpstreamClient) -> None:
        self._client = client

    def list_segments(self) -> List[Segment]:
        try:
            return self._client.fetch_segments()
        except UpstreamClientError as exc:
            raise UpstreamFailureError.from_client_error("fetchSegments", exc) from exc

    def list_members(self, segment_id: str) -> List[DeviceUser]:
        """
        セグメントに属するユーザー一覧を取得する。

        :raises InvalidPayloadError: segment_id が空の場合。
        :raises UpstreamFailureError: 上流の呼び出しに失敗した場合。
        """
        if not segment_id or not segment_id.strip():
            raise InvalidPayloadError("Segment id is required.")
        try:
            return self._client.fetch_segment_members(segment_id)
        except UpstreamClientError as exc:
            raise UpstreamFailureError.from_client_error("fetchSegmentMembers", exc) from exc

    def sync(self) -> None:
        """
        上流にセグメントの再計算を依頼する。

        再計算の結果はここでは読まない。完了後に list_segments() で取り直す想定。
        """
        try:
            self._client.sync_segments()
        except UpstreamClientError as exc:
            raise UpstreamFailureError.from_client_error("syncSegments", exc) from exc
        logger.info("Segment sync requested.")
