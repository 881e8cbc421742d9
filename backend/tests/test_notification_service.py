# backend/tests/test_notification_service.py

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from push_console.notifications.errors import (
    EmptyAudienceError,
    InvalidPayloadError,
    InvalidScheduleError,
    InvalidTransitionError,
    NotificationNotFoundError,
    ResolutionFailedError,
    UpstreamFailureError,
)
from push_console.notifications.reconciliation import Snapshot
from push_console.notifications.schemas import (
    AllUsersSelector,
    DeviceUser,
    ExplicitTokensSelector,
    GroupSelector,
    Notification,
    NotificationContent,
    NotificationStatus,
    UserGroup,
)
from push_console.notifications.service import NotificationService
from push_console.upstream.client import UpstreamConnectionError, UpstreamHTTPError
from push_console.upstream.config import ReconciliationMode

NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


class DummyUpstreamClient:
    """
    UpstreamClient の代わりに呼び出し内容を記録するダミー。

    fail_on に action 名（メソッド名）を入れるとそのメソッドで例外を投げる。
    """

    def __init__(self) -> None:
        self.devices: List[DeviceUser] = [
            DeviceUser(id="u1", token="t1"),
            DeviceUser(id="u2", token="t2"),
            DeviceUser(id="u3", token="t1"),
        ]
        self.groups: List[UserGroup] = [
            UserGroup(id="all", name="All Users", tokens=["t1", "t2"]),
            UserGroup(id="vip", name="VIP", tokens=["v1"]),
            UserGroup(id="empty", name="Nobody", tokens=[]),
        ]
        self.notifications: List[Notification] = []
        self.scheduled: List[Notification] = []
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}
        self.dispatch_response: Dict[str, Any] = {"success": True}

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise self.fail_on[name]

    def calls_to(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    def fetch_directory(self) -> List[DeviceUser]:
        self._record("fetch_directory")
        return list(self.devices)

    def fetch_groups(self) -> List[UserGroup]:
        self._record("fetch_groups")
        return list(self.groups)

    def fetch_notifications(self) -> List[Notification]:
        self._record("fetch_notifications")
        return list(self.notifications)

    def fetch_scheduled(self) -> List[Notification]:
        self._record("fetch_scheduled")
        return list(self.scheduled)

    def create_notification(self, payload: Dict[str, Any]) -> str:
        self._record("create_notification", payload)
        return "new-id"

    def update_notification(self, notification_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        self._record("update_notification", notification_id, fields)
        return {"success": True}

    def cancel_or_reschedule(self, notification_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        self._record("cancel_or_reschedule", notification_id, updates)
        return {"success": True}

    def delete_notification(self, notification_id: str) -> Dict[str, Any]:
        self._record("delete_notification", notification_id)
        return {"success": True}

    def dispatch(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
        notification_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._record("dispatch", tokens, title, body, data, notification_id)
        return self.dispatch_response


def _service(
    client: DummyUpstreamClient,
    mode: ReconciliationMode = ReconciliationMode.BEST_EFFORT,
) -> NotificationService:
    return NotificationService(client, reconciliation_mode=mode, clock=lambda: NOW)


def _pending(**overrides) -> Notification:
    values: Dict[str, Any] = {"id": "n1", "title": "Hello", "body": "old", "status": "pending"}
    values.update(overrides)
    return Notification.model_validate(values)


# ---- 作成 ----------------------------------------------------------------


def test_create_scheduled_notification_for_group() -> None:
    """
    グループ宛ての予約通知を作成すると、userGroup と sendAt を含めて保存されることを確認。
    """
    client = DummyUpstreamClient()
    service = _service(client)
    send_at = NOW + timedelta(days=1)

    created = service.create(
        NotificationContent(title="Sale", body="50% off", data='{"screen": "shop"}'),
        target=GroupSelector(group_id="vip"),
        send_at=send_at,
    )

    (call,) = client.calls_to("create_notification")
    payload = call[1]
    assert payload["title"] == "Sale"
    assert payload["body"] == "50% off"
    assert payload["status"] == "pending"
    assert payload["userGroup"] == "vip"
    assert payload["data"] == {"screen": "shop"}
    assert payload["sendAt"] == send_at.isoformat()

    assert created.id == "new-id"
    assert created.status == NotificationStatus.PENDING
    assert created.send_at == send_at
    assert created.is_scheduled
    assert client.calls_to("dispatch") == []


def test_create_for_all_users_omits_user_group() -> None:
    client = DummyUpstreamClient()

    _service(client).create(NotificationContent(title="t", body="b"), target=AllUsersSelector())

    payload = client.calls_to("create_notification")[0][1]
    assert "userGroup" not in payload
    assert "targetTokens" not in payload
    assert "data" not in payload
    assert "sendAt" not in payload


def test_create_rejects_past_schedule_without_calling_upstream() -> None:
    client = DummyUpstreamClient()

    with pytest.raises(InvalidScheduleError):
        _service(client).create(
            NotificationContent(title="t", body="b"),
            target=AllUsersSelector(),
            send_at=NOW - timedelta(minutes=1),
        )

    assert client.calls == []


def test_create_rejects_invalid_payload() -> None:
    client = DummyUpstreamClient()
    service = _service(client)

    with pytest.raises(InvalidPayloadError):
        service.create(NotificationContent(title="", body="b"), target=AllUsersSelector())
    with pytest.raises(InvalidPayloadError):
        service.create(NotificationContent(title="t", body="b", data="[1]"), target=AllUsersSelector())

    assert client.calls == []


def test_create_upstream_failure() -> None:
    client = DummyUpstreamClient()
    client.fail_on["create_notification"] = UpstreamHTTPError(500, {"error": "boom"})

    with pytest.raises(UpstreamFailureError) as exc_info:
        _service(client).create(NotificationContent(title="t", body="b"), target=AllUsersSelector())

    assert exc_info.value.action == "create"
    assert exc_info.value.status_code == 500


# ---- 編集・予約 ----------------------------------------------------------


def test_save_edits_without_changes_issues_no_call() -> None:
    client = DummyUpstreamClient()
    notification = _pending()

    result = _service(client).save_edits(
        notification,
        Snapshot.capture(notification),
        NotificationContent(title="Hello", body="old", data="  "),
    )

    assert result == notification
    assert client.calls == []


def test_save_edits_sends_only_changed_fields() -> None:
    client = DummyUpstreamClient()
    notification = _pending()

    result = _service(client).save_edits(
        notification,
        Snapshot.capture(notification),
        NotificationContent(title="Hello", body="new"),
    )

    assert client.calls_to("update_notification") == [("update_notification", "n1", {"body": "new"})]
    assert result.body == "new"
    assert result.title == "Hello"


def test_schedule_existing_notification() -> None:
    client = DummyUpstreamClient()
    send_at = NOW + timedelta(hours=2)

    result = _service(client).schedule(_pending(), send_at=send_at, target=AllUsersSelector())

    (call,) = client.calls_to("update_notification")
    assert call[2] == {
        "sendAt": send_at.isoformat(),
        "status": "pending",
        "userGroup": "allUsers",
        "targetTokens": [],
    }
    assert result.send_at == send_at
    assert result.user_group == "allUsers"


def test_reschedule_sent_notification_is_invalid_transition() -> None:
    """
    送信済みの通知は再予約できず、上流も呼ばれないことを確認。
    """
    client = DummyUpstreamClient()
    sent = _pending(status="sent")

    with pytest.raises(InvalidTransitionError):
        _service(client).reschedule(sent, send_at=NOW + timedelta(days=1))

    assert client.calls == []
    assert sent.status == NotificationStatus.SENT


def test_reschedule_requires_something_to_change() -> None:
    with pytest.raises(InvalidPayloadError):
        _service(DummyUpstreamClient()).reschedule(_pending())


def test_reschedule_changes_target_and_time() -> None:
    client = DummyUpstreamClient()
    send_at = NOW + timedelta(days=3)

    result = _service(client).reschedule(
        _pending(user_group="vip"),
        send_at=send_at,
        target=ExplicitTokensSelector(tokens=["x", "y"]),
    )

    (call,) = client.calls_to("cancel_or_reschedule")
    assert call[1] == "n1"
    assert call[2] == {
        "sendAt": send_at.isoformat(),
        "targetTokens": ["x", "y"],
        "userGroup": None,
    }
    assert result.target_tokens == ["x", "y"]
    assert result.user_group is None


def test_reschedule_rejects_past_time() -> None:
    client = DummyUpstreamClient()

    with pytest.raises(InvalidScheduleError):
        _service(client).reschedule(_pending(), send_at=NOW - timedelta(seconds=1))

    assert client.calls == []


# ---- キャンセル・削除 ----------------------------------------------------


def test_cancel_twice_is_idempotent() -> None:
    """
    2回目のキャンセルは上流を呼ばず、状態も CANCELLED のままであることを確認。
    """
    client = DummyUpstreamClient()
    service = _service(client)

    cancelled = service.cancel(_pending())
    again = service.cancel(cancelled)

    assert cancelled.status == NotificationStatus.CANCELLED
    assert again.status == NotificationStatus.CANCELLED
    assert client.calls_to("cancel_or_reschedule") == [
        ("cancel_or_reschedule", "n1", {"status": "cancelled"})
    ]


def test_cancel_sent_notification_is_invalid_transition() -> None:
    client = DummyUpstreamClient()

    with pytest.raises(InvalidTransitionError):
        _service(client).cancel(_pending(status="sent"))

    assert client.calls == []


def test_delete_notification() -> None:
    client = DummyUpstreamClient()
    service = _service(client)

    service.delete("n1")
    assert client.calls_to("delete_notification") == [("delete_notification", "n1")]

    with pytest.raises(InvalidPayloadError):
        service.delete("  ")


# ---- 送信 ----------------------------------------------------------------


def test_edit_then_send_writes_back_only_changed_body() -> None:
    """
    本文だけ編集して送信すると、書き戻しは {"body": "new"} のみで、
    配信内容も編集後の本文になることを確認。
    """
    client = DummyUpstreamClient()
    notification = _pending()

    result = _service(client).send(
        NotificationContent(title="Hello", body="new"),
        target=AllUsersSelector(),
        notification=notification,
    )

    assert client.calls_to("update_notification") == [("update_notification", "n1", {"body": "new"})]
    (dispatch,) = client.calls_to("dispatch")
    assert sorted(dispatch[1]) == ["t1", "t2"]
    assert dispatch[2] == "Hello"
    assert dispatch[3] == "new"
    assert dispatch[5] == "n1"

    names = [c[0] for c in client.calls]
    assert names.index("fetch_directory") < names.index("update_notification") < names.index("dispatch")

    assert result.notification is not None
    assert result.notification.status == NotificationStatus.SENT
    assert result.notification.body == "new"
    assert result.audience_size == 2
    assert result.updated_fields == ["body"]
    assert result.update_applied is True


def test_send_without_edits_skips_write_back() -> None:
    client = DummyUpstreamClient()
    notification = _pending(data={"k": "v"})

    result = _service(client).send(
        NotificationContent(title="Hello", body="old", data={"k": "v"}),
        target=GroupSelector(group_id="vip"),
        notification=notification,
    )

    assert client.calls_to("update_notification") == []
    assert client.calls_to("fetch_directory") == []
    assert client.calls_to("dispatch")[0][1] == ["v1"]
    assert client.calls_to("dispatch")[0][4] == {"k": "v"}
    assert result.updated_fields == []


def test_send_to_empty_group_makes_no_writes() -> None:
    """
    送信先が 0件の場合、書き戻しも送信も行われないことを確認。
    """
    client = DummyUpstreamClient()
    notification = _pending()

    with pytest.raises(EmptyAudienceError):
        _service(client).send(
            NotificationContent(title="Hello", body="edited"),
            target=GroupSelector(group_id="empty"),
            notification=notification,
        )

    assert client.calls_to("update_notification") == []
    assert client.calls_to("dispatch") == []
    assert notification.status == NotificationStatus.PENDING


def test_send_resolution_failure_makes_no_writes() -> None:
    client = DummyUpstreamClient()
    client.fail_on["fetch_directory"] = UpstreamConnectionError("timeout")

    with pytest.raises(ResolutionFailedError):
        _service(client).send(
            NotificationContent(title="Hello", body="edited"),
            target=AllUsersSelector(),
            notification=_pending(),
        )

    assert client.calls_to("update_notification") == []
    assert client.calls_to("dispatch") == []


def test_send_sent_notification_is_invalid_transition() -> None:
    client = DummyUpstreamClient()

    with pytest.raises(InvalidTransitionError):
        _service(client).send(
            NotificationContent(title="Hello", body="old"),
            target=AllUsersSelector(),
            notification=_pending(status="sent"),
        )

    assert client.calls == []


def test_send_invalid_data_makes_no_calls() -> None:
    client = DummyUpstreamClient()

    with pytest.raises(InvalidPayloadError):
        _service(client).send(
            NotificationContent(title="Hello", body="old", data="{broken"),
            target=AllUsersSelector(),
            notification=_pending(),
        )

    assert client.calls == []


def test_best_effort_write_back_failure_still_dispatches(caplog) -> None:
    client = DummyUpstreamClient()
    client.fail_on["update_notification"] = UpstreamHTTPError(503)

    result = _service(client).send(
        NotificationContent(title="Hello", body="new"),
        target=AllUsersSelector(),
        notification=_pending(),
    )

    assert len(client.calls_to("dispatch")) == 1
    assert result.update_applied is False
    assert result.updated_fields == []
    assert result.notification.status == NotificationStatus.SENT
    assert any("Pre-dispatch update failed" in r.getMessage() for r in caplog.records)


def test_strict_write_back_failure_aborts_dispatch() -> None:
    client = DummyUpstreamClient()
    client.fail_on["update_notification"] = UpstreamHTTPError(503)

    with pytest.raises(UpstreamFailureError) as exc_info:
        _service(client, ReconciliationMode.STRICT).send(
            NotificationContent(title="Hello", body="new"),
            target=AllUsersSelector(),
            notification=_pending(),
        )

    assert exc_info.value.action == "update"
    assert exc_info.value.status_code == 503
    assert client.calls_to("dispatch") == []


def test_dispatch_failure_leaves_notification_pending() -> None:
    client = DummyUpstreamClient()
    client.fail_on["dispatch"] = UpstreamConnectionError("provider unreachable")
    notification = _pending()

    with pytest.raises(UpstreamFailureError) as exc_info:
        _service(client).send(
            NotificationContent(title="Hello", body="old"),
            target=AllUsersSelector(),
            notification=notification,
        )

    assert exc_info.value.action == "dispatch"
    assert notification.status == NotificationStatus.PENDING


def test_partial_delivery_reports_failed_tokens(caplog) -> None:
    client = DummyUpstreamClient()
    client.dispatch_response = {"success": True, "failedTokens": ["t2"], "invalidTokens": ["t2"]}

    result = _service(client).send(
        NotificationContent(title="Hello", body="old"),
        target=AllUsersSelector(),
        notification=_pending(),
    )

    assert result.failed_tokens == ["t2"]
    assert result.notification.status == NotificationStatus.SENT
    assert any("partially rejected" in r.getMessage() for r in caplog.records)


def test_ad_hoc_send_has_no_lifecycle_side_effects() -> None:
    client = DummyUpstreamClient()

    result = _service(client).send(
        NotificationContent(title="Ping", body="Now"),
        target=ExplicitTokensSelector(
            user_ids=["u2"],
            devices=client.devices,
        ),
    )

    assert result.notification is None
    assert result.audience_size == 1
    assert client.calls_to("update_notification") == []
    assert client.calls_to("dispatch") == [("dispatch", ["t2"], "Ping", "Now", None, None)]


def test_send_uses_given_snapshot_for_diff() -> None:
    """
    編集セッション開始時点の Snapshot が渡された場合は、それを基準に差分を取ることを確認。
    """
    client = DummyUpstreamClient()
    notification = _pending(title="Server title")
    snapshot = Snapshot.from_content(NotificationContent(title="Opened title", body="old"))

    _service(client).send(
        NotificationContent(title="Opened title", body="old"),
        target=AllUsersSelector(),
        notification=notification,
        snapshot=snapshot,
    )

    assert client.calls_to("update_notification") == []


def test_send_without_target_uses_saved_user_group() -> None:
    """
    target を省略した場合、保存済み通知の userGroup 宛てに送信されることを確認。
    """
    client = DummyUpstreamClient()

    result = _service(client).send(
        NotificationContent(title="Hello", body="old"),
        notification=_pending(user_group="vip"),
    )

    assert client.calls_to("fetch_directory") == []
    assert client.calls_to("dispatch")[0][1] == ["v1"]
    assert result.audience_size == 1


def test_send_without_target_uses_saved_target_tokens() -> None:
    client = DummyUpstreamClient()

    _service(client).send(
        NotificationContent(title="Hello", body="old"),
        notification=_pending(target_tokens=["x1", "x2"]),
    )

    assert client.calls_to("fetch_directory") == []
    assert client.calls_to("fetch_groups") == []
    assert client.calls_to("dispatch")[0][1] == ["x1", "x2"]


def test_schedule_without_target_keeps_saved_target() -> None:
    client = DummyUpstreamClient()
    send_at = NOW + timedelta(hours=1)

    result = _service(client).schedule(_pending(user_group="vip"), send_at=send_at)

    (call,) = client.calls_to("update_notification")
    assert call[2] == {"sendAt": send_at.isoformat(), "status": "pending"}
    assert result.user_group == "vip"


def test_scheduled_notification_for_all_users_is_sent_to_unique_tokens() -> None:
    """
    全ユーザー宛てに翌日の予約通知を作成し、その通知を送信すると
    重複を除いたディレクトリのトークン全件に届くことを確認。
    """
    client = DummyUpstreamClient()
    service = _service(client)
    tomorrow = NOW + timedelta(days=1)

    created = service.create(
        NotificationContent(title="Flash sale", body="50% off"),
        target=AllUsersSelector(),
        send_at=tomorrow,
    )

    assert created.status == NotificationStatus.PENDING
    assert created.send_at == tomorrow
    assert "userGroup" not in client.calls_to("create_notification")[0][1]

    result = service.send(
        NotificationContent(title="Flash sale", body="50% off"),
        notification=created,
    )

    (dispatch,) = client.calls_to("dispatch")
    assert set(dispatch[1]) == {"t1", "t2"}
    assert len(dispatch[1]) == 2
    assert dispatch[2] == "Flash sale"
    assert dispatch[3] == "50% off"
    assert dispatch[5] == "new-id"
    assert client.calls_to("update_notification") == []
    assert result.audience_size == 2
    assert result.notification.status == NotificationStatus.SENT


def test_dispatch_http_error_keeps_provider_response() -> None:
    client = DummyUpstreamClient()
    provider_body = {"error": "Expo rejected: DeviceNotRegistered"}
    client.fail_on["dispatch"] = UpstreamHTTPError(500, provider_body)

    with pytest.raises(UpstreamFailureError) as exc_info:
        _service(client).send(
            NotificationContent(title="Hello", body="old"),
            target=AllUsersSelector(),
            notification=_pending(),
        )

    error = exc_info.value
    assert "Expo rejected: DeviceNotRegistered" in str(error)
    assert error.status_code == 500
    assert error.upstream_body == provider_body
    assert error.to_detail()["upstreamBody"] == provider_body
    assert error.to_detail()["statusCode"] == 500


def test_strict_write_back_failure_keeps_provider_response() -> None:
    client = DummyUpstreamClient()
    client.fail_on["update_notification"] = UpstreamHTTPError(409, {"message": "document locked"})

    with pytest.raises(UpstreamFailureError) as exc_info:
        _service(client, ReconciliationMode.STRICT).send(
            NotificationContent(title="Hello", body="new"),
            target=AllUsersSelector(),
            notification=_pending(),
        )

    assert "document locked" in str(exc_info.value)
    assert exc_info.value.upstream_body == {"message": "document locked"}


# ---- 参照系 --------------------------------------------------------------


def test_get_notification_falls_back_to_scheduled() -> None:
    client = DummyUpstreamClient()
    client.notifications = [_pending(id="a")]
    client.scheduled = [_pending(id="b", send_at="2030-02-01T00:00:00Z")]
    service = _service(client)

    assert service.get_notification("a").id == "a"
    assert service.get_notification("b").is_scheduled

    with pytest.raises(NotificationNotFoundError):
        service.get_notification("zzz")


def test_list_groups_hides_all_users_group() -> None:
    client = DummyUpstreamClient()
    assert [g.id for g in _service(client).list_groups()] == ["vip", "empty"]


def test_list_failure_is_upstream_failure() -> None:
    client = DummyUpstreamClient()
    client.fail_on["fetch_notifications"] = UpstreamConnectionError("down")

    with pytest.raises(UpstreamFailureError) as exc_info:
        _service(client).list_notifications()

    assert exc_info.value.action == "fetchNotifications"
    assert exc_info.value.status_code is None
