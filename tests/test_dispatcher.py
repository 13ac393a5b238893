"""Per-token fan-out, outcome classification and credential recovery."""

from sqlalchemy.exc import OperationalError

from conftest import FakePushGateway, GatewayFactory, make_token

from fiscalpush.services.notification.dispatcher import NotificationDispatcher, PushPayload, build_push_message
from fiscalpush.services.notification.gateway import (
    GatewayAuthError,
    GatewayHandle,
    InvalidMessageError,
    PushGatewayError,
    TokenNotRegisteredError,
)
from fiscalpush.services.notification.tokens import TokenStore


def _setup(session_factory, clock, *clients):
    store = TokenStore(session_factory, now=clock)
    factory = GatewayFactory(*clients)
    dispatcher = NotificationDispatcher(GatewayHandle(factory), store, concurrency=4)
    return store, factory, dispatcher


def test_outcomes_are_independent_per_token(session_factory, clock):
    """A delivered, B not registered and removed, C rejected payload but kept."""

    a, b, c = make_token("a"), make_token("b"), make_token("c")
    gateway = FakePushGateway(
        outcomes={
            b: TokenNotRegisteredError("Requested entity was not found."),
            c: InvalidMessageError("Invalid registration token"),
        }
    )
    store, _, dispatcher = _setup(session_factory, clock, gateway)
    for token in (a, b, c):
        store.add_token("u1", token)
    clock.advance(30)

    result = dispatcher.send([a, b, c], PushPayload(title="Hi", body="There"), ["u1"])

    outcomes = {r.token: r.outcome for r in result.results}
    assert outcomes == {a: "success", b: "not_registered", c: "invalid_message"}
    assert (result.total, result.success_count, result.failure_count) == (3, 1, 2)
    assert result.invalid_tokens_removed == 1
    assert sorted(store.get_tokens("u1")) == sorted([a, c])
    touched = {r.token: r.last_used_at for r in store.get_tokens_with_metadata("u1")}
    assert touched[a] == clock().isoformat()
    assert len(gateway.sent) == 3


def test_expired_credentials_on_send_reinitialize_and_retry(session_factory, clock):
    token = make_token("a")
    expired = FakePushGateway(send_error=GatewayAuthError("invalid_grant: Token has been expired or revoked."))
    fresh = FakePushGateway()
    _, factory, dispatcher = _setup(session_factory, clock, expired, fresh)

    result = dispatcher.send([token], PushPayload(title="t", body="b"), ["u1"])

    assert result.results[0].outcome == "success"
    assert len(factory.built) == 2
    assert len(fresh.sent) == 1
    assert expired.closed is True


def test_non_expiry_auth_error_is_not_retried(session_factory, clock):
    gateway = FakePushGateway(send_error=GatewayAuthError("SenderId mismatch"))
    _, factory, dispatcher = _setup(session_factory, clock, gateway)

    result = dispatcher.send([make_token("a")], PushPayload(title="t", body="b"), ["u1"])

    assert result.results[0].outcome == "auth_error"
    assert len(factory.built) == 1


def test_batch_abandoned_when_reinitialization_fails(session_factory, clock):
    """Expired credentials and no way to rebuild: nothing is sent."""

    gateway = FakePushGateway(verify_error=GatewayAuthError("invalid_grant"))
    _, _, dispatcher = _setup(session_factory, clock, gateway)
    tokens = [make_token("a"), make_token("b")]

    result = dispatcher.send(tokens, PushPayload(title="t", body="b"), ["u1"])

    assert result.abandoned is True
    assert [r.outcome for r in result.results] == ["abandoned", "abandoned"]
    assert gateway.sent == []


def test_inconclusive_credential_check_still_sends(session_factory, clock):
    gateway = FakePushGateway(verify_error=PushGatewayError("metadata server timeout"))
    _, _, dispatcher = _setup(session_factory, clock, gateway)

    result = dispatcher.send([make_token("a")], PushPayload(title="t", body="b"), ["u1"])

    assert result.success_count == 1


def test_unexpected_errors_are_reported_per_token(session_factory, clock):
    a, b = make_token("a"), make_token("b")
    gateway = FakePushGateway(outcomes={b: RuntimeError("connection reset")})
    _, _, dispatcher = _setup(session_factory, clock, gateway)

    result = dispatcher.send([a, b], PushPayload(title="t", body="b"), ["u1"])

    by_token = {r.token: r for r in result.results}
    assert by_token[a].success is True
    assert by_token[b].outcome == "error"
    assert "connection reset" in by_token[b].error


def test_post_send_hook_and_empty_batches(session_factory, clock):
    seen = []
    _, factory, dispatcher = _setup(session_factory, clock, FakePushGateway())

    empty = dispatcher.send([], PushPayload(title="t", body="b", on_sent=seen.append), ["u1"])
    assert empty.total == 0
    assert factory.built == []

    result = dispatcher.send([make_token("a")], PushPayload(title="t", body="b", on_sent=seen.append), ["u1"])
    assert seen == [result]


def test_message_defaults_and_overrides():
    payload = PushPayload(
        title="Order #5",
        body="On the way",
        type="status_changed",
        data={"order_id": 5, "meta": {"eta": 10}},
        android={"notification": {"sound": "chime"}},
    )

    message = build_push_message("tok", payload)

    assert message["token"] == "tok"
    assert message["data"]["order_id"] == "5"
    assert message["data"]["meta"] == '{"eta": 10}'
    assert message["data"]["type"] == "status_changed"
    assert "timestamp" in message["data"]
    android = message["android"]["notification"]
    assert android["sound"] == "chime"
    assert android["channel_id"] == "fcm_default_channel"
    assert android["click_action"] == "FLUTTER_NOTIFICATION_CLICK"
    assert message["apns"]["headers"] == {"apns-push-type": "alert", "apns-priority": "10"}
    assert message["apns"]["payload"]["aps"]["badge"] == 1
    assert message["webpush"]["notification"]["title"] == "Order #5"


def test_batch_abandoned_when_first_client_cannot_be_built(session_factory, clock):
    """Unreadable credentials on the very first lease: nothing is sent, nothing raises."""

    _, factory, dispatcher = _setup(session_factory, clock)
    tokens = [make_token("a"), make_token("b")]

    result = dispatcher.send(tokens, PushPayload(title="t", body="b"), ["u1"])

    assert result.abandoned is True
    assert [r.outcome for r in result.results] == ["abandoned", "abandoned"]
    assert factory.built == []


class BrokenTokenStore(TokenStore):
    def remove_tokens(self, user_ids, tokens):
        raise OperationalError("UPDATE user_push_tokens", {}, Exception("database is locked"))

    def touch_tokens(self, user_ids, tokens):
        raise OperationalError("UPDATE user_push_tokens", {}, Exception("database is locked"))


def test_token_bookkeeping_failure_keeps_batch_result(session_factory, clock):
    a, b = make_token("a"), make_token("b")
    gateway = FakePushGateway(outcomes={b: TokenNotRegisteredError("Requested entity was not found.")})
    store = BrokenTokenStore(session_factory, now=clock)
    dispatcher = NotificationDispatcher(GatewayHandle(GatewayFactory(gateway)), store)

    result = dispatcher.send([a, b], PushPayload(title="t", body="b"), ["u1"])

    assert (result.success_count, result.failure_count) == (1, 1)
    assert result.invalid_tokens_removed == 0
    assert len(gateway.sent) == 2
