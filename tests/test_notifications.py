import pytest

from gomflow.di.container import container
from gomflow.services.errors import NotFoundError, TransientExternalError
from gomflow.services.notifications import outbox_key, split_identity

from conftest import SERVICE_SECRET


def test_split_identity():
    assert split_identity("telegram:12345") == ("telegram", "12345")
    assert split_identity("Discord:abc") == ("discord", "abc")
    assert split_identity("buyer@example.com") == ("web", "buyer@example.com")


def test_emit_writes_one_row_per_state(db, make_submission, transport):
    submission = make_submission()
    notifier = container.notifier()

    notifier.emit(submission, "confirmed", "system:auto")
    notifier.emit(submission, "confirmed", "system:auto")

    rows = db.list_outbox_messages(submission_id=submission["id"])
    assert len(rows) == 1
    assert rows[0]["idempotency_key"] == outbox_key(submission["id"], "confirmed")
    assert "locked in" in rows[0]["message"]


def test_queue_delivers_to_the_buyer_platform(db, make_submission, transport):
    submission = make_submission(buyer_identity="telegram:555")
    container.notifier().emit(submission, "confirmed", "system:auto")

    container.queue().drain()

    assert len(transport.calls) == 1
    call = transport.calls[0]
    assert call["url"] == "http://telegram.test/api/notifications"
    assert call["headers"]["Idempotency-Key"] == outbox_key(submission["id"], "confirmed")
    assert call["headers"]["X-Service-Secret"] == SERVICE_SECRET
    assert call["json"]["recipient"] == "555"
    assert call["json"]["new_state"] == "confirmed"
    assert db.get_outbox_message(outbox_key(submission["id"], "confirmed"))["status"] == "delivered"


def test_server_errors_keep_the_row_pending(db, make_submission, transport):
    submission = make_submission()
    notifier = container.notifier()
    key = notifier.emit(submission, "under_review", "system:matcher")
    transport.status_codes = [503]

    with pytest.raises(TransientExternalError):
        notifier.deliver(key)

    row = db.get_outbox_message(key)
    assert row["status"] == "pending"
    assert row["attempts"] == 1
    assert notifier.deliver(key)["status"] == "delivered"


def test_queue_retries_failed_delivery(db, make_submission, transport):
    submission = make_submission()
    container.notifier().emit(submission, "under_review", "system:matcher")
    transport.raise_connect_errors = 1

    container.queue().drain()

    assert len(transport.calls) == 2
    assert db.get_outbox_message(outbox_key(submission["id"], "under_review"))["status"] == "delivered"


def test_client_errors_are_not_retried(db, make_submission, transport):
    submission = make_submission()
    key = container.notifier().emit(submission, "rejected", "gom:gom_1")
    transport.status_codes = [422]

    container.queue().drain()

    assert len(transport.calls) == 1
    assert db.get_outbox_message(key)["status"] == "failed"


def test_unconfigured_channel_is_skipped(db, make_submission, transport):
    submission = make_submission(buyer_identity="discord:42")
    key = container.notifier().emit(submission, "confirmed", "system:auto")

    result = container.notifier().deliver(key)

    assert result["status"] == "skipped"
    assert transport.calls == []


def test_delivered_rows_are_not_sent_again(db, make_submission, transport):
    submission = make_submission()
    notifier = container.notifier()
    key = notifier.emit(submission, "confirmed", "system:auto")
    notifier.deliver(key)

    assert notifier.deliver(key)["status"] == "delivered"
    assert len(transport.calls) == 1


def test_flush_delivers_pending_rows(db, make_submission, transport):
    submission = make_submission()
    notifier = container.notifier()
    notifier.emit(submission, "under_review", "system:matcher")
    notifier.emit(submission, "confirmed", "gom:gom_1")

    assert notifier.flush(submission["id"]) == {"delivered": 2}
    assert notifier.flush(submission["id"]) == {}


def test_unknown_outbox_key(db, transport):
    with pytest.raises(NotFoundError):
        container.notifier().deliver("notify:missing:confirmed")
