"""Tests for default request envelopes and header handling."""

from datetime import datetime, timezone

from locus_sync.sync.body import (
    batch_idempotency_key,
    build_batch_body,
    build_location_body,
    build_queue_body,
    merge_headers,
    sanitize_header,
)
from locus_sync.sync.queue import QueueItem


def _item(item_id: str, key: str, payload: dict | None = None, type: str | None = None) -> QueueItem:
    return QueueItem(
        id=item_id,
        payload=payload or {"id": item_id},
        idempotency_key=key,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        type=type,
    )


class TestEnvelopes:
    """Tests for the default bodies."""

    def test_batch_body(self):
        """Extras first, payloads under the root, params merged last."""
        body = build_batch_body([{"n": 1}, {"n": 2}], {"device": "d1"}, {"tenant": "t1"})
        assert body == {"device": "d1", "locations": [{"n": 1}, {"n": 2}], "tenant": "t1"}

    def test_params_override_extras(self):
        body = build_batch_body([], {"tenant": "from-extras"}, {"tenant": "from-params"})
        assert body["tenant"] == "from-params"

    def test_batch_root_property(self):
        body = build_batch_body([{"n": 1}], {}, {}, root_property="points")
        assert body == {"points": [{"n": 1}]}

    def test_location_body(self):
        body = build_location_body({"lat": 1.0}, {"device": "d1"}, {})
        assert body == {"device": "d1", "location": {"lat": 1.0}}

    def test_queue_body_carries_metadata(self):
        item = _item("q-1", "k-1", {"event": "visit"}, type="custom")
        body = build_queue_body(item, {}, {"tenant": "t1"})
        assert body == {
            "payload": {"event": "visit"},
            "queueId": "q-1",
            "type": "custom",
            "idempotencyKey": "k-1",
            "tenant": "t1",
        }

    def test_queue_body_without_type(self):
        body = build_queue_body(_item("q-1", "k-1"), {}, {}, root_property="data")
        assert "type" not in body
        assert body["data"] == {"id": "q-1"}


class TestBatchIdempotencyKey:
    """Tests for batch keys."""

    def test_single_item_uses_its_key(self):
        assert batch_idempotency_key([_item("a", "k-a")]) == "k-a"

    def test_same_items_same_key(self):
        """Retrying an identical batch reuses the key."""
        items = [_item("a", "k-a"), _item("b", "k-b")]
        assert batch_idempotency_key(items) == batch_idempotency_key(list(items))

    def test_different_items_different_key(self):
        first = [_item("a", "k-a"), _item("b", "k-b")]
        second = [_item("a", "k-a"), _item("c", "k-c")]
        assert batch_idempotency_key(first) != batch_idempotency_key(second)


class TestHeaders:
    """Tests for header sanitizing and merging."""

    def test_sanitize_strips_crlf(self):
        assert sanitize_header("token\r\nX-Injected: 1") == "tokenX-Injected: 1"

    def test_later_sources_win(self):
        headers = merge_headers({"A": "1", "B": "1"}, {"B": "2"}, {"C": "3"})
        assert headers == {"A": "1", "B": "2", "C": "3"}

    def test_empty_names_dropped(self):
        assert merge_headers({"\r\n": "x", "Ok": 5}) == {"Ok": "5"}
