"""Default request envelopes and header helpers."""

import re
import uuid
from typing import Any, Mapping, Sequence

from locus_sync.sync.queue import QueueItem

BATCH_ROOT = "locations"
LOCATION_ROOT = "location"
QUEUE_ROOT = "payload"

_HEADER_INJECTION = re.compile(r"[\r\n]")

# Namespace for batch idempotency keys
BATCH_KEY_NAMESPACE = uuid.UUID("6f1c2d0e-4b7a-5c39-9e8d-2a6b1f0c7d45")


def _root(root_property: str | None, default: str) -> str:
    return root_property if root_property else default


def build_batch_body(
    payloads: Sequence[dict[str, Any]],
    extras: Mapping[str, Any],
    params: Mapping[str, Any],
    root_property: str | None = None,
) -> dict[str, Any]:
    """Envelope for several payloads sent in one request.

    >>> build_batch_body([{"n": 1}], {"device": "a"}, {})
    {'device': 'a', 'locations': [{'n': 1}]}
    """
    body: dict[str, Any] = dict(extras)
    body[_root(root_property, BATCH_ROOT)] = list(payloads)
    body.update(params)
    return body


def build_location_body(
    payload: dict[str, Any],
    extras: Mapping[str, Any],
    params: Mapping[str, Any],
    root_property: str | None = None,
) -> dict[str, Any]:
    """Envelope for a single ad-hoc location that never entered the queue."""
    body: dict[str, Any] = dict(extras)
    body[_root(root_property, LOCATION_ROOT)] = payload
    body.update(params)
    return body


def build_queue_body(
    item: QueueItem,
    extras: Mapping[str, Any],
    params: Mapping[str, Any],
    root_property: str | None = None,
) -> dict[str, Any]:
    """Envelope for one generic queue item, carrying its queue metadata."""
    body: dict[str, Any] = dict(extras)
    body[_root(root_property, QUEUE_ROOT)] = item.payload
    body["queueId"] = item.id
    if item.type is not None:
        body["type"] = item.type
    body["idempotencyKey"] = item.idempotency_key
    body.update(params)
    return body


def batch_idempotency_key(items: Sequence[QueueItem]) -> str:
    """Stable key for a batch: identical item sets always map to the same key."""
    if len(items) == 1:
        return items[0].idempotency_key
    joined = "|".join(item.idempotency_key for item in items)
    return str(uuid.uuid5(BATCH_KEY_NAMESPACE, joined))


def sanitize_header(value: str) -> str:
    """Strip CR/LF so a header cannot inject extra header lines."""
    return _HEADER_INJECTION.sub("", value).strip()


def merge_headers(*sources: Mapping[str, Any]) -> dict[str, str]:
    """Merge header mappings left to right, sanitizing names and values."""
    headers: dict[str, str] = {}
    for source in sources:
        for key, value in source.items():
            name = sanitize_header(str(key))
            if name:
                headers[name] = sanitize_header(str(value))
    return headers
