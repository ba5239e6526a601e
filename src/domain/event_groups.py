from __future__ import annotations

import re
from typing import Final, NamedTuple
from urllib.parse import urlparse

DEFAULT_EVENT_GROUP: Final[str] = "default"
WEBHOOK_SYSTEM: Final[str] = "fic"

# Checked in order; event-type strings differ between remote API versions, so
# a category token anywhere in the type wins over the positional fallback.
CATEGORY_GROUPS: Final[tuple[tuple[str, str], ...]] = (
    ("entities", "entity"),
    ("issued_documents", "issued_documents"),
    ("received_documents", "received_documents"),
    ("products", "products"),
    ("receipts", "receipts"),
)

_SINK_PATH_RE = re.compile(
    r"/webhooks/(?P<system>[A-Za-z0-9_-]+)/(?P<account_id>[A-Za-z0-9-]+)/(?P<group>[A-Za-z0-9_-]+)/?$"
)


class SinkRoute(NamedTuple):
    system: str
    account_id: str
    group: str


def resolve_event_group(event_type: str | None) -> str:
    """Map a remote event type to the routing key used in webhook URLs.

    ``it.fattureincloud.webhooks.entities.clients.create`` -> ``entity``
    ``it.fattureincloud.webhooks.issued_documents.invoices.update`` -> ``issued_documents``
    """
    segments = [segment for segment in (event_type or "").strip().split(".") if segment]
    if not segments:
        return DEFAULT_EVENT_GROUP

    for token, group in CATEGORY_GROUPS:
        if token in segments:
            return group

    if "webhooks" in segments:
        index = segments.index("webhooks")
        if index + 1 < len(segments):
            return segments[index + 1]

    return DEFAULT_EVENT_GROUP


def types_group_key(event_types: list[str] | None) -> str | None:
    if not event_types:
        return None
    return resolve_event_group(event_types[0])


def webhook_path(account_id: str | int, group: str, system: str = WEBHOOK_SYSTEM) -> str:
    return f"/api/webhooks/{system}/{account_id}/{group}"


def build_webhook_url(base_url: str, account_id: str | int, group: str) -> str:
    return f"{base_url.rstrip('/')}{webhook_path(account_id, group)}"


def parse_webhook_sink(sink: str | None) -> SinkRoute | None:
    """Extract (system, account id, group) from a subscription sink URL.

    Returns ``None`` for anything that does not look like one of our webhook
    URLs; callers treat that as "no URL-derived routing information".
    """
    if not sink:
        return None
    path = urlparse(sink).path or sink
    match = _SINK_PATH_RE.search(path)
    if not match:
        return None
    return SinkRoute(
        system=match.group("system"),
        account_id=match.group("account_id"),
        group=match.group("group"),
    )
