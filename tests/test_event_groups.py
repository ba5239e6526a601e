from datetime import datetime, timedelta, timezone

from src.domain.event_groups import (
    build_webhook_url,
    parse_webhook_sink,
    resolve_event_group,
    types_group_key,
)
from src.domain.lifecycle import SubscriptionState, parse_timestamp, subscription_state
from src.domain.resources import (
    ResourceAction,
    ResourceCategory,
    resolve_resource_event,
    resource_spec,
)


def test_category_tokens_resolve_to_group_keys():
    assert resolve_event_group("it.example.webhooks.entities.clients.create") == "entity"
    assert resolve_event_group("it.fattureincloud.webhooks.entities.suppliers.delete") == "entity"
    assert resolve_event_group("it.fattureincloud.webhooks.issued_documents.invoices.update") == "issued_documents"
    assert resolve_event_group("it.fattureincloud.webhooks.received_documents.create") == "received_documents"
    assert resolve_event_group("it.fattureincloud.webhooks.products.update") == "products"
    assert resolve_event_group("it.fattureincloud.webhooks.receipts.delete") == "receipts"


def test_category_token_wins_over_positional_segment():
    # "cashbook" follows "webhooks" but the category token appears later.
    assert resolve_event_group("it.fattureincloud.webhooks.cashbook.issued_documents.create") == "issued_documents"


def test_positional_fallback_and_default():
    assert resolve_event_group("it.fattureincloud.webhooks.cashbook.create") == "cashbook"
    assert resolve_event_group("it.fattureincloud.webhooks") == "default"
    assert resolve_event_group("something.unrelated") == "default"
    assert resolve_event_group("") == "default"
    assert resolve_event_group(None) == "default"


def test_singular_entity_is_not_a_category_token():
    assert resolve_event_group("entity") == "default"
    assert resolve_event_group("issued_documents") == "issued_documents"
    assert resolve_event_group("it.fic.webhooks.entity.issued_documents.invoices.create") == "issued_documents"
    assert resolve_event_group("it.fic.webhooks.entity.clients.create") == "entity"


def test_types_group_key_uses_first_type():
    assert types_group_key([]) is None
    assert types_group_key(None) is None
    assert types_group_key(
        ["it.fattureincloud.webhooks.entities.clients.create", "it.fattureincloud.webhooks.issued_documents.invoices.create"]
    ) == "entity"


def test_build_and_parse_webhook_sink():
    url = build_webhook_url("https://sync.example.com/", "acct-7", "entity")
    assert url == "https://sync.example.com/api/webhooks/fic/acct-7/entity"

    route = parse_webhook_sink(url)
    assert route is not None
    assert route.system == "fic"
    assert route.account_id == "acct-7"
    assert route.group == "entity"

    numeric = parse_webhook_sink("https://x.example.com/api/webhooks/fic/12/issued_documents/")
    assert numeric is not None
    assert (numeric.account_id, numeric.group) == ("12", "issued_documents")


def test_parse_webhook_sink_returns_none_for_foreign_urls():
    assert parse_webhook_sink(None) is None
    assert parse_webhook_sink("") is None
    assert parse_webhook_sink("https://hooks.example.com/receive") is None
    assert parse_webhook_sink("https://x.example.com/api/webhooks/fic/12") is None


def test_resource_event_mapping():
    assert resolve_resource_event("it.fattureincloud.webhooks.entities.clients.create") == (
        ResourceCategory.CLIENT,
        ResourceAction.CREATED,
    )
    assert resolve_resource_event("it.fattureincloud.webhooks.entities.suppliers.update") == (
        ResourceCategory.SUPPLIER,
        ResourceAction.UPDATED,
    )
    assert resolve_resource_event("it.fattureincloud.webhooks.issued_documents.invoices.delete") == (
        ResourceCategory.INVOICE,
        ResourceAction.DELETED,
    )
    assert resolve_resource_event("it.fattureincloud.webhooks.issued_documents.quotes.create") == (
        ResourceCategory.QUOTE,
        ResourceAction.CREATED,
    )
    assert resolve_resource_event("it.fattureincloud.webhooks.products.update") is None
    assert resolve_resource_event("it.fattureincloud.webhooks.entities.clients.archive") is None
    assert resolve_resource_event(None) is None


def test_resource_specs_cover_every_category():
    for category in ResourceCategory:
        spec = resource_spec(category)
        assert spec.category is category
        assert spec.table.startswith("fic_")
        assert spec.id_column == f"fic_{category.value}_id"

    snapshot = resource_spec("invoice").snapshot(
        {"id": 9, "number": "12/A", "status": "paid", "amount_gross": 122.0, "date": "2024-03-01"}
    )
    assert snapshot["number"] == "12/A"
    assert snapshot["total_gross"] == 122.0
    assert snapshot["fic_date"].startswith("2024-03-01")


def test_parse_timestamp_is_fallible_without_raising():
    assert parse_timestamp(None) is None
    assert parse_timestamp("") is None
    assert parse_timestamp("not a date") is None
    parsed = parse_timestamp("2024-05-01T10:00:00Z")
    assert parsed == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    naive = parse_timestamp("2024-05-01T10:00:00")
    assert naive.tzinfo is not None


def test_subscription_state_transitions():
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    base = {"is_active": True, "verified": True}
    assert subscription_state({**base, "verified": False}, now=now) is SubscriptionState.UNVERIFIED
    assert subscription_state({**base, "is_active": False}, now=now) is SubscriptionState.INACTIVE
    assert subscription_state({**base, "expires_at": None}, now=now) is SubscriptionState.ACTIVE
    assert subscription_state(
        {**base, "expires_at": (now + timedelta(days=30)).isoformat()}, now=now
    ) is SubscriptionState.ACTIVE
    assert subscription_state(
        {**base, "expires_at": (now + timedelta(days=15)).isoformat()}, now=now
    ) is SubscriptionState.EXPIRING
    assert subscription_state(
        {**base, "expires_at": (now - timedelta(seconds=1)).isoformat()}, now=now
    ) is SubscriptionState.EXPIRED
