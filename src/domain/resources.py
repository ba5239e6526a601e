from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Final

from src.domain.lifecycle import parse_timestamp


class ResourceCategory(str, Enum):
    CLIENT = "client"
    SUPPLIER = "supplier"
    INVOICE = "invoice"
    QUOTE = "quote"


class ResourceAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


_ACTION_BY_VERB: Final[dict[str, ResourceAction]] = {
    "create": ResourceAction.CREATED,
    "update": ResourceAction.UPDATED,
    "delete": ResourceAction.DELETED,
}


def _iso(value: Any) -> str | None:
    parsed = parse_timestamp(value)
    return parsed.isoformat() if parsed else None


def _entity_snapshot(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": data.get("name"),
        "code": data.get("code"),
        "vat_number": data.get("vat_number"),
        "fic_created_at": _iso(data.get("created_at")),
        "fic_updated_at": _iso(data.get("updated_at")),
        "raw": data,
    }


def _document_snapshot(data: dict[str, Any]) -> dict[str, Any]:
    total = data.get("amount_gross")
    if total is None:
        total = data.get("total_gross", data.get("amount_net"))
    return {
        "number": data.get("number"),
        "status": data.get("status"),
        "total_gross": total,
        "fic_date": _iso(data.get("date")),
        "fic_created_at": _iso(data.get("created_at")),
        "raw": data,
    }


@dataclass(frozen=True)
class ResourceSpec:
    category: ResourceCategory
    plural: str
    remote_path: str
    table: str
    id_column: str
    snapshot: Callable[[dict[str, Any]], dict[str, Any]]


RESOURCE_SPECS: Final[dict[ResourceCategory, ResourceSpec]] = {
    ResourceCategory.CLIENT: ResourceSpec(
        category=ResourceCategory.CLIENT,
        plural="clients",
        remote_path="/entities/clients",
        table="fic_clients",
        id_column="fic_client_id",
        snapshot=_entity_snapshot,
    ),
    ResourceCategory.SUPPLIER: ResourceSpec(
        category=ResourceCategory.SUPPLIER,
        plural="suppliers",
        remote_path="/entities/suppliers",
        table="fic_suppliers",
        id_column="fic_supplier_id",
        snapshot=_entity_snapshot,
    ),
    ResourceCategory.INVOICE: ResourceSpec(
        category=ResourceCategory.INVOICE,
        plural="invoices",
        remote_path="/issued_documents/invoices",
        table="fic_invoices",
        id_column="fic_invoice_id",
        snapshot=_document_snapshot,
    ),
    ResourceCategory.QUOTE: ResourceSpec(
        category=ResourceCategory.QUOTE,
        plural="quotes",
        remote_path="/issued_documents/quotes",
        table="fic_quotes",
        id_column="fic_quote_id",
        snapshot=_document_snapshot,
    ),
}

_CATEGORY_BY_PLURAL: Final[dict[str, ResourceCategory]] = {
    spec.plural: category for category, spec in RESOURCE_SPECS.items()
}


def resource_spec(category: ResourceCategory | str) -> ResourceSpec:
    return RESOURCE_SPECS[ResourceCategory(category)]


def resolve_resource_event(event_type: str | None) -> tuple[ResourceCategory, ResourceAction] | None:
    """``...entities.clients.create`` -> (CLIENT, CREATED); None for unsupported types."""
    segments = [segment for segment in (event_type or "").strip().split(".") if segment]
    if len(segments) < 2:
        return None
    action = _ACTION_BY_VERB.get(segments[-1])
    category = _CATEGORY_BY_PLURAL.get(segments[-2])
    if action is None or category is None:
        return None
    return category, action
