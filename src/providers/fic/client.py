from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any

import httpx

from src.domain.errors import (
    AuthenticationError,
    RateLimitError,
    RemoteNotFoundError,
    SubscriptionGoneError,
    TransientNetworkError,
    UnexpectedResponseError,
    ValidationError,
)
from src.domain.resources import ResourceCategory, resource_spec


FIC_API_BASE = "https://api-v2.fattureincloud.it"
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
# Failures raised before the request left the client; safe to resend a POST.
_CONNECT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)
_MAX_RETRY_ATTEMPTS = 3
_RETRY_BASE_DELAY_SECONDS = 0.25
_RETRY_MAX_DELAY_SECONDS = 2.0
_MAX_LIST_PAGES = 50

_EP_SUBSCRIPTIONS = "/c/{company_id}/subscriptions"


@dataclass(frozen=True)
class FicCredentials:
    """Per-account call context; built fresh for every call site."""

    access_token: str
    company_id: str | int

    @classmethod
    def from_account(cls, account: dict[str, Any]) -> "FicCredentials":
        return cls(access_token=account.get("access_token") or "", company_id=account.get("company_id") or "")


def _build_base_url(base_url: str | None) -> str:
    return (base_url or FIC_API_BASE).rstrip("/")


def _headers(access_token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/json",
        "Content-Type": "application/json",
    }


def _retry_after_seconds(response: httpx.Response) -> int | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0, int(str(raw).strip()))
    except ValueError:
        return None


def _backoff_delay(attempt: int) -> float:
    delay = min(_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)), _RETRY_MAX_DELAY_SECONDS)
    return delay + random.uniform(0, delay * 0.2)


def _request_with_retry(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
    idempotent: bool = True,
) -> httpx.Response:
    last_exc: httpx.HTTPError | None = None
    response: httpx.Response | None = None
    for attempt in range(1, _MAX_RETRY_ATTEMPTS + 1):
        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json_payload,
                )
        except httpx.HTTPError as exc:
            last_exc = exc
            if attempt >= _MAX_RETRY_ATTEMPTS or not (idempotent or isinstance(exc, _CONNECT_ERRORS)):
                raise
            time.sleep(_backoff_delay(attempt))
            continue

        if idempotent and response.status_code in _RETRYABLE_STATUS_CODES and attempt < _MAX_RETRY_ATTEMPTS:
            delay = _backoff_delay(attempt)
            retry_after = _retry_after_seconds(response) if response.status_code == 429 else None
            if retry_after is not None and retry_after > _RETRY_MAX_DELAY_SECONDS:
                # Longer waits are the caller's business; surface the 429.
                return response
            if retry_after is not None:
                delay = max(delay, float(retry_after))
            time.sleep(delay)
            continue
        return response

    if last_exc:
        raise last_exc
    assert response is not None
    return response


def _request_json(
    *,
    method: str,
    path: str,
    credentials: FicCredentials,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
    params: dict[str, Any] | None = None,
    json_payload: dict[str, Any] | None = None,
    allow_empty: bool = False,
    idempotent: bool = True,
) -> Any:
    if not credentials.access_token:
        raise AuthenticationError("Missing Fatture in Cloud access token")
    if not credentials.company_id:
        raise ValidationError("Missing Fatture in Cloud company id")

    url = f"{_build_base_url(base_url)}{path}"
    try:
        response = _request_with_retry(
            method=method,
            url=url,
            headers=_headers(credentials.access_token),
            timeout_seconds=timeout_seconds,
            params=params,
            json_payload=json_payload,
            idempotent=idempotent,
        )
    except httpx.HTTPError as exc:
        raise TransientNetworkError(f"Fatture in Cloud connectivity error: {exc}") from exc

    if response.status_code in {401, 403}:
        raise AuthenticationError(
            f"Fatture in Cloud rejected the access token (HTTP {response.status_code})"
        )
    if response.status_code == 404:
        raise RemoteNotFoundError(f"Fatture in Cloud resource not found: {path}")
    if response.status_code == 410:
        raise SubscriptionGoneError(f"Fatture in Cloud resource gone: {path}")
    if response.status_code == 429:
        raise RateLimitError(
            "Fatture in Cloud rate limit exceeded",
            retry_after=_retry_after_seconds(response),
        )
    if response.status_code == 422:
        raise ValidationError(f"Fatture in Cloud rejected the request: {response.text[:200]}")
    if response.status_code >= 500:
        raise TransientNetworkError(
            f"Fatture in Cloud API returned HTTP {response.status_code}: {response.text[:200]}"
        )
    if response.status_code >= 400:
        raise UnexpectedResponseError(
            f"Fatture in Cloud API returned HTTP {response.status_code}: {response.text[:200]}"
        )

    if response.status_code == 204 or not response.content:
        if allow_empty:
            return None
        raise UnexpectedResponseError("Fatture in Cloud returned an empty response")
    try:
        return response.json()
    except ValueError as exc:
        if allow_empty:
            return None
        raise UnexpectedResponseError("Fatture in Cloud returned non-JSON response") from exc


def _subscriptions_path(credentials: FicCredentials, suffix: str = "") -> str:
    return _EP_SUBSCRIPTIONS.format(company_id=credentials.company_id) + suffix


def _unwrap_data(payload: Any) -> Any:
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def normalize_subscription(raw: dict[str, Any]) -> dict[str, Any]:
    types = raw.get("types")
    if not isinstance(types, list):
        types = []
    remote_id = raw.get("id")
    return {
        "id": str(remote_id) if remote_id is not None else None,
        "sink": raw.get("sink"),
        "verified": bool(raw.get("verified")),
        "types": [str(item) for item in types],
        "verification_method": raw.get("verification_method") or "header",
        "expires_at": raw.get("expires_at"),
        "secret": raw.get("secret") or raw.get("verification_token"),
    }


def list_subscriptions(
    credentials: FicCredentials,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> list[dict[str, Any]]:
    subscriptions: list[dict[str, Any]] = []
    page = 1
    while page <= _MAX_LIST_PAGES:
        payload = _request_json(
            method="GET",
            path=_subscriptions_path(credentials),
            credentials=credentials,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            params={"page": page} if page > 1 else None,
        )
        data = _unwrap_data(payload)
        if not isinstance(data, list):
            raise UnexpectedResponseError("Unexpected Fatture in Cloud list subscriptions response shape")
        subscriptions.extend(normalize_subscription(item) for item in data if isinstance(item, dict))
        last_page = payload.get("last_page") if isinstance(payload, dict) else None
        if not isinstance(last_page, int) or page >= last_page:
            break
        page += 1
    return subscriptions


def get_subscription(
    credentials: FicCredentials,
    subscription_id: str,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _unwrap_data(
        _request_json(
            method="GET",
            path=_subscriptions_path(credentials, f"/{subscription_id}"),
            credentials=credentials,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
        )
    )
    if not isinstance(data, dict):
        raise UnexpectedResponseError("Unexpected Fatture in Cloud subscription response type")
    return normalize_subscription(data)


def create_subscription_raw(
    credentials: FicCredentials,
    *,
    sink: str,
    types: list[str],
    verification_method: str = "header",
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    """Create a subscription exactly as given, without looking for an existing one.

    Callers own duplicate handling; reconciliation relies on this to recreate a
    subscription with its original ``types`` list.
    """
    payload = {
        "data": {
            "sink": sink,
            "types": list(types),
            "verification_method": verification_method,
            "config": {"mapping": "binary"},
        }
    }
    response = _request_json(
        method="POST",
        path=_subscriptions_path(credentials),
        credentials=credentials,
        base_url=base_url,
        timeout_seconds=timeout_seconds,
        json_payload=payload,
        idempotent=False,
    )
    data = _unwrap_data(response)
    if not isinstance(data, dict) or data.get("id") is None:
        raise UnexpectedResponseError("Unexpected Fatture in Cloud create subscription response")
    created = normalize_subscription(data)
    if not created["types"]:
        created["types"] = list(types)
    if not created["sink"]:
        created["sink"] = sink
    warnings = response.get("warnings") if isinstance(response, dict) else None
    created["warnings"] = [str(item) for item in warnings] if isinstance(warnings, list) else []
    return created


def renew_subscription(
    credentials: FicCredentials,
    subscription_id: str,
    *,
    sink: str,
    types: list[str],
    verification_method: str = "header",
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    payload = {
        "data": {
            "sink": sink,
            "types": list(types),
            "verification_method": verification_method,
            "config": {"mapping": "binary"},
        }
    }
    data = _unwrap_data(
        _request_json(
            method="PUT",
            path=_subscriptions_path(credentials, f"/{subscription_id}"),
            credentials=credentials,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            json_payload=payload,
        )
    )
    if not isinstance(data, dict):
        raise UnexpectedResponseError("Unexpected Fatture in Cloud renew subscription response type")
    renewed = normalize_subscription(data)
    if renewed["id"] is None:
        renewed["id"] = str(subscription_id)
    return renewed


def delete_subscription(
    credentials: FicCredentials,
    subscription_id: str,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> str:
    """Returns ``deleted``, or ``already_deleted`` when the remote answers 404/410."""
    try:
        _request_json(
            method="DELETE",
            path=_subscriptions_path(credentials, f"/{subscription_id}"),
            credentials=credentials,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            allow_empty=True,
        )
    except (RemoteNotFoundError, SubscriptionGoneError):
        return "already_deleted"
    return "deleted"


def verify_subscription(
    credentials: FicCredentials,
    subscription_id: str,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    data = _unwrap_data(
        _request_json(
            method="POST",
            path=_subscriptions_path(credentials, f"/{subscription_id}/verify"),
            credentials=credentials,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            allow_empty=True,
        )
    )
    return data if isinstance(data, dict) else {}


def fetch_resource(
    credentials: FicCredentials,
    category: ResourceCategory | str,
    resource_id: str | int,
    base_url: str | None = None,
    timeout_seconds: float = 12.0,
) -> dict[str, Any]:
    spec = resource_spec(category)
    data = _unwrap_data(
        _request_json(
            method="GET",
            path=f"/c/{credentials.company_id}{spec.remote_path}/{resource_id}",
            credentials=credentials,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
        )
    )
    if not isinstance(data, dict):
        raise UnexpectedResponseError(f"Unexpected Fatture in Cloud {spec.category.value} response type")
    return data
