from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Optional, Protocol, TypeVar
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings
from errors import AggregatorError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ChangePage:
    added: list[dict[str, Any]] = field(default_factory=list)
    modified: list[dict[str, Any]] = field(default_factory=list)
    removed: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


class AggregatorClient(Protocol):
    def fetch_changes(self, access_token: str, cursor: Optional[str]) -> ChangePage:
        ...

    def enrich(self, candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
        ...

    def recurring_streams(self, access_token: str) -> list[dict[str, Any]]:
        ...


def amount_to_cents(value: Any) -> int:
    """Round a provider amount (dollars, possibly float) to integer cents."""
    cents = (Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def call_with_retry(
    fn: Callable[[], T],
    *,
    delay_secs: float,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn``; on AggregatorError wait ``delay_secs`` and try exactly once more."""
    try:
        return fn()
    except AggregatorError as exc:
        logger.warning(f"aggregator_retry: call={label} delay={delay_secs} error={exc}")
        sleep(delay_secs)
        return fn()


class HttpAggregatorClient:
    """JSON-over-HTTP client for a Plaid-compatible aggregator API."""

    page_size = 500

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        payload = {
            "client_id": self.settings.aggregator_client_id,
            "secret": self.settings.aggregator_secret,
            **body,
        }
        req = Request(
            f"{self.settings.aggregator_url}{path}",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.settings.aggregator_timeout_secs) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            raise AggregatorError(
                f"Aggregator returned HTTP {exc.code} for {path}", status=exc.code
            ) from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise AggregatorError(f"Aggregator request to {path} failed") from exc

    def fetch_changes(self, access_token: str, cursor: Optional[str]) -> ChangePage:
        body: dict[str, Any] = {"access_token": access_token, "count": self.page_size}
        if cursor:
            body["cursor"] = cursor
        data = self._post("/transactions/sync", body)
        try:
            return ChangePage(
                added=list(data.get("added") or []),
                modified=list(data.get("modified") or []),
                removed=list(data.get("removed") or []),
                next_cursor=data["next_cursor"],
                has_more=bool(data.get("has_more")),
            )
        except (KeyError, TypeError) as exc:
            raise AggregatorError("Unexpected /transactions/sync response") from exc

    def enrich(self, candidates: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not candidates:
            return []
        data = self._post(
            "/transactions/enrich",
            {"account_type": "depository", "transactions": candidates},
        )
        return list(data.get("enriched_transactions") or [])

    def recurring_streams(self, access_token: str) -> list[dict[str, Any]]:
        data = self._post("/transactions/recurring/get", {"access_token": access_token})
        return list(data.get("inflow_streams") or []) + list(
            data.get("outflow_streams") or []
        )
