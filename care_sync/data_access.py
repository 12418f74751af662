"""
Data access layer: authoritative reads and mutations against the backend.

RestDataAccess talks to a PostgREST-style REST API:
- Exact counts via HEAD + ``Prefer: count=exact`` (read from Content-Range)
- Ordered, bounded pages via ``order`` / ``limit``
- PATCH / DELETE mutations returning the affected rows
- Retry with backoff on 5xx and transport errors, honouring 429 Retry-After
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import httpx
import structlog

from .errors import MutationError, ReconciliationReadError
from .metrics import MetricsCollector

log = structlog.get_logger()

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_SECONDS = 1.0


@dataclass(frozen=True)
class Mutation:
    action: Literal["update", "delete"]
    match: dict[str, Any]
    values: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def update(cls, match: dict[str, Any], values: dict[str, Any]) -> Mutation:
        return cls("update", dict(match), dict(values))

    @classmethod
    def delete(cls, match: dict[str, Any]) -> Mutation:
        return cls("delete", dict(match))


class DataAccess(Protocol):
    async def count_where(self, table: str, predicate: dict[str, Any]) -> int: ...

    async def read_page(
        self,
        table: str,
        predicate: dict[str, Any],
        order: str = "created_at.desc",
        limit: int = 50,
    ) -> list[dict[str, Any]]: ...

    async def read_one(self, table: str, predicate: dict[str, Any]) -> dict[str, Any] | None: ...

    async def mutate(self, table: str, mutation: Mutation) -> int: ...


def render_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return "eq.true" if value else "eq.false"
    return f"eq.{value}"


def render_filters(predicate: dict[str, Any]) -> dict[str, str]:
    """Render an equality predicate as PostgREST query parameters."""
    return {column: render_value(value) for column, value in predicate.items()}


def parse_content_range(header: str | None) -> int:
    """Total from a ``Content-Range`` header such as ``0-24/3573`` or ``*/0``."""
    if not header or "/" not in header:
        raise ValueError(f"missing total in Content-Range: {header!r}")
    total = header.rsplit("/", 1)[1].strip()
    if total == "*":
        raise ValueError("backend did not compute an exact count")
    return int(total)


class RestDataAccess:
    """
    Authoritative reads and mutations over the backend's REST API.

    Reads raise ReconciliationReadError, mutations raise MutationError; 4xx
    responses other than 429 are never retried.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        rest_path: str = "/rest/v1",
        verify_tls: bool = True,
        request_timeout: float = 30.0,
        metrics: MetricsCollector | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_retries: int = MAX_RETRIES,
        retry_base: float = RETRY_BASE_SECONDS,
    ):
        self._base_url = f"{url.rstrip('/')}{rest_path}"
        self._api_key = api_key
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._metrics = metrics
        self._transport = transport
        self._max_retries = max_retries
        self._retry_base = retry_base
        self._client: httpx.AsyncClient | None = None

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport,
            headers={
                "apikey": self._api_key,
                "Authorization": f"Bearer {self._api_key}",
            },
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> RestDataAccess:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # --- Reads ---

    async def count_where(self, table: str, predicate: dict[str, Any]) -> int:
        resp = await self._request(
            "HEAD",
            table,
            ReconciliationReadError,
            params={"select": "id", **render_filters(predicate)},
            headers={"Prefer": "count=exact"},
        )
        try:
            return parse_content_range(resp.headers.get("Content-Range"))
        except ValueError as exc:
            raise ReconciliationReadError(str(exc), table=table) from exc

    async def read_page(
        self,
        table: str,
        predicate: dict[str, Any],
        order: str = "created_at.desc",
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        resp = await self._request(
            "GET",
            table,
            ReconciliationReadError,
            params={"select": "*", **render_filters(predicate), "order": order, "limit": str(limit)},
        )
        rows = resp.json()
        if not isinstance(rows, list):
            raise ReconciliationReadError("expected a list of rows", table=table)
        return rows

    async def read_one(self, table: str, predicate: dict[str, Any]) -> dict[str, Any] | None:
        rows = await self.read_page(table, predicate, order="created_at.desc", limit=1)
        return rows[0] if rows else None

    # --- Mutations ---

    async def mutate(self, table: str, mutation: Mutation) -> int:
        if not mutation.match:
            raise MutationError("refusing to mutate without a filter", table=table)
        method = "PATCH" if mutation.action == "update" else "DELETE"
        resp = await self._request(
            method,
            table,
            MutationError,
            params=render_filters(mutation.match),
            headers={"Prefer": "return=representation"},
            json=mutation.values if mutation.action == "update" else None,
        )
        if self._metrics:
            self._metrics.inc("mutations_total", table=table, action=mutation.action)
        if not resp.content:
            return 0
        rows = resp.json()
        return len(rows) if isinstance(rows, list) else 0

    # --- Transport ---

    async def _request(
        self,
        method: str,
        table: str,
        error_cls: type[ReconciliationReadError] | type[MutationError],
        params: dict[str, str],
        headers: dict[str, str] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        if self._client is None:
            raise error_cls(f"data access not opened ({method} {table})", table=table)

        last_exc: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                resp = await self._client.request(
                    method, f"/{table}", params=params, headers=headers, json=json
                )

                if resp.status_code == 429:
                    retry_after = float(
                        resp.headers.get("Retry-After", self._retry_base * (attempt + 1))
                    )
                    log.warning("data_access.rate_limited", table=table, retry_after=retry_after)
                    last_exc = httpx.HTTPStatusError(
                        "rate limited", request=resp.request, response=resp
                    )
                    await asyncio.sleep(retry_after)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if 400 <= status < 500:
                    log.error("data_access.client_error", method=method, table=table, status=status)
                    raise error_cls(
                        f"{method} {table} rejected with {status}", table=table, status=status
                    ) from exc
                last_exc = exc
            except (httpx.ConnectError, httpx.ReadError, httpx.TimeoutException) as exc:
                last_exc = exc

            if attempt == self._max_retries - 1:
                break
            backoff = self._retry_base * (2 ** attempt)
            log.warning(
                "data_access.retry",
                method=method,
                table=table,
                attempt=attempt + 1,
                backoff=backoff,
                error=str(last_exc),
            )
            await asyncio.sleep(backoff)

        status = None
        if isinstance(last_exc, httpx.HTTPStatusError):
            status = last_exc.response.status_code
        raise error_cls(
            f"{method} {table} failed after {self._max_retries} attempts: {last_exc!r}",
            table=table,
            status=status,
        ) from last_exc
