"""crm_sync.airtable_source

Paginated reader for the Airtable REST API.

  GET {api_base}/{base_id}/{table}?pageSize=100&offset={cursor}
  Authorization: Bearer {token}
  → {"records": [{"id": ..., "fields": {...}}, ...], "offset": "..."}

Pages are requested until a response carries no offset.

Failure handling:
  - Transport errors, 429 and 5xx are retried with exponential backoff.
  - 401/403 and other non-2xx statuses are not retried.
  - A failure on the first page raises SourceFetchError (nothing to return).
  - A failure on a later page stops the loop and returns the records read
    so far with complete=False.  Callers must not compute deletions from
    an incomplete result.
"""

from __future__ import annotations

import logging
import random
import time
import urllib.parse
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

from crm_sync.config import RetryPolicy, SyncConfig
from crm_sync.models import ENTITY_ORDER, ExternalRecord

log = logging.getLogger(__name__)

_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
_AUTH_STATUSES = frozenset({401, 403})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SourceFetchError(Exception):
    """Raised when a page cannot be read from the source API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class FetchResult:
    table_name: str
    records: list[ExternalRecord] = field(default_factory=list)
    complete: bool = True
    pages: int = 0
    error: str | None = None

    @property
    def ids(self) -> list[str]:
        return [r.external_id for r in self.records]


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

@dataclass
class Backoff:
    """Exponential backoff with jitter for a single page request."""

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25
    sleep_fn: Callable[[float], None] = field(default=time.sleep, repr=False)
    _attempts: int = field(default=0, init=False, repr=False)

    @classmethod
    def from_policy(cls, policy: RetryPolicy, **kwargs: Any) -> "Backoff":
        return cls(
            max_attempts=policy.max_attempts,
            base_delay=policy.base_delay,
            max_delay=policy.max_delay,
            **kwargs,
        )

    def on_failure(self) -> bool:
        """Record a failed attempt. Returns True if attempts are exhausted."""
        self._attempts += 1
        return self._attempts >= self.max_attempts

    def delay(self) -> float:
        d = min(self.base_delay * (2 ** max(self._attempts - 1, 0)), self.max_delay)
        if d > 0 and self.jitter:
            d += random.uniform(0, self.jitter * d)
        return d

    def sleep(self) -> None:
        d = self.delay()
        if d > 0:
            self.sleep_fn(d)

    @property
    def attempts(self) -> int:
        return self._attempts


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

class AirtableSource:
    """Reads every record of a table from one Airtable base."""

    def __init__(
        self,
        config: SyncConfig,
        session: requests.Session | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {config.token}",
            "Content-Type": "application/json",
        })
        self._sleep_fn = sleep_fn

    def table_url(self, table_name: str) -> str:
        return (
            f"{self._config.api_base}/{self._config.base_id}/"
            f"{urllib.parse.quote(table_name, safe='')}"
        )

    def fetch_all(self, table_name: str) -> FetchResult:
        """Return all records of table_name, following offset cursors."""
        log.info("Fetching all records from Airtable table: %s", table_name)
        result = FetchResult(table_name=table_name)
        offset: str | None = None

        while True:
            try:
                data = self._get_page(table_name, offset)
            except SourceFetchError as exc:
                if result.pages == 0:
                    raise
                log.error(
                    "Error fetching %s after %d page(s): %s; returning %d partial records",
                    table_name, result.pages, exc, len(result.records),
                )
                result.complete = False
                result.error = str(exc)
                return result

            page_records = data.get("records") or []
            for payload in page_records:
                if not isinstance(payload, dict) or not payload.get("id"):
                    log.warning("Skipping %s record without id: %r", table_name, payload)
                    continue
                result.records.append(ExternalRecord.from_api(payload))
            result.pages += 1
            log.info(
                "Fetched %d records from %s (total: %d)",
                len(page_records), table_name, len(result.records),
            )

            offset = data.get("offset")
            if not offset:
                return result

    def _get_page(self, table_name: str, offset: str | None) -> dict[str, Any]:
        params: dict[str, Any] = {"pageSize": self._config.page_size}
        if offset:
            params["offset"] = offset
        url = self.table_url(table_name)
        backoff = Backoff.from_policy(self._config.retry, sleep_fn=self._sleep_fn)

        while True:
            try:
                resp = self._session.get(
                    url, params=params, timeout=self._config.timeout_seconds
                )
            except requests.RequestException as exc:
                if backoff.on_failure():
                    raise SourceFetchError(
                        f"{table_name}: network error after {backoff.attempts} attempt(s): {exc}"
                    ) from exc
                log.warning("Network error fetching %s (%s); retrying", table_name, exc)
                backoff.sleep()
                continue

            status = resp.status_code
            if status in _AUTH_STATUSES:
                raise SourceFetchError(
                    f"{table_name}: Airtable API error: {status} - {resp.text[:200]}",
                    status_code=status,
                )
            if status in _RETRYABLE_STATUSES:
                if backoff.on_failure():
                    raise SourceFetchError(
                        f"{table_name}: Airtable API error: {status} "
                        f"after {backoff.attempts} attempt(s)",
                        status_code=status,
                    )
                log.warning("Airtable returned %s for %s; backing off", status, table_name)
                backoff.sleep()
                continue
            if not 200 <= status < 300:
                raise SourceFetchError(
                    f"{table_name}: Airtable API error: {status} - {resp.text[:200]}",
                    status_code=status,
                )

            try:
                data = resp.json()
            except ValueError as exc:
                raise SourceFetchError(f"{table_name}: response is not JSON: {exc}") from exc
            if not isinstance(data, dict):
                raise SourceFetchError(f"{table_name}: unexpected response shape")
            return data


# ---------------------------------------------------------------------------
# Concurrent fetch of all entity tables
# ---------------------------------------------------------------------------

def fetch_tables(
    config: SyncConfig,
    session_factory: Callable[[], requests.Session] = requests.Session,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> dict[str, FetchResult]:
    """Fetch the People, Company and Jobs tables concurrently.

    Each table gets its own session.  Returns entity_type → FetchResult;
    a SourceFetchError from any table propagates after all fetches finish.
    """
    with ThreadPoolExecutor(max_workers=len(ENTITY_ORDER)) as pool:
        futures = {
            entity_type: pool.submit(
                AirtableSource(config, session_factory(), sleep_fn).fetch_all,
                config.table_for(entity_type),
            )
            for entity_type in ENTITY_ORDER
        }
    return {entity_type: fut.result() for entity_type, fut in futures.items()}
