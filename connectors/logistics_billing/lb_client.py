"""Logistics Billing HTTP Client.

aiohttp client for the 2025-07 billing API. Handles bearer authentication,
timeouts, bounded retries on rate limits and server errors, and
normalization of responses.
"""

import asyncio
import json
from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from pydantic import ValidationError

from connectors.billing_base import (
    BillingApiBase,
    InvoicePage,
    TransactionPage,
    TransactionQuery,
    UpstreamInvoiceSummary,
)
from connectors.logistics_billing.lb_models import LBInvoice, LBTransaction, parse_page
from core.config import ApiSettings
from core.errors import TransientUpstreamError, UpstreamRequestError
from core.observability import get_logger, get_metrics
from core.retry import RetriesExhausted, RetryableError, retry_async

logger = get_logger(__name__)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        # HTTP-date form is not worth honoring; fall back to backoff
        return None


class LogisticsBillingClient(BillingApiBase):
    """HTTP client for the logistics provider billing API.

    Usage:
        async with LogisticsBillingClient(settings.api) as client:
            page = await client.query_transactions(TransactionQuery(invoiced_status=False))
            invoice = await client.get_invoice(8633612)
    """

    def __init__(
        self,
        settings: ApiSettings,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize API client.

        Args:
            settings: API connection settings
            session: Existing aiohttp session (the client will not close it)
            sleep: Sleep function used between retries
        """
        if not settings.token:
            raise ValueError("Billing API token is required. Set BILLING_API_TOKEN.")
        self.settings = settings
        self.reference_id_batch_size = settings.reference_id_batch_size
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._metrics = get_metrics()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close HTTP session if this client created it."""
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
        combination: Optional[str] = None,
    ) -> Any:
        """Make an authenticated request, retrying transient failures.

        Args:
            method: HTTP method
            endpoint: Path below the versioned base URL
            params: Query parameters
            body: JSON request body
            combination: Filter combination label for errors and logs

        Returns:
            Decoded JSON (numbers with a fraction decode to Decimal)

        Raises:
            TransientUpstreamError: 429/5xx/timeout persisted through every attempt
            UpstreamRequestError: Any other non-success response, or a success
                response whose body is not JSON
        """
        session = await self._get_session()
        url = f"{self.settings.get_base_url()}{endpoint}"
        retry_config = self.settings.retry
        timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout_seconds)

        async def attempt() -> Any:
            self._metrics.record_request()
            try:
                async with session.request(
                    method,
                    url,
                    headers=self._get_headers(),
                    params=params,
                    json=body,
                    timeout=timeout,
                ) as response:
                    response_text = await response.text()

                    if response.status < 400:
                        if not response_text:
                            return {}
                        try:
                            return json.loads(response_text, parse_float=Decimal)
                        except ValueError as e:
                            raise UpstreamRequestError(
                                f"Undecodable response body on {method} {endpoint}: {e}",
                                status_code=response.status,
                                response_body=response_text,
                                filter_combination=combination,
                            ) from e

                    if response.status == 429:
                        self._metrics.record_rate_limited()
                        raise RetryableError(
                            "Rate limited",
                            status_code=429,
                            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                        )

                    if response.status in retry_config.retry_on_status:
                        raise RetryableError(
                            f"Server error {response.status}",
                            status_code=response.status,
                        )

                    raise UpstreamRequestError(
                        f"API error {response.status} on {method} {endpoint}",
                        status_code=response.status,
                        response_body=response_text,
                        filter_combination=combination,
                    )
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                raise RetryableError(f"{type(e).__name__}: {e}") from e

        def on_retry(attempt_number: int, error: RetryableError, delay: float) -> None:
            self._metrics.record_retry()
            logger.warning(
                f"{method} {endpoint} failed ({error}), retrying in {delay:.1f}s "
                f"(attempt {attempt_number}/{retry_config.max_attempts})",
                extra_fields={"filter_combination": combination, "status_code": error.status_code},
            )

        try:
            return await retry_async(attempt, retry_config, sleep=self._sleep, on_retry=on_retry)
        except RetriesExhausted as e:
            self._metrics.record_upstream_failure()
            raise TransientUpstreamError(
                f"{method} {endpoint} failed after {e.attempts} attempts: {e.last_error}",
                status_code=e.last_error.status_code,
                retry_after=e.last_error.retry_after,
                attempts=e.attempts,
                filter_combination=combination,
            ) from e
        except UpstreamRequestError:
            self._metrics.record_upstream_failure()
            raise

    def _malformed(self, endpoint: str, error: ValueError, combination: Optional[str]) -> UpstreamRequestError:
        self._metrics.record_upstream_failure()
        if isinstance(error, ValidationError):
            reason = f"{error.error_count()} validation errors"
        else:
            reason = str(error)
        return UpstreamRequestError(
            f"Malformed payload from {endpoint}: {reason}",
            response_body=str(error),
            filter_combination=combination,
        )

    def _transaction_page(self, payload: Any, endpoint: str, combination: Optional[str]) -> TransactionPage:
        """Normalize a transactions listing.

        Raises:
            UpstreamRequestError: The listing or one of its items does not match
                the provider schema
        """
        try:
            items, next_cursor = parse_page(payload)
            records = [LBTransaction.model_validate(item).to_record() for item in items]
        except ValueError as e:
            raise self._malformed(endpoint, e, combination) from e
        self._metrics.record_page_fetched(items=len(records))
        return TransactionPage(items=records, next_cursor=next_cursor)

    # -------------------------------------------------------------------------
    # Billing API
    # -------------------------------------------------------------------------

    async def query_transactions(
        self,
        query: TransactionQuery,
        cursor: Optional[str] = None,
    ) -> TransactionPage:
        params = {"Cursor": cursor} if cursor else None
        combination = query.combination_key()
        payload = await self._request(
            "POST",
            "/transactions:query",
            params=params,
            body=query.to_body(self.settings.page_size),
            combination=combination,
        )
        return self._transaction_page(payload, "/transactions:query", combination)

    async def get_invoice(self, invoice_id: int) -> UpstreamInvoiceSummary:
        endpoint = f"/invoices/{invoice_id}"
        payload = await self._request("GET", endpoint)
        try:
            return LBInvoice.model_validate(payload).to_summary()
        except ValidationError as e:
            raise self._malformed(endpoint, e, None) from e

    async def list_invoices(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> InvoicePage:
        params = {"pageSize": str(page_size or self.settings.page_size)}
        if start_date:
            params["startDate"] = start_date.isoformat()
        if end_date:
            params["endDate"] = end_date.isoformat()
        if cursor:
            params["cursor"] = cursor
        payload = await self._request("GET", "/invoices", params=params)
        try:
            items, next_cursor = parse_page(payload)
            summaries = [LBInvoice.model_validate(item).to_summary() for item in items]
        except ValueError as e:
            raise self._malformed("/invoices", e, None) from e
        return InvoicePage(items=summaries, next_cursor=next_cursor)

    async def get_invoice_transactions(
        self,
        invoice_id: int,
        cursor: Optional[str] = None,
    ) -> TransactionPage:
        params = {"pageSize": str(self.settings.page_size)}
        if cursor:
            params["cursor"] = cursor
        endpoint = f"/invoices/{invoice_id}/transactions"
        combination = f"invoice={invoice_id}"
        payload = await self._request("GET", endpoint, params=params, combination=combination)
        return self._transaction_page(payload, endpoint, combination)
