"""Conductor REST client for QuickBooks Desktop with retry logic.

Conductor exposes QuickBooks Desktop over a JSON API. This client wraps it
with:
- Proactive rate limiting (token bucket)
- Automatic retry with exponential backoff for 5xx, 429, timeouts and
  connection failures
- Cursor pagination bounded by a page limit
- Structured logging of requests and errors

The client is synchronous; the async gateway runs it in worker threads.

Usage:
    from posync.accounting.client import ConductorClient

    client = ConductorClient(api_key, end_user_id)
    customers = client.get_customer_list_for_matching()
    orders = client.get_sales_orders_for_customer("80000001-1234567890")
"""

import random
import time
from typing import Any

import requests

from posync.accounting.models import CustomerMatchCandidate, Estimate, Invoice, SalesOrder
from posync.core.errors import AccountingAPIError, RateLimitExceeded
from posync.core.logging import get_logger
from posync.core.rate_limiter import get_bucket

logger = get_logger(__name__)

CONDUCTOR_BASE_URL = "https://api.conductor.is/v1"
QBD_PREFIX = "/quickbooks-desktop"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Conductor's maximum page size
MAX_PAGE_SIZE = 150

CONDUCTOR_RATE = 5.0
CONDUCTOR_CAPACITY = 5


class ConductorClient:
    """Conductor API client.

    Attributes:
        base_url: Conductor API base URL
        max_retries: Maximum number of retry attempts
        retry_delays: Delay (seconds) before each retry
        page_size: Records requested per page
        max_customer_pages: Page limit for the customer list
        max_document_pages: Page limit for per-customer document lists
    """

    def __init__(
        self,
        api_key: str,
        end_user_id: str,
        base_url: str = CONDUCTOR_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        timeout: float = 30.0,
        page_size: int = MAX_PAGE_SIZE,
        max_customer_pages: int = 30,
        max_document_pages: int = 10,
        requests_per_second: float = CONDUCTOR_RATE,
        session: requests.Session | None = None,
    ):
        if not api_key or not end_user_id:
            raise AccountingAPIError(
                "Missing Conductor credentials. Set accounting.api_key and "
                "accounting.end_user_id in config.yaml or the CONDUCTOR_API_KEY and "
                "CONDUCTOR_END_USER_ID environment variables."
            )

        self.api_key = api_key
        self.end_user_id = end_user_id
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.timeout = timeout
        self.page_size = min(page_size, MAX_PAGE_SIZE)
        self.max_customer_pages = max_customer_pages
        self.max_document_pages = max_document_pages

        self.session = session or requests.Session()
        self._rate_bucket = get_bucket(
            name="conductor",
            rate=requests_per_second,
            capacity=max(1, int(requests_per_second)),
        )

        logger.debug("ConductorClient initialized", base_url=self.base_url)

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Conductor-End-User-Id": self.end_user_id,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _handle_error_response(self, response: requests.Response, endpoint: str) -> None:
        """Raise an AccountingAPIError carrying details from the error body."""
        try:
            error_info = response.json().get("error", {})
            if not isinstance(error_info, dict):
                error_info = {"message": str(error_info)}
            error_code = error_info.get("code") or error_info.get("type") or "unknown"
            error_message = (
                error_info.get("userFacingMessage") or error_info.get("message") or response.text
            )
        except (ValueError, AttributeError):
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "Conductor API error",
            endpoint=endpoint,
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message[:200],
        )

        if response.status_code == 401:
            raise AccountingAPIError(
                f"Authentication failed (401): {error_message}. "
                "Check CONDUCTOR_API_KEY.",
                status_code=401,
                error_code=error_code,
            )
        if response.status_code == 404:
            raise AccountingAPIError(
                f"Resource not found (404): {error_message}. "
                f"The endpoint '{endpoint}' may be incorrect or the record was deleted.",
                status_code=404,
                error_code=error_code,
            )
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "unknown")
            raise RateLimitExceeded(
                f"Conductor rate limit exceeded (429). Retry after: {retry_after} seconds.",
                status_code=429,
            )
        raise AccountingAPIError(
            f"Conductor API error ({response.status_code}): {error_message}",
            status_code=response.status_code,
            error_code=error_code,
        )

    def _should_retry(self, response: requests.Response, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return response.status_code == 429 or 500 <= response.status_code < 600

    def _get_retry_delay(self, response: requests.Response | None, attempt: int) -> float:
        """Backoff delay with ±20% jitter; honours Retry-After on 429."""
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    base_delay = float(retry_after)
                    return base_delay + base_delay * 0.2 * (2 * random.random() - 1)
                except ValueError:
                    pass

        base_delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
        return base_delay + base_delay * 0.2 * (2 * random.random() - 1)

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an HTTP request to Conductor with retry logic.

        Args:
            method: HTTP method
            endpoint: Path below the base URL (e.g. "/quickbooks-desktop/customers")
            params: Query parameters; None and "" values are dropped
            json: JSON body

        Returns:
            Parsed JSON response

        Raises:
            AccountingAPIError: For API errors, network failures, unreadable
                responses and exhausted retries
            RateLimitExceeded: When rate limits cannot be recovered (an
                AccountingAPIError subclass)
        """
        url = self.base_url + (endpoint if endpoint.startswith("/") else "/" + endpoint)
        clean_params = (
            {k: v for k, v in params.items() if v is not None and v != ""} if params else None
        )
        last_response: requests.Response | None = None

        for attempt in range(self.max_retries + 1):
            try:
                self._rate_bucket.consume()

                logger.debug(
                    "Conductor API request",
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt + 1,
                )

                response = self.session.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    params=clean_params,
                    json=json,
                    timeout=self.timeout,
                )
                last_response = response

                if response.status_code < 400:
                    if response.status_code == 204:
                        return {}
                    try:
                        return response.json()
                    except ValueError as e:
                        raise AccountingAPIError(
                            f"Conductor returned a non-JSON response for {endpoint}: {e}",
                            status_code=response.status_code,
                            error_code="invalid_response",
                        ) from e

                if self._should_retry(response, attempt):
                    delay = self._get_retry_delay(response, attempt)
                    logger.warning(
                        "Retrying Conductor API request",
                        endpoint=endpoint,
                        status_code=response.status_code,
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue

                self._handle_error_response(response, endpoint)

            except requests.exceptions.Timeout:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "Conductor API request timed out, retrying",
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue
                raise AccountingAPIError(
                    f"Request to {endpoint} timed out after {self.timeout}s and "
                    f"{self.max_retries} retries. Conductor or the QuickBooks Web "
                    "Connector may be offline.",
                    status_code=None,
                ) from None

            except requests.exceptions.ConnectionError as e:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "Conductor API connection error, retrying",
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        error=str(e),
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue
                raise AccountingAPIError(
                    f"Connection to Conductor failed: {e}. "
                    "Check your internet connection and try again.",
                    status_code=None,
                ) from e

            except requests.exceptions.RequestException as e:
                raise AccountingAPIError(
                    f"Request to {endpoint} failed: {e}",
                    status_code=None,
                ) from e

        if last_response is not None:
            self._handle_error_response(last_response, endpoint)

        raise AccountingAPIError(
            f"Request to {endpoint} failed after {self.max_retries} retries",
            status_code=None,
        )

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params)

    def paginate(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        max_pages: int | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch all pages of a cursor-paginated list endpoint.

        Args:
            endpoint: List endpoint path
            params: Filters sent with every page
            max_pages: Page limit (None for unlimited)

        Returns:
            Records from every page fetched
        """
        base_params = dict(params) if params else {}
        base_params.setdefault("limit", self.page_size)

        items: list[dict[str, Any]] = []
        cursor: str | None = None
        page_count = 0

        while True:
            if max_pages and page_count >= max_pages:
                logger.warning(
                    "Pagination stopped at max_pages",
                    endpoint=endpoint,
                    max_pages=max_pages,
                    items_collected=len(items),
                )
                break

            page_params = {**base_params, "cursor": cursor} if cursor else base_params
            response = self.get(endpoint, params=page_params)
            items.extend(response.get("data") or [])
            page_count += 1

            cursor = response.get("nextCursor")
            if not cursor:
                break

        logger.debug(
            "Pagination complete",
            endpoint=endpoint,
            total_pages=page_count,
            total_items=len(items),
        )
        return items

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def get_customer(self, customer_id: str) -> dict[str, Any]:
        return self.get(f"{QBD_PREFIX}/customers/{customer_id}")

    def get_customer_list_for_matching(self) -> list[CustomerMatchCandidate]:
        """Fetch every active customer as a match candidate."""
        records = self.paginate(
            f"{QBD_PREFIX}/customers",
            params={"status": "active"},
            max_pages=self.max_customer_pages,
        )
        return [CustomerMatchCandidate.from_api(r) for r in records if r.get("id")]

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def get_sales_orders_for_customer(
        self,
        customer_id: str,
        updated_after: str | None = None,
        include_fully_invoiced: bool = False,
    ) -> list[SalesOrder]:
        """Fetch a customer's Sales Orders.

        Args:
            customer_id: QuickBooks customer ID
            updated_after: ISO-8601 timestamp filter
            include_fully_invoiced: Keep orders that are fully invoiced
        """
        records = self.paginate(
            f"{QBD_PREFIX}/sales-orders",
            params={"customerIds": customer_id, "updatedAfter": updated_after},
            max_pages=self.max_document_pages,
        )
        orders = [SalesOrder.from_api(r) for r in records]
        if not include_fully_invoiced:
            orders = [so for so in orders if not so.is_fully_invoiced]
        return orders

    def get_invoices_for_customer(
        self,
        customer_id: str,
        updated_after: str | None = None,
        unpaid_only: bool = False,
    ) -> list[Invoice]:
        records = self.paginate(
            f"{QBD_PREFIX}/invoices",
            params={"customerIds": customer_id, "updatedAfter": updated_after},
            max_pages=self.max_document_pages,
        )
        invoices = [Invoice.from_api(r) for r in records]
        if unpaid_only:
            invoices = [inv for inv in invoices if not inv.is_paid]
        return invoices

    def get_estimates_for_customer(
        self,
        customer_id: str,
        updated_after: str | None = None,
    ) -> list[Estimate]:
        records = self.paginate(
            f"{QBD_PREFIX}/estimates",
            params={"customerIds": customer_id, "updatedAfter": updated_after},
            max_pages=self.max_document_pages,
        )
        return [Estimate.from_api(r) for r in records]

    def test_connection(self) -> dict[str, Any]:
        """Fetch the configured end user to verify credentials.

        Raises:
            AccountingAPIError: If the connection or credentials are bad
        """
        return self.get(f"/end-users/{self.end_user_id}")
