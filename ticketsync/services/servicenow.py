"""
ServiceNow Table API client with rate limiting, error handling and retries.

This module provides an async client for reading ticket records, SLA
timers and journal notes from a ServiceNow instance. Query strings are
passed through as opaque encoded queries; the client only supplies
limits and display options.
"""

import httpx
import asyncio
from datetime import datetime, timedelta
from typing import Optional, Dict, List, Any
import logging

from ticketsync.schemas.ticket import field_value
from ticketsync.timeutils import format_servicenow_datetime, utcnow

logger = logging.getLogger(__name__)


class ServiceNowRateLimitError(Exception):
    """Raised when rate limit is exceeded and cannot be retried."""
    pass


class ServiceNowAPIError(Exception):
    """Raised when ServiceNow is unreachable or returns an error."""
    pass


def build_delta_query(hours: int, now: Optional[datetime] = None) -> str:
    """
    Encoded query selecting records updated within the last ``hours``.

    Example:
        >>> build_delta_query(1)
        'sys_updated_on>=2024-01-15 13:00:00'
    """
    since = (now or utcnow()) - timedelta(hours=hours)
    return f"sys_updated_on>={format_servicenow_datetime(since)}"


class ServiceNowClient:
    """Async client for the ServiceNow Table API."""

    SLA_TABLE = "task_sla"
    NOTES_TABLE = "sys_journal_field"
    MAX_RETRIES = 3
    INITIAL_BACKOFF = 1  # seconds
    MAX_BACKOFF = 60  # seconds

    def __init__(
        self,
        instance_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        rate_limit: int = 100
    ):
        """
        Initialize ServiceNow client.

        Args:
            instance_url: Instance base URL (e.g., https://company.service-now.com)
            username: User for basic authentication
            password: Password for basic authentication
            timeout: Per-request timeout in seconds
            rate_limit: Maximum requests per minute
        """
        self.base_url = f"{instance_url.rstrip('/')}/api/now/table"
        self.auth = (username, password)
        self.timeout = timeout
        self.rate_limit = rate_limit

        # Rate limiting tracking
        self._request_count = 0
        self._rate_limit_window_start = datetime.now()
        self._rate_limit_lock = asyncio.Lock()

        # HTTP client
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_client(self):
        """Ensure HTTP client is initialized."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                auth=self.auth,
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json"
                },
                timeout=self.timeout
            )

    async def close(self):
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _check_rate_limit(self):
        """
        Check and enforce rate limiting.

        Tracks requests per minute and sleeps if limit would be exceeded.
        """
        async with self._rate_limit_lock:
            now = datetime.now()
            window_elapsed = (now - self._rate_limit_window_start).total_seconds()

            # Reset counter if window has passed
            if window_elapsed >= 60:
                self._request_count = 0
                self._rate_limit_window_start = now

            if self._request_count >= self.rate_limit:
                sleep_time = 60 - window_elapsed
                if sleep_time > 0:
                    logger.warning(
                        f"Rate limit reached ({self.rate_limit} req/min). "
                        f"Sleeping for {sleep_time:.2f} seconds"
                    )
                    await asyncio.sleep(sleep_time)

                self._request_count = 0
                self._rate_limit_window_start = datetime.now()

            self._request_count += 1

    async def _request(
        self,
        method: str,
        endpoint: str,
        **kwargs
    ) -> Optional[Dict[str, Any]]:
        """
        Make authenticated request with rate limiting and retry logic.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: Path below /api/now/table (e.g., '/incident/<sys_id>')
            **kwargs: Additional arguments to pass to httpx request

        Returns:
            JSON response as dictionary, or None on 404

        Raises:
            ServiceNowAPIError: On API errors after retries exhausted
            ServiceNowRateLimitError: On rate limit errors that cannot be retried
        """
        await self._ensure_client()

        url = f"{self.base_url}{endpoint}"
        retries = 0
        backoff = self.INITIAL_BACKOFF

        while retries <= self.MAX_RETRIES:
            try:
                await self._check_rate_limit()

                response = await self._client.request(method, url, **kwargs)

                if response.status_code == 404:
                    return None

                # Handle rate limiting
                if response.status_code == 429:
                    retry_after = int(response.headers.get("Retry-After", backoff))
                    logger.warning(
                        f"Rate limited on {endpoint}. "
                        f"Retry after {retry_after} seconds"
                    )

                    if retries >= self.MAX_RETRIES:
                        raise ServiceNowRateLimitError(
                            f"Rate limit exceeded after {retries} retries"
                        )

                    await asyncio.sleep(retry_after)
                    retries += 1
                    continue

                # Handle server errors with retry
                if 500 <= response.status_code < 600:
                    logger.error(
                        f"Server error {response.status_code} on {endpoint}. "
                        f"Retry {retries}/{self.MAX_RETRIES}"
                    )

                    if retries >= self.MAX_RETRIES:
                        raise ServiceNowAPIError(
                            f"Server error {response.status_code} after "
                            f"{retries} retries: {response.text}"
                        )

                    await asyncio.sleep(backoff)
                    retries += 1
                    backoff = min(backoff * 2, self.MAX_BACKOFF)
                    continue

                # Raise on client errors (4xx except 404 and 429)
                response.raise_for_status()

                return response.json()

            except httpx.HTTPStatusError as e:
                logger.error(
                    f"HTTP error {e.response.status_code} on {endpoint}: "
                    f"{e.response.text}"
                )
                raise ServiceNowAPIError(
                    f"HTTP {e.response.status_code}: {e.response.text}"
                ) from e

            except httpx.RequestError as e:
                logger.error(f"Request error on {endpoint}: {e}")

                if retries >= self.MAX_RETRIES:
                    raise ServiceNowAPIError(
                        f"Request failed after {retries} retries: {e}"
                    ) from e

                await asyncio.sleep(backoff)
                retries += 1
                backoff = min(backoff * 2, self.MAX_BACKOFF)
                continue

        raise ServiceNowAPIError(f"Request failed after {self.MAX_RETRIES} retries")

    async def fetch_by_id(self, table: str, sys_id: str) -> Optional[Dict[str, Any]]:
        """
        Get a single record by sys_id.

        Args:
            table: ServiceNow table name (e.g., 'incident')
            sys_id: Record sys_id

        Returns:
            Record dictionary, or None if the record does not exist

        Example:
            >>> record = await client.fetch_by_id("incident", "46d44a5d...")
            >>> print(record["number"])
        """
        params = {
            "sysparm_display_value": "all",
            "sysparm_exclude_reference_link": "true",
        }
        response = await self._request("GET", f"/{table}/{sys_id}", params=params)
        if not response:
            return None

        record = response.get("result")
        logger.debug(f"Fetched {table}/{sys_id}")
        return record or None

    async def fetch_by_filter(
        self,
        table: str,
        query: str = "",
        limit: int = 50
    ) -> List[Dict[str, Any]]:
        """
        Get records matching an encoded query.

        Args:
            table: ServiceNow table name
            query: Encoded query string (empty for no filter)
            limit: Maximum number of records to return

        Returns:
            List of record dictionaries in upstream order
        """
        params = {
            "sysparm_display_value": "all",
            "sysparm_exclude_reference_link": "true",
            "sysparm_limit": str(limit),
        }
        if query:
            params["sysparm_query"] = query

        response = await self._request("GET", f"/{table}", params=params)
        records = (response or {}).get("result", [])
        logger.info(f"Query on {table} returned {len(records)} records")

        return records

    async def fetch_sla(self, sys_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Get the SLA timers attached to a task."""
        return await self.fetch_by_filter(self.SLA_TABLE, f"task={sys_id}", limit)

    async def fetch_notes(self, sys_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Get journal entries (work notes and comments) for a task.

        Returns:
            List of notes in creation order. Each note has:
                - sys_id: Journal entry ID
                - value: Note text
                - sys_created_on: Creation timestamp
                - sys_created_by: Author
                - work_notes: True for internal work notes, False for comments
        """
        entries = await self.fetch_by_filter(
            self.NOTES_TABLE,
            f"element_id={sys_id}^ORDERBYsys_created_on",
            limit
        )

        notes = []
        for entry in entries:
            notes.append({
                "sys_id": field_value(entry.get("sys_id")),
                "value": field_value(entry.get("value")),
                "sys_created_on": field_value(entry.get("sys_created_on")),
                "sys_created_by": field_value(entry.get("sys_created_by")) or "system",
                "work_notes": field_value(entry.get("element")) == "work_notes",
            })
        return notes


def get_servicenow_client() -> ServiceNowClient:
    """
    Factory function to create ServiceNow client with settings.

    Returns:
        Configured ServiceNowClient instance
    """
    from ticketsync.config import settings

    return ServiceNowClient(
        instance_url=settings.SERVICENOW_INSTANCE_URL,
        username=settings.SERVICENOW_USERNAME,
        password=settings.SERVICENOW_PASSWORD,
        timeout=settings.SERVICENOW_TIMEOUT,
        rate_limit=settings.SERVICENOW_RATE_LIMIT
    )
