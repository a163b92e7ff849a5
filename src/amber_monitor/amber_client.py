"""Read-only Amber Electric API client.

Bearer-token authenticated. Every response, including error responses,
refreshes the shared RateLimitState before the status is checked.
Errors are logged with status/body context and re-raised; retries are
left to callers via ``with_retry``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from amber_monitor.config import DEFAULT_CONFIG, AmberConfig
from amber_monitor.errors import NoActiveSiteError
from amber_monitor.rate_limiter import RateLimitTracker
from amber_monitor.schemas import (
    PriceInterval,
    RateLimitState,
    Site,
    SiteStatus,
    UsageRecord,
)

logger = logging.getLogger(__name__)


class AmberClient:
    """Async client for the Amber ``/sites`` family of endpoints."""

    def __init__(
        self,
        config: AmberConfig = DEFAULT_CONFIG.amber,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limit: Optional[RateLimitTracker] = None,
    ) -> None:
        self._config = config
        self._site_id: Optional[str] = config.site_id
        self.rate_limit = rate_limit or RateLimitTracker(config.low_remaining_warning)
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=config.timeout_seconds,
            transport=transport,
            event_hooks={"response": [self._capture_rate_limit]},
        )
        logger.info("AmberClient initialized (base_url=%s)", config.base_url)

    async def _capture_rate_limit(self, response: httpx.Response) -> None:
        self.rate_limit.update_from_headers(response.headers)

    @property
    def last_rate_limit(self) -> RateLimitState:
        return self.rate_limit.state

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    # ── Internals ──────────────────────────────────────────────────────

    async def _get(
        self, path: str, params: Optional[dict[str, Any]] = None, what: str = "",
    ) -> Any:
        logger.debug("GET %s %s", path, params or "")
        try:
            resp = await self._client.get(path, params=params)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            self._log_error(f"Failed to fetch {what or path}", exc)
            raise
        return resp.json()

    @staticmethod
    def _log_error(message: str, exc: httpx.HTTPError) -> None:
        if isinstance(exc, httpx.HTTPStatusError):
            resp = exc.response
            logger.error(
                "%s (status=%d %s, body=%s)",
                message, resp.status_code, resp.reason_phrase, resp.text[:500],
            )
        elif isinstance(exc, httpx.TimeoutException):
            logger.error("%s - request timed out: %s", message, exc)
        else:
            logger.error("%s - no response received: %s", message, exc)

    async def resolve_site_id(self, site_id: Optional[str] = None) -> str:
        """Explicit id, configured id, or the first active site."""
        if site_id:
            return site_id
        if self._site_id:
            return self._site_id
        sites = await self.list_sites()
        active = next((s for s in sites if s.status == SiteStatus.ACTIVE), None)
        if active is None:
            logger.error("No active sites found. Please check your Amber account.")
            raise NoActiveSiteError("No active sites found")
        self._site_id = active.id
        logger.info("Using active site %s (nmi=%s)", active.id, active.nmi)
        return active.id

    # ── Public read-only methods ───────────────────────────────────────

    async def list_sites(self) -> list[Site]:
        data = await self._get("/sites", what="sites")
        sites = [Site.model_validate(s) for s in data]
        logger.debug("Fetched %d sites", len(sites))
        return sites

    async def get_current_prices(
        self,
        site_id: Optional[str] = None,
        lookahead: int = 0,
        lookbehind: int = 0,
        resolution: Optional[int] = None,
    ) -> list[PriceInterval]:
        """Current interval plus ``lookahead`` forecasts and ``lookbehind`` actuals."""
        target = await self.resolve_site_id(site_id)
        params: dict[str, Any] = {"next": lookahead, "previous": lookbehind}
        if resolution:
            params["resolution"] = resolution
        data = await self._get(
            f"/sites/{target}/prices/current", params=params, what="current prices",
        )
        intervals = [PriceInterval.model_validate(i) for i in data]
        logger.debug("Fetched %d price intervals", len(intervals))
        return intervals

    async def get_prices(
        self,
        site_id: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        resolution: Optional[int] = None,
    ) -> list[PriceInterval]:
        """Price intervals for a date range (dates as YYYY-MM-DD)."""
        params: dict[str, Any] = {}
        if start_date:
            params["startDate"] = start_date
        if end_date:
            params["endDate"] = end_date
        if resolution:
            params["resolution"] = resolution
        data = await self._get(
            f"/sites/{site_id}/prices", params=params or None, what="prices",
        )
        return [PriceInterval.model_validate(i) for i in data]

    async def get_usage(
        self,
        site_id: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        resolution: Optional[int] = None,
    ) -> list[UsageRecord]:
        target = await self.resolve_site_id(site_id)
        params: dict[str, Any] = {}
        if start_date:
            params["startDate"] = start_date
        if end_date:
            params["endDate"] = end_date
        if resolution:
            params["resolution"] = resolution
        data = await self._get(
            f"/sites/{target}/usage", params=params or None, what="usage data",
        )
        records = [UsageRecord.model_validate(u) for u in data]
        logger.debug("Fetched %d usage records", len(records))
        return records
