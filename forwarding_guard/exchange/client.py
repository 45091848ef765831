"""
Exchange Online admin API client.
Runs Exchange cmdlets (Get-Mailbox, Set-Mailbox, Set-CASMailbox, ...)
through the REST InvokeCommand endpoint, reusing the Graph client's
retry, throttling and change-guard handling.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..config import EXCHANGE_BASE_URL, MAX_PAGES_PER_ENDPOINT
from ..graph.client import GraphAPIError, GraphClient
from ..safety.guardian import ChangeGuardian

logger = logging.getLogger("forwarding_guard.exchange")

# Well-known arbitration mailbox used to anchor admin API sessions
ANCHOR_MAILBOX = "SystemMailbox{bb558c35-97f1-4cb9-8ff7-d53741dc928c}"

NOT_FOUND_MARKERS = ("couldn't be found", "could not be found", "ManagementObjectNotFound")


class ExchangeCommandError(GraphAPIError):
    """Raised when a cmdlet fails on the Exchange side."""
    def __init__(self, cmdlet: str, status_code: int, message: str, url: str):
        self.cmdlet = cmdlet
        super().__init__(status_code, f"{cmdlet}: {message}", url)


class ExchangeClient(GraphClient):
    """Async client for https://outlook.office365.com/adminapi/beta/{tenant}/InvokeCommand."""

    def __init__(
        self,
        access_token: str,
        guardian: ChangeGuardian,
        tenant_id: str,
        organization: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ):
        super().__init__(access_token, guardian, transport=transport, **kwargs)
        self.tenant_id = tenant_id
        self.organization = organization

    def _default_headers(self) -> dict[str, str]:
        headers = super()._default_headers()
        headers.pop("ConsistencyLevel", None)
        headers["X-AnchorMailbox"] = f"UPN:{ANCHOR_MAILBOX}@{self.organization}"
        headers["X-ResponseFormat"] = "json"
        return headers

    def _build_url(self, endpoint: str, beta: bool = False) -> str:
        if endpoint.startswith("http"):
            return endpoint
        return f"{EXCHANGE_BASE_URL}/{self.tenant_id}/{endpoint.lstrip('/')}"

    async def invoke(
        self,
        cmdlet: str,
        parameters: Optional[dict[str, Any]] = None,
        max_pages: int = MAX_PAGES_PER_ENDPOINT,
    ) -> list[dict]:
        """
        Run a cmdlet and return its output objects, following nextLink pages.
        Raises ExchangeCommandError (status 404) when the target object does not exist.
        """
        body = {"CmdletInput": {"CmdletName": cmdlet, "Parameters": parameters or {}}}
        url: Optional[str] = self._build_url("InvokeCommand")
        results: list[dict] = []
        pages = 0

        while url and pages < max_pages:
            if not self.guardian.validate_request("POST", url, body):
                return []
            try:
                async with self._semaphore:
                    data = await self._execute_with_retry("POST", url, json_body=body)
            except GraphAPIError as e:
                if e.transient:
                    raise
                status = 404 if any(m in e.message for m in NOT_FOUND_MARKERS) else e.status_code
                raise ExchangeCommandError(cmdlet, status, e.message, e.url) from e

            if data.get("_not_found"):
                raise ExchangeCommandError(cmdlet, 404, "Not Found", url)

            results.extend(data.get("value", []))
            url = data.get("@odata.nextLink")
            pages += 1

        logger.debug(f"{cmdlet} returned {len(results)} object(s)")
        return results
