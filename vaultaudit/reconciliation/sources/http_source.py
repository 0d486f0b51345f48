"""
HTTP Account Source

Reads vault and platform inventories from an account inventory service:
- GET {base_url}/platforms/{platform}/accounts?side=vault|platform
- Response: {"accounts": [{"account_id": ..., "account_name": ...}], "next_cursor": ...}

Pages are followed via ``cursor`` until ``next_cursor`` is empty. Any
transport error, non-2xx status or malformed payload raises FetchError.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from vaultaudit.reconciliation.account_sets import AccountSet, AccountSide
from vaultaudit.reconciliation.errors import FetchError

logger = logging.getLogger(__name__)


class HttpAccountSource:
    """
    Client for the account inventory service.

    A new AsyncClient is opened per fetch; nothing is cached between runs.
    """

    MAX_PAGES = 1000

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("HttpAccountSource requires a base_url")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

        logger.info(f"HttpAccountSource initialized with URL: {self.base_url}")

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def fetch_accounts(self, platform: str, side: AccountSide) -> AccountSet:
        side = AccountSide(side)
        url = f"{self.base_url}/platforms/{quote(platform, safe='')}/accounts"

        entries: List[Dict[str, Any]] = []
        cursor: Optional[str] = None

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=self._headers(),
                transport=self._transport,
            ) as client:
                for _ in range(self.MAX_PAGES):
                    params = {"side": side.value}
                    if cursor:
                        params["cursor"] = cursor

                    response = await client.get(url, params=params)
                    response.raise_for_status()
                    page = response.json()

                    if not isinstance(page, dict) or not isinstance(page.get("accounts"), list):
                        raise FetchError(
                            "Account inventory response has no 'accounts' list",
                            platform=platform,
                            side=side.value
                        )
                    entries.extend(page["accounts"])

                    cursor = page.get("next_cursor")
                    if not cursor:
                        break
                else:
                    raise FetchError(
                        f"Account inventory exceeded {self.MAX_PAGES} pages",
                        platform=platform,
                        side=side.value
                    )

        except httpx.TimeoutException as e:
            raise FetchError(
                f"Account inventory request timed out: {e}", platform=platform, side=side.value
            ) from e
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"Account inventory returned {e.response.status_code}",
                platform=platform,
                side=side.value
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(
                f"Account inventory request error: {e}", platform=platform, side=side.value
            ) from e
        except ValueError as e:
            # Invalid JSON body
            raise FetchError(
                f"Account inventory returned invalid JSON: {e}", platform=platform, side=side.value
            ) from e

        try:
            account_set = AccountSet.from_dicts(platform, entries)
        except (ValueError, AttributeError) as e:
            raise FetchError(str(e), platform=platform, side=side.value) from e

        logger.debug(f"Fetched {len(account_set)} {side.value} accounts for {platform}")
        return account_set
