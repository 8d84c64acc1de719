import asyncio
import logging
import aiohttp
from typing import Dict, Any, List, Optional, Tuple

from stepsync.config import AZURE_API_VERSION, STEPS_FIELD


class AzureClientError(Exception):
    """An Azure DevOps request failed after all retries."""


class AzureDevOpsClient:
    """
    Async client for the Azure DevOps work item and test result APIs.
    """
    def __init__(
        self,
        organization_url: str,
        project: str,
        api_token: str,
        timeout: int = 30,
        max_retries: int = 3,
        insecure: bool = False,
        api_version: str = AZURE_API_VERSION,
    ):
        self.organization_url = organization_url.rstrip("/")
        self.project = project
        self.api_token = api_token
        self.timeout = timeout
        self.max_retries = max_retries
        self.insecure = insecure
        self.api_version = api_version
        self.logger = logging.getLogger("stepsync.client")
        # Personal access tokens go as the password of basic auth
        self.auth = aiohttp.BasicAuth("", self.api_token)
        self.headers = {"Content-Type": "application/json"}

    @property
    def api_url(self) -> str:
        return f"{self.organization_url}/{self.project}/_apis"

    async def _request(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        payload: Any = None,
    ) -> Any:
        """
        Sends a request with retry logic and returns the decoded JSON body.
        """
        params = {"api-version": self.api_version, **(params or {})}

        for attempt in range(self.max_retries):
            try:
                # Disable SSL verification if requested
                ssl_context = False if self.insecure else None

                async with session.request(
                    method,
                    url,
                    params=params,
                    json=payload,
                    headers=self.headers,
                    auth=self.auth,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ssl=ssl_context
                ) as response:

                    if response.status == 200 or response.status == 201:
                        return await response.json()

                    elif response.status == 429:  # Rate limit
                        wait_time = 2 ** attempt
                        self.logger.warning(f"Rate limited on {method} {url}, retrying in {wait_time}s...")
                        await asyncio.sleep(wait_time)
                        continue

                    else:
                        text = await response.text()
                        raise AzureClientError(
                            f"{method} {url} - Status: {response.status}, Response: {text[:200]}"
                        )

            except asyncio.TimeoutError:
                self.logger.warning(f"Timeout for {method} {url} on attempt {attempt + 1}, retrying...")
            except aiohttp.ClientError as e:
                self.logger.error(f"Request error for {method} {url} on attempt {attempt + 1}: {e}")

            if attempt < self.max_retries - 1:
                await asyncio.sleep(1)

        raise AzureClientError(f"{method} {url} failed after {self.max_retries} attempts")

    async def get_work_item(self, session: aiohttp.ClientSession, work_item_id: int) -> Dict[str, Any]:
        self.logger.debug(f"Fetching work item {work_item_id}")
        return await self._request(
            session, "GET", f"{self.api_url}/wit/workitems/{work_item_id}", params={"$expand": "all"}
        )

    async def get_work_items(self, session: aiohttp.ClientSession, ids: List[int]) -> List[Dict[str, Any]]:
        """Fetches work items in chunks of 200 (the API limit per call)."""
        items: List[Dict[str, Any]] = []
        for start in range(0, len(ids), 200):
            chunk = ids[start:start + 200]
            result = await self._request(
                session,
                "GET",
                f"{self.api_url}/wit/workitems",
                params={"ids": ",".join(str(i) for i in chunk), "$expand": "all"},
            )
            items.extend(result.get("value", []))
        return items

    async def fetch_group_markup(self, session: aiohttp.ClientSession, group_id: int) -> Tuple[str, int]:
        """
        Shared steps resolver: returns (steps markup, revision) of the work item.
        """
        item = await self.get_work_item(session, group_id)
        fields = item.get("fields") or {}
        return fields.get(STEPS_FIELD, ""), int(item.get("rev") or 1)

    async def update_iteration_results(
        self,
        session: aiohttp.ClientSession,
        run_id: int,
        result_id: int,
        iteration: Dict[str, Any],
    ) -> bool:
        """
        Sends the iteration details of one test result.
        """
        payload = [{"id": result_id, "iterationDetails": [iteration]}]
        try:
            await self._request(
                session, "PATCH", f"{self.api_url}/test/Runs/{run_id}/results", payload=payload
            )
        except AzureClientError as e:
            self.logger.error(f"FAILURE: results of run {run_id}, result {result_id} - {e}")
            return False

        self.logger.info(
            f"SUCCESS: iteration {iteration.get('id')} of run {run_id}, result {result_id} updated "
            f"({len(iteration.get('actionResults', []))} action result(s))"
        )
        return True
