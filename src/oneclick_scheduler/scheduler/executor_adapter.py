"""
Provisioning Executor

Bridges the scheduler with the external provisioning API.
Submits a claimed job's payload and classifies the response.
"""
import logging
from typing import Iterable, Optional

import httpx

from .errors import ExecutionError, PermanentExecutionError, TransientExecutionError
from .models import ScheduledProvision
from .outcomes import Outcome

logger = logging.getLogger(__name__)

MAX_DETAIL_BODY = 1000


class ProvisioningExecutor:
    """
    Adapter between the scheduler and the provisioning API.

    Responsibilities:
    1. POST the job payload verbatim to the configured endpoint
    2. Bound every call by the configured timeout
    3. Classify the response into an Outcome

    Every failure is retryable unless the endpoint explicitly says otherwise,
    either with ``"retryable": false`` in a JSON error body or with a status
    code listed in permanent_status_codes.
    """

    def __init__(
        self,
        api_url: str,
        timeout: float = 30.0,
        permanent_status_codes: Iterable[int] = (),
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url
        self.timeout = timeout
        self.permanent_status_codes = frozenset(permanent_status_codes)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def execute(self, job: ScheduledProvision) -> Outcome:
        """
        Execute one provisioning attempt.

        Never raises for a remote failure; the failure is returned as an
        Outcome carrying a human readable detail.
        """
        employee = job.employee
        logger.info(f"Executing schedule {job.id} for {employee.get('fullName')} <{employee.get('workEmail')}>")

        try:
            status_code = await self._submit(job)
        except PermanentExecutionError as e:
            logger.error(f"Schedule {job.id} rejected: {e.detail}")
            return Outcome.permanent(e.detail, e.response_status)
        except TransientExecutionError as e:
            logger.warning(f"Schedule {job.id} attempt failed: {e.detail}")
            return Outcome.transient(e.detail, e.response_status)

        logger.info(f"Schedule {job.id} provisioned successfully")
        return Outcome.success(status_code)

    async def _submit(self, job: ScheduledProvision) -> int:
        try:
            response = await self._client.post(self.api_url, json=job.payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise TransientExecutionError(f"API call timed out after {self.timeout:g}s: {e!r}") from e
        except httpx.HTTPError as e:
            raise TransientExecutionError(f"API call failed: {e!r}") from e

        if response.is_success:
            return response.status_code

        raise self._classify_rejection(response)

    def _classify_rejection(self, response: httpx.Response) -> ExecutionError:
        body_text = response.text[:MAX_DETAIL_BODY]
        detail = f"API returned status {response.status_code}: {body_text}"

        retryable = True
        if response.status_code in self.permanent_status_codes:
            retryable = False
        else:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("retryable") is False:
                retryable = False

        if retryable:
            return TransientExecutionError(detail, response.status_code)
        return PermanentExecutionError(detail, response.status_code)

    async def aclose(self) -> None:
        """Close the HTTP client if this executor created it."""
        if self._owns_client:
            await self._client.aclose()
