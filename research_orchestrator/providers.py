"""
Research provider interface.

The orchestrator never talks to an AI backend directly; workers hand each
job to a ResearchProvider and record the outcome. HttpResearchProvider
posts jobs to a research service over HTTP.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import httpx

from shared.logging import get_logger

from .errors import ProviderError, TransientProviderError
from .models import ResearchJob

log = get_logger("research", "providers")


@dataclass
class ProviderResult:
    """Outcome of one successful research run."""
    result: dict = field(default_factory=dict)
    candidates_created: int = 0
    cost_usd: float = 0.0
    # Strategy candidates proposed by the run, before dedup
    candidates: list[dict] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ProviderResult":
        candidates = list(data.get("candidates") or [])
        return cls(
            result=data.get("result") or {},
            candidates_created=int(data.get("candidates_created", len(candidates))),
            cost_usd=float(data.get("cost_usd", 0.0)),
            candidates=candidates,
        )


class ResearchProvider(ABC):
    """
    Executes research jobs.

    Implementations raise TransientProviderError for failures worth
    retrying (timeouts, rate limits, server errors) and ProviderError for
    everything else.
    """

    async def start(self):
        """Open connections. Optional."""

    async def close(self):
        """Release connections. Optional."""

    @abstractmethod
    async def execute(self, job: ResearchJob) -> ProviderResult:
        """Run the job and return its result."""
        pass


class HttpResearchProvider(ResearchProvider):
    """
    Posts jobs as JSON to `{base_url}/research` and reads back a
    ProviderResult payload.
    """

    def __init__(
        self,
        base_url: str,
        request_timeout: float = 300.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.api_key = api_key
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self):
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(
                timeout=self.request_timeout, headers=headers, transport=self.transport,
            )

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _payload(self, job: ResearchJob) -> dict:
        return {
            "job_id": job.id,
            "mode": job.mode.value,
            "cost_class": job.cost_class.value,
            "context": job.context,
            "trace_id": job.trace_id,
            "attempt": job.attempts,
        }

    async def execute(self, job: ResearchJob) -> ProviderResult:
        await self.start()
        url = f"{self.base_url}/research"

        try:
            response = await self._client.post(url, json=self._payload(job))
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Provider request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Provider unreachable: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            log.warning("research.providers.transient_status",
                        job_id=job.id, status=status)
            raise TransientProviderError(f"Provider returned {status}: {response.text[:200]}")
        if status >= 400:
            raise ProviderError(f"Provider returned {status}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"Provider returned invalid JSON: {e}") from e

        if not data.get("success", True):
            raise ProviderError(data.get("error") or "Provider reported failure")

        return ProviderResult.from_dict(data)
