"""Proposal platform collaborator.

The sync engine does not own proposals. It reads a ProposalSnapshot, writes
back a status, and downloads the signed PDF through the ProposalAccessor
interface:

- ProposalAccessor: abstract interface (tests use in-memory doubles)
- HttpProposalAccessor: httpx client for the proposal service REST API
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.crm.errors import ProposalServiceError
from src.app.crm.schemas import ProposalSnapshot, ProposalStatus

logger = structlog.get_logger(__name__)

_proposal_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


class ProposalAccessor(ABC):
    """Read/write access to proposals owned by the proposal platform."""

    @abstractmethod
    async def get_proposal(self, proposal_id: str) -> ProposalSnapshot | None:
        """Return the proposal, or None if it does not exist."""
        ...

    @abstractmethod
    async def update_status(self, proposal_id: str, status: ProposalStatus) -> None:
        """Set the proposal status."""
        ...

    @abstractmethod
    async def fetch_document(self, url: str) -> bytes:
        """Download a proposal document (the signed PDF)."""
        ...


class HttpProposalAccessor(ProposalAccessor):
    """ProposalAccessor backed by the proposal service REST API.

    Args:
        base_url: Proposal service API root (PROPOSAL_SERVICE_URL).
        token: Service-to-service bearer token, optional.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport for tests.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    @_proposal_retry
    async def _get(self, url: str) -> httpx.Response:
        async with self._client() as client:
            return await client.get(url, follow_redirects=True)

    async def get_proposal(self, proposal_id: str) -> ProposalSnapshot | None:
        try:
            response = await self._get(f"{self._base_url}/proposals/{proposal_id}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProposalServiceError(f"Failed to load proposal {proposal_id}: {exc}") from exc
        return ProposalSnapshot.model_validate(response.json())

    async def update_status(self, proposal_id: str, status: ProposalStatus) -> None:
        try:
            async with self._client() as client:
                response = await client.patch(
                    f"{self._base_url}/proposals/{proposal_id}/status",
                    json={"status": status.value, "source": "crm_sync"},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProposalServiceError(
                f"Failed to update proposal {proposal_id} status: {exc}"
            ) from exc
        logger.info("proposal.status_updated", proposal_id=proposal_id, status=status.value)

    async def fetch_document(self, url: str) -> bytes:
        try:
            response = await self._get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProposalServiceError(f"Failed to download document: {exc}") from exc
        return response.content
