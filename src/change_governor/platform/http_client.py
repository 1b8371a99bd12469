"""HTTP clients for the commerce platform and the proposal service.

CommercePlatformClient implements both PlatformClient (apply, revert,
fetch_state) and SignalSource (observe). HttpProposalGenerator asks the
agent's proposal service for a payload per triggered rule.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from change_governor.actions.exceptions import ErrorKind, PlatformError
from change_governor.actions.types import ActionPayload, Snapshot
from change_governor.platform.protocols import CatalogObservation, PlatformResult, Proposal

if TYPE_CHECKING:
    from change_governor.actions.rules import ProposalContext


def classify_status(status_code: int, conflict_kind: ErrorKind) -> ErrorKind:
    """
    Map an HTTP error status to an ErrorKind.

    Args:
        status_code: Response status (>= 400)
        conflict_kind: What a 409 means for this call (already applied
            for apply, already reverted for revert)
    """
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 409:
        return conflict_kind
    if status_code in (408, 429) or status_code >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


@dataclass
class CommercePlatformClient:
    """
    Commerce platform API client with injected httpx client.

    Implements the PlatformClient protocol. Every HTTP or transport
    failure is raised as PlatformError with an ErrorKind, so the lifecycle
    manager never inspects status codes or messages.

    Attributes:
        http: Pre-configured httpx.AsyncClient with base_url and auth set.

    Example:
        async with httpx.AsyncClient(base_url="https://platform") as http:
            client = CommercePlatformClient(http=http)
            state = await client.fetch_state("prod-1", payload)
            result = await client.apply("prod-1", payload)
    """

    http: httpx.AsyncClient

    async def request(
        self,
        method: str,
        url: str,
        conflict_kind: ErrorKind = ErrorKind.PERMANENT,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request; HTTP and transport failures raise PlatformError."""
        try:
            response = await self.http.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise PlatformError(
                classify_status(status, conflict_kind),
                f"{method} {url} returned {status}: {e.response.text[:200]}",
                status_code=status,
            ) from e
        except httpx.TransportError as e:
            raise PlatformError(
                ErrorKind.TRANSIENT,
                f"{method} {url} failed: {type(e).__name__}: {e}",
            ) from e
        return response

    async def fetch_state(self, entity_id: str, payload: ActionPayload) -> dict[str, Any]:
        """
        Get the entity's current values for the fields the payload changes.

        Calls GET /api/entities/{entity_id}/state?kind={payload kind}.

        Raises:
            PlatformError: On HTTP or transport errors.
        """
        response = await self.request(
            "GET",
            f"/api/entities/{entity_id}/state",
            params={"kind": payload.kind},
        )
        return response.json()

    async def apply(self, entity_id: str, payload: ActionPayload) -> PlatformResult:
        """
        Publish a payload to an entity.

        Calls POST /api/entities/{entity_id}/apply. A 409 means the
        entity already carries the change.

        Raises:
            PlatformError: On HTTP or transport errors.
            pydantic.ValidationError: On malformed response data.
        """
        response = await self.request(
            "POST",
            f"/api/entities/{entity_id}/apply",
            conflict_kind=ErrorKind.ALREADY_APPLIED,
            json=payload.model_dump(mode="json"),
        )
        return PlatformResult.model_validate(response.json())

    async def revert(self, entity_id: str, snapshot: Snapshot) -> PlatformResult:
        """
        Restore an entity to a snapshot's captured state.

        Calls POST /api/entities/{entity_id}/revert. A 409 means the
        entity already carries the captured state.

        Raises:
            PlatformError: On HTTP or transport errors.
            pydantic.ValidationError: On malformed response data.
        """
        response = await self.request(
            "POST",
            f"/api/entities/{entity_id}/revert",
            conflict_kind=ErrorKind.ALREADY_REVERTED,
            json={"snapshot_id": snapshot.id, "state": snapshot.captured_state},
        )
        return PlatformResult.model_validate(response.json())

    async def observe(self, merchant_id: str) -> CatalogObservation:
        """
        Get one tick's signals for a merchant.

        Calls GET /api/merchants/{merchant_id}/signals.

        Raises:
            PlatformError: On HTTP or transport errors.
            pydantic.ValidationError: On malformed response data.
        """
        response = await self.request("GET", f"/api/merchants/{merchant_id}/signals")
        return CatalogObservation.model_validate(response.json())


@dataclass
class HttpProposalGenerator:
    """
    ProposalGenerator backed by the agent's proposal service.

    Calls POST /api/proposals with the triggered rule and entity signal. A
    204 response means the service has nothing to propose.

    Attributes:
        client: Platform client whose connection and error mapping are reused
    """

    client: CommercePlatformClient

    async def generate(self, context: "ProposalContext") -> Proposal | None:
        response = await self.client.request(
            "POST", "/api/proposals", json=context.model_dump(mode="json")
        )
        if response.status_code == 204:
            return None
        return Proposal.model_validate(response.json())


def build_http_client(base_url: str, api_token: str | None, timeout: float) -> httpx.AsyncClient:
    """Create the httpx client a CommercePlatformClient wraps."""
    headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
    return httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)
