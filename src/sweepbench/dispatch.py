# Copyright (c) Syntropy Systems
"""HTTP dispatch of the benchmark prompt to a running server."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx
from typing_extensions import Self

if TYPE_CHECKING:
    from collections.abc import Mapping
    from types import TracebackType

    from sweepbench.models.base import JSONValue

logger = logging.getLogger(__name__)

GENERATE_PATH = "/api/latest/generate"


class DispatchError(Exception):
    """The prompt request could not be delivered or was rejected."""


class WorkloadDispatcher:
    """Sends the single generation request of a run.

    Only success or failure of the call matters; the response body is
    never interpreted.
    """

    prompt: str
    options: dict[str, JSONValue]
    timeout: float | None
    _client: httpx.AsyncClient

    def __init__(
        self,
        prompt: str,
        options: Mapping[str, JSONValue] | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            prompt: Workload text sent as ``prompt``
            options: Extra fields merged into the request body
            timeout: Request timeout in seconds, None to wait for generation
            transport: Optional httpx transport (used by tests)

        """
        self.prompt = prompt
        self.options = dict(options or {})
        self.timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def payload(self) -> dict[str, JSONValue]:
        """Request body: the prompt merged with the fixed options."""
        return {"prompt": self.prompt, **self.options}

    async def dispatch(self, endpoint: str) -> None:
        """POST the prompt to ``endpoint``; raise DispatchError on failure."""
        url = endpoint.rstrip("/") + GENERATE_PATH
        logger.debug("Sending prompt to %s", url)

        try:
            response = await self._client.post(
                url,
                json=self.payload(),
                headers={"Content-Type": "application/json"},
            )
            _ = response.raise_for_status()
        except httpx.HTTPStatusError as e:
            msg = f"Prompt rejected: {e.response.status_code} {e.response.reason_phrase}"
            raise DispatchError(msg) from e
        except httpx.HTTPError as e:
            msg = f"Prompt request failed: {e}"
            raise DispatchError(msg) from e
        except Exception as e:
            # Malformed endpoints (httpx.InvalidURL) and the like
            msg = f"Prompt request could not be sent: {e}"
            raise DispatchError(msg) from e

        logger.debug("Prompt sent: %s %s", response.status_code, response.reason_phrase)

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> Self:
        """Enter the dispatcher context and return self."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit the dispatcher context and close the HTTP client."""
        await self.aclose()
