import logging
from typing import Any, Optional

import httpx

from cronjob.dispatch import OutboundRequest
from cronjob.errors import DispatchError

logger = logging.getLogger("Transport")

IDEMPOTENCY_HEADER = "Idempotency-Key"


class HttpTransport:
    """
    Sends resolved requests to the ingress that fronts the target services.

    Each request is a POST to `{base_url}{request.path}`. The idempotency key travels in
    the `Idempotency-Key` header so retried deliveries of one run have a single effect.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def call(self, request: OutboundRequest) -> Any:
        headers = dict(request.headers)
        if request.idempotency_key:
            headers[IDEMPOTENCY_HEADER] = request.idempotency_key
        try:
            response = await self.client.post(
                request.path, content=request.body, headers=headers
            )
        except httpx.HTTPError as e:
            raise DispatchError(f"Call to {request.path} failed: {e}") from e
        if response.status_code >= 400:
            raise DispatchError(
                f"Call to {request.path} returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        logger.debug(f"Call to {request.path} returned {response.status_code}")
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def aclose(self):
        await self.client.aclose()
