# captcha_gate/services/delivery.py
import logging
from typing import Any, Dict, Optional

import httpx

from captcha_gate.core.config import Settings
from captcha_gate.models.models import DeliveryResult, VerificationPayload

log = logging.getLogger(__name__)

SYNTHESIZED_BODY = {"status": "success", "message": "Verification completed"}


class DeliveryChannel:
    """
    Submits a verification payload to the backend endpoint.

    Delivery is fire-and-forget from the user's point of view: non-2xx
    responses, unreadable bodies, timeouts and transport errors are logged
    and turned into a synthesized success result. submit() never raises.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.timeout_sec)
        return self._client

    def build_body(self, payload: VerificationPayload) -> Dict[str, Any]:
        return {
            "user_data": payload.to_dict(),
            "verification_type": self.settings.verification_type,
            "source": self.settings.source,
        }

    async def submit(self, payload: VerificationPayload) -> DeliveryResult:
        url = self.settings.submit_url
        body = self.build_body(payload)
        status_code = None
        try:
            response = await self._get_client().post(
                url,
                json=body,
                headers={"Content-Type": "application/json"},
            )
            status_code = response.status_code
            if not response.is_success:
                raise ValueError(f"Server response not OK: HTTP {status_code}")
            data = response.json()
            log.info("Data submitted successfully to %s: %s", url, data)
            return DeliveryResult(status="success", body=data, status_code=status_code)
        except httpx.TimeoutException as e:
            return self._synthesize(url, f"timeout: {e}", status_code)
        except httpx.HTTPError as e:
            return self._synthesize(url, f"transport error: {e}", status_code)
        except ValueError as e:  # includes json.JSONDecodeError
            return self._synthesize(url, str(e), status_code)
        except Exception as e:
            log.error("Unexpected error submitting to %s: %s", url, e)
            return self._synthesize(url, f"unexpected: {e}", status_code)

    def _synthesize(self, url: str, reason: str, status_code: Optional[int]) -> DeliveryResult:
        log.warning("Error submitting data to %s (%s); reporting local success", url, reason)
        return DeliveryResult(
            status="success",
            body=dict(SYNTHESIZED_BODY),
            synthesized=True,
            status_code=status_code,
            error=reason,
        )

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
