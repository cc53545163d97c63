"""
Epoint card gateway client.
Psychology: The wire format belongs to the gateway; we reproduce it byte for byte.
Intention: Pure codec functions for data/signature plus an aiohttp client for the remote endpoints.

Envelope:
    data      = base64(utf8(json(payload)))
    signature = base64(sha1_raw(private_key + data + private_key))
"""
import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from backlify.errors import GatewayError, InputInvalid
from backlify.integrations.base import BaseIntegration
from backlify.monitoring import BusinessMetrics

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://epoint.az/api/1"


class GatewayPath:
    REQUEST = "request"
    GET_STATUS = "get-status"
    CARD_REGISTRATION = "card-registration"
    EXECUTE_PAY = "execute-pay"
    REVERSE = "reverse"
    PRE_AUTH_REQUEST = "pre-auth-request"
    PRE_AUTH_COMPLETE = "pre-auth-complete"


# ============================================================================
# CODEC
# ============================================================================

def _json_default(value: Any):
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_data(payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=_json_default)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_data(data: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(base64.b64decode(data, validate=True).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise InputInvalid("Invalid Base64 encoded data") from exc
    if not isinstance(decoded, dict):
        raise InputInvalid("Gateway payload must be a JSON object")
    return decoded


def build_signature(private_key: str, data: str) -> str:
    digest = hashlib.sha1(f"{private_key}{data}{private_key}".encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(private_key: str, data: str, signature: str) -> bool:
    if not data or not signature:
        return False
    expected = build_signature(private_key, data)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8", "replace"))


# ============================================================================
# CLIENT
# ============================================================================

class EpointClient(BaseIntegration):
    """Signed calls against the Epoint API"""

    name = "epoint"

    def __init__(
        self,
        public_key: str,
        private_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        currency: str = "AZN",
        language: str = "az",
    ):
        super().__init__()
        self.public_key = public_key
        self.private_key = private_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.currency = currency
        self.language = language
        self.session: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.public_key and self.private_key)

    def envelope(self, payload: Dict[str, Any]) -> Dict[str, str]:
        data = encode_data(payload)
        return {"data": data, "signature": build_signature(self.private_key, data)}

    def verify(self, data: str, signature: str) -> bool:
        return verify_signature(self.private_key, data, signature)

    def open_envelope(self, data: str, signature: str) -> Dict[str, Any]:
        """Verify then decode an inbound {data, signature} pair"""
        if not self.verify(data, signature):
            raise InputInvalid("Invalid signature", error="INVALID_SIGNATURE")
        return decode_data(data)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self.session

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()

    async def call(self, path: str, payload: Dict[str, Any], form: bool = False) -> Dict[str, Any]:
        """POST a signed envelope and return the (verified, decoded) response"""
        if not self.is_configured:
            raise GatewayError("Payment gateway is not configured")

        url = f"{self.base_url}/{path}"
        envelope = self.envelope(payload)
        start_time = time.time()

        try:
            session = await self._get_session()
            kwargs = {"data": envelope} if form else {"json": envelope}
            async with session.post(url, **kwargs) as response:
                body = await response.json(content_type=None)
                if response.status >= 400:
                    raise GatewayError(f"Epoint API Error: {response.status}", extra={"gateway": body})
        except GatewayError:
            self.health.record_failure()
            BusinessMetrics.track_gateway_call(path, "error")
            raise
        except asyncio.TimeoutError as exc:
            self.health.record_failure()
            BusinessMetrics.track_gateway_call(path, "timeout")
            logger.error(f"Epoint {path} timed out after {self.timeout}s")
            raise GatewayError("Epoint API request timed out") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            self.health.record_failure()
            BusinessMetrics.track_gateway_call(path, "error")
            logger.error(f"Epoint {path} request failed: {exc}")
            raise GatewayError("Epoint API request failed - no usable response received") from exc

        self.health.record_success(time.time() - start_time)
        BusinessMetrics.track_gateway_call(path, "ok")

        if not isinstance(body, dict):
            raise GatewayError("Epoint API returned a non-object response")
        if "data" in body and "signature" in body:
            if not self.verify(body["data"], body["signature"]):
                raise GatewayError("Epoint response signature mismatch")
            return decode_data(body["data"])
        return body

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _checkout_payload(
        self,
        amount: Decimal,
        order_id: str,
        description: str,
        success_redirect_url: str,
        error_redirect_url: str,
        currency: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "public_key": self.public_key,
            "amount": amount,
            "currency": currency or self.currency,
            "language": language or self.language,
            "order_id": order_id,
            "description": description,
            "success_redirect_url": success_redirect_url,
            "error_redirect_url": error_redirect_url,
        }

    async def request_payment(self, **details) -> str:
        """Create a hosted payment page; returns the redirect URL"""
        result = await self.call(GatewayPath.REQUEST, self._checkout_payload(**details), form=True)
        redirect_url = result.get("redirect_url")
        if result.get("status") == "error" or not redirect_url:
            raise GatewayError(
                result.get("message") or "Epoint did not return a redirect URL",
                extra={"gateway": result},
            )
        return redirect_url

    async def check_status(self, transaction: str) -> Dict[str, Any]:
        return await self.call(GatewayPath.GET_STATUS, {
            "public_key": self.public_key,
            "transaction": transaction,
        })

    async def register_card(
        self,
        success_redirect_url: str,
        error_redirect_url: str,
        description: str = "Card registration",
        language: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.call(GatewayPath.CARD_REGISTRATION, {
            "public_key": self.public_key,
            "language": language or self.language,
            "description": description,
            "success_redirect_url": success_redirect_url,
            "error_redirect_url": error_redirect_url,
            "refund": 0,
        })

    async def execute_saved_card_payment(
        self,
        card_id: str,
        order_id: str,
        amount: Decimal,
        description: str = "",
        currency: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.call(GatewayPath.EXECUTE_PAY, {
            "public_key": self.public_key,
            "language": language or self.language,
            "card_id": card_id,
            "order_id": order_id,
            "amount": amount,
            "currency": currency or self.currency,
            "description": description,
        })

    async def reverse_payment(
        self,
        transaction: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "public_key": self.public_key,
            "language": language or self.language,
            "transaction": transaction,
            "currency": currency or self.currency,
        }
        if amount is not None:
            payload["amount"] = amount
        return await self.call(GatewayPath.REVERSE, payload)

    async def create_pre_auth(self, **details) -> Dict[str, Any]:
        return await self.call(GatewayPath.PRE_AUTH_REQUEST, self._checkout_payload(**details), form=True)

    async def complete_pre_auth(self, transaction: str, amount: Decimal) -> Dict[str, Any]:
        return await self.call(GatewayPath.PRE_AUTH_COMPLETE, {
            "public_key": self.public_key,
            "amount": amount,
            "transaction": transaction,
        })
