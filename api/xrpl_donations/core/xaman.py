"""Xaman (formerly XUMM) signing provider client.

Provider responses are decoded into a small tagged union at this boundary:
:class:`Signed`, :class:`Cancelled`, :class:`Expired` or :class:`Pending`.
Anything that does not fit is rejected instead of being read optimistically.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Union

import httpx
import websockets
from websockets.exceptions import WebSocketException
from xrpl.models.transactions import TrustSetFlag

from .config import XAMAN_API_KEY, XAMAN_API_SECRET, XAMAN_BASE_URL, XAMAN_TIMEOUT_S
from .errors import InvalidInput, NotFound, ProviderUnavailable
from .utils import parse_iso

logger = logging.getLogger(__name__)

TRUSTLINE_LIMIT = "1000000"


class MalformedProviderResponse(ProviderUnavailable):
    code = "malformed_provider_response"
    default_detail = "Signing provider returned an unrecognised payload"


@dataclass(frozen=True)
class CreatedPayload:
    uuid: str
    qr_png: str
    qr_uri: str
    websocket_url: str
    pushed: bool = False


@dataclass(frozen=True)
class Signed:
    uuid: str
    account: Optional[str]
    txid: Optional[str]
    resolved_at: Optional[datetime] = None


@dataclass(frozen=True)
class Cancelled:
    uuid: str
    reason: str = "cancelled"


@dataclass(frozen=True)
class Expired:
    uuid: str


@dataclass(frozen=True)
class Pending:
    uuid: str
    expires_at: Optional[datetime] = None


PayloadStatus = Union[Signed, Cancelled, Expired, Pending]


@dataclass(frozen=True)
class PushEvent:
    """A provider notification; it only says *that* a payload changed."""

    payload_id: str
    signed: Optional[bool] = None
    expired: bool = False

    @property
    def resolving(self) -> bool:
        return self.signed is not None or self.expired


def decode_payload_status(data: Mapping[str, Any]) -> PayloadStatus:
    meta = data.get("meta") if isinstance(data, Mapping) else None
    if not isinstance(meta, Mapping) or not isinstance(meta.get("uuid"), str):
        raise MalformedProviderResponse()
    for flag in ("signed", "cancelled", "expired"):
        if not isinstance(meta.get(flag, False), bool):
            raise MalformedProviderResponse()

    uuid = meta["uuid"]
    if meta.get("signed"):
        response = data.get("response")
        if not isinstance(response, Mapping):
            raise MalformedProviderResponse("Signed payload without a response")
        return Signed(
            uuid=uuid,
            account=response.get("account") or response.get("signer"),
            txid=response.get("txid"),
            resolved_at=parse_iso(response.get("resolved_at")),
        )
    if meta.get("cancelled"):
        return Cancelled(uuid=uuid)
    if meta.get("expired"):
        return Expired(uuid=uuid)
    if meta.get("resolved"):
        # Resolved but unsigned: the user declined in the app.
        return Cancelled(uuid=uuid, reason="rejected")

    payload = data.get("payload") if isinstance(data.get("payload"), Mapping) else {}
    return Pending(uuid=uuid, expires_at=parse_iso(payload.get("expires_at")))


def decode_push_event(body: Mapping[str, Any]) -> PushEvent:
    """Decode a webhook callback body.

    Accepts the provider's webhook shape (``payloadResponse``) and the flat
    ``{payloadUuid, signed}`` form.
    """
    if not isinstance(body, Mapping):
        raise InvalidInput("Callback body must be an object")
    response = body.get("payloadResponse")
    if isinstance(response, Mapping):
        payload_id = response.get("payload_uuidv4")
        signed = response.get("signed")
    else:
        payload_id = body.get("payloadUuid") or body.get("payload_uuidv4")
        signed = body.get("signed")
    if not isinstance(payload_id, str) or not payload_id:
        raise InvalidInput("Payload UUID is required")
    if signed is not None and not isinstance(signed, bool):
        raise InvalidInput("signed must be a boolean")
    return PushEvent(payload_id=payload_id, signed=signed, expired=bool(body.get("expired")))


def decode_stream_message(payload_id: str, message: Mapping[str, Any]) -> Optional[PushEvent]:
    """Decode a websocket status message; keep-alives and greetings give ``None``."""
    if "signed" in message:
        return PushEvent(payload_id=payload_id, signed=bool(message["signed"]))
    if message.get("expired"):
        return PushEvent(payload_id=payload_id, expired=True)
    return None


def sign_in_payload(identifier: str, blob: Dict[str, Any], expire_minutes: int) -> Dict[str, Any]:
    return {
        "txjson": {"TransactionType": "SignIn"},
        "options": {"submit": False, "multisign": False, "expire": expire_minutes},
        "custom_meta": {"identifier": identifier, "blob": blob},
    }


def transaction_payload(
    txjson: Dict[str, Any],
    identifier: str,
    blob: Dict[str, Any],
    expire_minutes: int,
    *,
    instruction: Optional[str] = None,
) -> Dict[str, Any]:
    custom_meta: Dict[str, Any] = {"identifier": identifier, "blob": blob}
    if instruction:
        custom_meta["instruction"] = instruction
    return {
        "txjson": txjson,
        "options": {"submit": True, "multisign": False, "expire": expire_minutes},
        "custom_meta": custom_meta,
    }


def trust_set_payload(
    account: str,
    currency: str,
    issuer: str,
    identifier: str,
    blob: Dict[str, Any],
    expire_minutes: int,
    *,
    limit: str = TRUSTLINE_LIMIT,
) -> Dict[str, Any]:
    """Payload asking ``account`` to trust ``issuer`` for ``currency`` with rippling disabled."""
    txjson = {
        "TransactionType": "TrustSet",
        "Account": account,
        "LimitAmount": {"currency": currency, "issuer": issuer, "value": limit},
        "Flags": TrustSetFlag.TF_SET_NO_RIPPLE.value,
    }
    return transaction_payload(
        txjson,
        identifier=identifier,
        blob=blob,
        expire_minutes=expire_minutes,
        instruction="Add a trustline to receive project tokens",
    )


class XamanClient:
    def __init__(
        self,
        *,
        api_key: Optional[str] = XAMAN_API_KEY,
        api_secret: Optional[str] = XAMAN_API_SECRET,
        base_url: str = XAMAN_BASE_URL,
        timeout_s: float = XAMAN_TIMEOUT_S,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._http = http

    def _require_config(self) -> None:
        missing = []
        if not self.api_key:
            missing.append("XAMAN_API_KEY")
        if not self.api_secret:
            missing.append("XAMAN_API_SECRET")
        if missing:
            raise ProviderUnavailable(f"Xaman configuration incomplete. Missing: {', '.join(missing)}")

    def _headers(self) -> Dict[str, str]:
        return {
            "X-API-Key": self.api_key or "",
            "X-API-Secret": self.api_secret or "",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _request(
        self, method: str, path: str, *, body: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        self._require_config()
        url = f"{self.base_url}{path}"
        try:
            if self._http is not None:
                response = await self._http.request(
                    method, url, json=body, headers=self._headers(), timeout=self.timeout_s
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as http:
                    response = await http.request(method, url, json=body, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                raise NotFound("Xaman payload not found") from exc
            raise ProviderUnavailable(f"Xaman API error: {exc.response.status_code}") from exc
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable("Xaman API request timed out") from exc
        except httpx.RequestError as exc:
            raise ProviderUnavailable(f"Xaman API request failed: {exc}") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise MalformedProviderResponse() from exc

    async def create_payload(self, body: Dict[str, Any]) -> CreatedPayload:
        data = await self._request("POST", "/platform/payload", body=body)
        refs = data.get("refs") if isinstance(data, Mapping) else None
        if not isinstance(refs, Mapping) or not isinstance(data.get("uuid"), str):
            raise MalformedProviderResponse()
        return CreatedPayload(
            uuid=data["uuid"],
            qr_png=refs.get("qr_png", ""),
            qr_uri=refs.get("qr_matrix") or (data.get("next") or {}).get("always", ""),
            websocket_url=refs.get("websocket_status", ""),
            pushed=bool(data.get("pushed")),
        )

    async def get_payload_status(self, uuid: str) -> PayloadStatus:
        if not uuid:
            raise InvalidInput("Missing payload uuid")
        return decode_payload_status(await self._request("GET", f"/platform/payload/{uuid}"))

    async def stream_events(self, payload_id: str, websocket_url: str) -> AsyncIterator[PushEvent]:
        """Yield status events from the payload's websocket until it resolves."""
        try:
            async with websockets.connect(websocket_url, open_timeout=self.timeout_s) as socket:
                async for raw in socket:
                    try:
                        message = json.loads(raw)
                    except ValueError:
                        logger.debug("Ignoring non-JSON status message for %s", payload_id)
                        continue
                    if not isinstance(message, Mapping):
                        continue
                    event = decode_stream_message(payload_id, message)
                    if event is None:
                        continue
                    yield event
                    if event.resolving:
                        return
        except (WebSocketException, OSError) as exc:
            raise ProviderUnavailable(f"Xaman status stream failed: {exc}") from exc
