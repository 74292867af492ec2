from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import base64
import hashlib
import hmac
import json
import logging
import os
import time
import uuid

import stripe

from .errors import InvalidPayload, InvalidSignature, Misconfigured
from .errors import ProviderError

log = logging.getLogger(__name__)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))
PROVIDER_RETRIES = int(os.getenv("PROVIDER_RETRIES", "2"))

CHECKOUT_COMPLETED = "checkout.session.completed"


# ----------------------------
# What the provider confirms
# ----------------------------
@dataclass
class LineItem:
    description: str
    quantity: int
    amount_total: int  # cents paid for the whole line
    name: str = ""
    # product description, e.g. "2 books (10 tickets)"
    detail: str = ""
    # explicit tag set at checkout time (product metadata "category")
    category: Optional[str] = None


@dataclass
class ConfirmedSession:
    id: str
    amount_total: int  # cents
    amount_subtotal: int  # cents
    currency: str = "usd"
    customer_email: str = ""
    payment_intent_id: Optional[str] = None
    provider_fee: int = 0  # cents, as reported by the provider
    metadata: Dict[str, str] = field(default_factory=dict)
    line_items: List[LineItem] = field(default_factory=list)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    @abstractmethod
    async def retrieve_session(self, session_id: str) -> ConfirmedSession:
        ...

    def event_kind(self, event: dict) -> str:
        return event.get("type", "")

    # (session_id, event_id)
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        obj = (event.get("data") or {}).get("object") or {}
        return obj.get("id", ""), event.get("id")


def _decode_event(payload: bytes) -> dict:
    # only ever called on bytes whose signature was verified
    try:
        event = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise InvalidPayload("Invalid JSON")
    if not isinstance(event, dict) or "type" not in event:
        raise InvalidPayload("Not an event")
    return event


def _dig(obj: Any, *path, default=None):
    """Walk dicts, lists and Stripe objects alike."""
    for key in path:
        if obj is None:
            return default
        try:
            obj = obj[key]
        except (KeyError, IndexError, TypeError):
            return default
    return default if obj is None else obj


def _as_dict(obj: Any) -> Dict[str, Any]:
    # StripeObject is not a dict on current SDKs
    if isinstance(obj, dict):
        return obj
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return {}


# ----------------------------
# Stripe implementation
# ----------------------------
class StripePay(PaymentAdapter):

    def __init__(self, api_key: Optional[str] = None,
                 webhook_secret: Optional[str] = None,
                 timeout: float = PROVIDER_TIMEOUT_SECONDS,
                 retries: int = PROVIDER_RETRIES):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.retries = retries

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("stripe-signature")
        if not sig:
            raise InvalidSignature("No stripe signature")
        if not self.webhook_secret:
            raise Misconfigured("Webhook secret not configured")
        try:
            # must see the raw bytes exactly as transmitted
            stripe.Webhook.construct_event(payload, sig, self.webhook_secret)
        except stripe.SignatureVerificationError:
            raise InvalidSignature("Invalid signature")
        except ValueError:
            raise InvalidPayload("Invalid payload")
        return _decode_event(payload)

    async def retrieve_session(self, session_id: str) -> ConfirmedSession:
        return await self._call(self._fetch_session, session_id)

    async def _call(self, fn, *args):
        attempt = 0
        while True:
            try:
                # a timed-out lookup keeps running in its worker thread; the
                # retry overlaps it, which is harmless for a read
                return await asyncio.wait_for(
                    asyncio.to_thread(fn, *args), timeout=self.timeout
                )
            except (asyncio.TimeoutError, stripe.APIConnectionError,
                    stripe.RateLimitError) as e:
                attempt += 1
                if attempt > self.retries:
                    raise ProviderError(
                        f"provider unavailable after {attempt} attempts: {e}",
                        session_id=args[0] if args else None,
                    ) from e
                log.warning("provider call failed, retrying",
                            extra={"ctx": {"attempt": attempt,
                                           "error": repr(e)}})
                await asyncio.sleep(0.5 * attempt)
            except stripe.StripeError as e:
                raise ProviderError(
                    f"provider rejected lookup: {e}",
                    session_id=args[0] if args else None,
                ) from e

    def _fetch_session(self, session_id: str) -> ConfirmedSession:
        session = stripe.checkout.Session.retrieve(
            session_id,
            expand=["payment_intent.latest_charge.balance_transaction"],
            api_key=self.api_key,
        )
        # line_items on the session itself stop at 10
        page = stripe.checkout.Session.list_line_items(
            session_id,
            limit=100,
            expand=["data.price.product"],
            api_key=self.api_key,
        )
        items = [
            LineItem(
                description=_dig(li, "description", default=""),
                quantity=int(_dig(li, "quantity", default=1) or 1),
                amount_total=int(_dig(li, "amount_total", default=0)),
                name=_dig(li, "price", "product", "name", default=""),
                detail=_dig(li, "price", "product", "description",
                            default=""),
                category=_dig(li, "price", "product", "metadata", "category"),
            )
            for li in page.auto_paging_iter()
        ]

        pi = _dig(session, "payment_intent")
        pi_id = pi if isinstance(pi, str) else _dig(pi, "id")
        fee = _dig(pi, "latest_charge", "balance_transaction", "fee",
                   default=None)
        if fee is None:
            if pi_id:
                log.warning("could not read balance transaction fee",
                            extra={"ctx": {"session_id": session_id}})
            fee = 0

        metadata = _as_dict(_dig(session, "metadata", default={}))
        return ConfirmedSession(
            id=session_id,
            amount_total=int(_dig(session, "amount_total", default=0)),
            amount_subtotal=int(_dig(session, "amount_subtotal", default=0)),
            currency=_dig(session, "currency", default="usd"),
            customer_email=(
                _dig(session, "customer_details", "email")
                or _dig(session, "customer_email", default="")
            ),
            payment_intent_id=pi_id,
            provider_fee=int(fee),
            metadata={k: str(v) for k, v in metadata.items()},
            line_items=items,
        )


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    In-process stand-in for the hosted checkout. Sessions registered here
    are "already paid"; `completed_event` produces what the provider would
    deliver to the webhook.
    """

    def __init__(self, secret: Optional[str] = MOCK_SECRET):
        self.secret = secret
        self._sessions: Dict[str, ConfirmedSession] = {}

    def register_session(
        self,
        line_items: List[LineItem],
        metadata: Optional[Dict[str, str]] = None,
        customer_email: str = "",
        amount_subtotal: Optional[int] = None,
        amount_total: Optional[int] = None,
        provider_fee: int = 0,
    ) -> ConfirmedSession:
        psid = f"cs_mock_{uuid.uuid4().hex}"
        if amount_total is None:
            amount_total = sum(li.amount_total for li in line_items)
        if amount_subtotal is None:
            amount_subtotal = sum(
                li.amount_total for li in line_items
                if "Processing Fee" not in (li.description + li.name)
            )
        session = ConfirmedSession(
            id=psid,
            amount_total=amount_total,
            amount_subtotal=amount_subtotal,
            customer_email=customer_email,
            payment_intent_id=f"pi_mock_{uuid.uuid4().hex[:16]}",
            provider_fee=provider_fee,
            metadata=dict(metadata or {}),
            line_items=list(line_items),
        )
        self._sessions[psid] = session
        return session

    def completed_event(self, session_id: str) -> dict:
        return {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": CHECKOUT_COMPLETED,
            "created": int(time.time()),
            "data": {"object": {"id": session_id,
                                "object": "checkout.session"}},
        }

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        if not sig:
            raise InvalidSignature("No mockpay signature")
        if not self.secret:
            raise Misconfigured("Webhook secret not configured")
        if not hmac.compare_digest(self.sign(payload), sig):
            raise InvalidSignature("Invalid signature")
        return _decode_event(payload)

    async def retrieve_session(self, session_id: str) -> ConfirmedSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise ProviderError("unknown checkout session",
                                session_id=session_id)
        return session
