#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Payment provider adapters.

Each gateway hides one provider behind the same small surface: start or
resume a payment session for an order, read the authoritative outcome of a
payment, and authenticate and parse the provider's webhook callbacks.
"""

import asyncio
import base64
import dataclasses
import hashlib
import hmac
import json
import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional

import db
from enums import Channel
from enums import Experience
from enums import PaymentOutcome
from enums import Provider
from exceptions import BadRequestError
from exceptions import InternalError
from exceptions import ProviderUnavailableError
import httpx
import stripe

logger = logging.getLogger(__name__)

# Seconds a Stripe signature timestamp stays valid.
STRIPE_SIGNATURE_TOLERANCE = 300


@dataclasses.dataclass(frozen=True)
class CheckoutRoute:
  provider: Provider
  channel: Channel
  experience: Experience


DEFAULT_ROUTE = CheckoutRoute(
    Provider.STRIPE, Channel.INTERNAL, Experience.TRANSPARENT
)

SUPPORTED_ROUTES = frozenset({
    DEFAULT_ROUTE,
    CheckoutRoute(Provider.STRIPE, Channel.EXTERNAL, Experience.NATIVE),
    CheckoutRoute(Provider.YAMPI, Channel.EXTERNAL, Experience.NATIVE),
})


@dataclasses.dataclass
class ProviderSession:
  """A payment session opened at a provider for one order."""

  transaction_id: str
  client_secret: Optional[str] = None
  redirect_url: Optional[str] = None


@dataclasses.dataclass
class PaymentEvent:
  """A provider callback reduced to what the order state machine needs."""

  event_id: str
  event_type: str
  outcome: Optional[PaymentOutcome] = None
  order_id: Optional[str] = None
  transaction_id: Optional[str] = None


class PaymentGateway:
  """Interface implemented by every provider adapter."""

  provider: Provider

  async def create_session(
      self,
      order: db.Order,
      items: List[db.OrderItem],
      route: CheckoutRoute,
      success_url: str,
      cancel_url: str,
  ) -> ProviderSession:
    raise NotImplementedError

  async def fetch_session(
      self, transaction_id: str, route: CheckoutRoute
  ) -> ProviderSession:
    raise NotImplementedError

  async def fetch_outcome(self, transaction_id: str) -> PaymentOutcome:
    raise NotImplementedError

  def verify_event(self, payload: bytes, headers: Mapping[str, str]) -> None:
    """Raises BadRequestError unless the payload is authentic."""
    raise NotImplementedError

  def parse_event(self, payload: bytes) -> PaymentEvent:
    raise NotImplementedError


def _load_json(payload: bytes) -> Dict[str, Any]:
  try:
    data = json.loads(payload)
  except (ValueError, UnicodeDecodeError) as e:
    raise BadRequestError("Malformed event payload") from e
  if not isinstance(data, dict):
    raise BadRequestError("Malformed event payload")
  return data


# --- Stripe ---

_STRIPE_EVENT_OUTCOMES = {
    "payment_intent.succeeded": PaymentOutcome.SUCCEEDED,
    "checkout.session.async_payment_succeeded": PaymentOutcome.SUCCEEDED,
    "payment_intent.processing": PaymentOutcome.PROCESSING,
    "payment_intent.payment_failed": PaymentOutcome.FAILED,
    "checkout.session.async_payment_failed": PaymentOutcome.FAILED,
    "payment_intent.canceled": PaymentOutcome.CANCELED,
    "checkout.session.expired": PaymentOutcome.CANCELED,
}

_STRIPE_INTENT_OUTCOMES = {
    "succeeded": PaymentOutcome.SUCCEEDED,
    "processing": PaymentOutcome.PROCESSING,
    "canceled": PaymentOutcome.CANCELED,
}


class StripeGateway(PaymentGateway):
  """Stripe PaymentIntents (internal) and Checkout Sessions (external).

  The stripe library is synchronous, so calls run in a worker thread with a
  per-call timeout. Every create call carries an idempotency key derived
  from the order and its amount, so a retried start never opens a second
  charge.
  """

  provider = Provider.STRIPE

  def __init__(
      self,
      secret_key: Optional[str],
      webhook_secret: Optional[str],
      currency: str = "brl",
      timeout: float = 10.0,
  ):
    self.secret_key = secret_key
    self.webhook_secret = webhook_secret
    self.currency = currency.lower()
    self.timeout = timeout

  def _idempotency_key(self, order: db.Order, kind: str) -> str:
    # An edited cart total gets a new key instead of the old replayed charge.
    return f"order_{order.id}_{order.total_amount}_{kind}"

  async def _call(self, func, **kwargs: Any) -> Any:
    if not self.secret_key:
      raise ProviderUnavailableError("Stripe is not configured")
    try:
      return await asyncio.wait_for(
          asyncio.to_thread(func, api_key=self.secret_key, **kwargs),
          timeout=self.timeout,
      )
    except asyncio.TimeoutError as e:
      logger.error("Stripe call %s timed out", func.__qualname__)
      raise ProviderUnavailableError("Stripe request timed out") from e
    except stripe.StripeError as e:
      logger.error("Stripe call %s failed: %s", func.__qualname__, e)
      raise ProviderUnavailableError(
          f"Stripe error: {e.user_message or type(e).__name__}"
      ) from e

  async def create_session(
      self,
      order: db.Order,
      items: List[db.OrderItem],
      route: CheckoutRoute,
      success_url: str,
      cancel_url: str,
  ) -> ProviderSession:
    metadata = {"order_id": order.id, "cart_id": order.cart_id}
    if route.channel == Channel.INTERNAL:
      intent = await self._call(
          stripe.PaymentIntent.create,
          amount=order.total_amount,
          currency=self.currency,
          metadata=metadata,
          automatic_payment_methods={"enabled": True},
          idempotency_key=self._idempotency_key(order, "intent"),
      )
      logger.info("Created PaymentIntent %s for order %s", intent.id, order.id)
      return ProviderSession(
          transaction_id=intent.id, client_secret=intent.client_secret
      )

    # Charged as one line so the amount always equals the server total,
    # discount and shipping included.
    names = ", ".join(f"{item.quantity}x {item.product_name}" for item in items)
    session = await self._call(
        stripe.checkout.Session.create,
        mode="payment",
        line_items=[{
            "price_data": {
                "currency": self.currency,
                "unit_amount": order.total_amount,
                "product_data": {
                    "name": f"Order {order.id[:8]}",
                    "description": names[:500] or None,
                },
            },
            "quantity": 1,
        }],
        success_url=success_url,
        cancel_url=cancel_url,
        client_reference_id=order.id,
        metadata=metadata,
        payment_intent_data={"metadata": metadata},
        idempotency_key=self._idempotency_key(order, "session"),
    )
    logger.info(
        "Created Checkout Session %s for order %s", session.id, order.id
    )
    return ProviderSession(
        transaction_id=session.id, redirect_url=session.url
    )

  async def fetch_session(
      self, transaction_id: str, route: CheckoutRoute
  ) -> ProviderSession:
    del route  # The reference prefix tells the object type.
    if transaction_id.startswith("cs_"):
      session = await self._call(
          stripe.checkout.Session.retrieve, id=transaction_id
      )
      return ProviderSession(
          transaction_id=session.id, redirect_url=session.url
      )
    intent = await self._call(stripe.PaymentIntent.retrieve, id=transaction_id)
    return ProviderSession(
        transaction_id=intent.id, client_secret=intent.client_secret
    )

  async def fetch_outcome(self, transaction_id: str) -> PaymentOutcome:
    if transaction_id.startswith("cs_"):
      session = await self._call(
          stripe.checkout.Session.retrieve, id=transaction_id
      )
      if session.payment_status in ("paid", "no_payment_required"):
        return PaymentOutcome.SUCCEEDED
      if session.status == "expired":
        return PaymentOutcome.CANCELED
      return PaymentOutcome.PENDING

    intent = await self._call(stripe.PaymentIntent.retrieve, id=transaction_id)
    if intent.status in _STRIPE_INTENT_OUTCOMES:
      return _STRIPE_INTENT_OUTCOMES[intent.status]
    if intent.status == "requires_payment_method" and getattr(
        intent, "last_payment_error", None
    ):
      return PaymentOutcome.FAILED
    return PaymentOutcome.PENDING

  def verify_event(self, payload: bytes, headers: Mapping[str, str]) -> None:
    if not self.webhook_secret:
      logger.error("Stripe webhook secret is not configured")
      raise InternalError("Webhook secret not configured")
    signature = headers.get("stripe-signature")
    if not signature:
      raise BadRequestError("Missing Stripe-Signature header")
    try:
      stripe.WebhookSignature.verify_header(
          payload.decode("utf-8"),
          signature,
          self.webhook_secret,
          tolerance=STRIPE_SIGNATURE_TOLERANCE,
      )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
      logger.warning("Rejected Stripe webhook: %s", e)
      raise BadRequestError("Invalid signature") from e

  def parse_event(self, payload: bytes) -> PaymentEvent:
    data = _load_json(payload)
    event_id = data.get("id")
    event_type = data.get("type")
    if not event_id or not event_type:
      raise BadRequestError("Event id and type are required")
    obj = (data.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    outcome = _STRIPE_EVENT_OUTCOMES.get(event_type)
    if event_type == "checkout.session.completed":
      # Async methods (boleto, pix) complete unpaid and settle later.
      if obj.get("payment_status") in ("paid", "no_payment_required"):
        outcome = PaymentOutcome.SUCCEEDED
      else:
        outcome = PaymentOutcome.PENDING

    return PaymentEvent(
        event_id=event_id,
        event_type=event_type,
        outcome=outcome,
        order_id=metadata.get("order_id") or obj.get("client_reference_id"),
        transaction_id=obj.get("id"),
    )


# --- Yampi ---

_YAMPI_EVENT_OUTCOMES = {
    "order.paid": PaymentOutcome.SUCCEEDED,
    "payment.approved": PaymentOutcome.SUCCEEDED,
    "payment.paid": PaymentOutcome.SUCCEEDED,
    "transaction.payment.refused": PaymentOutcome.FAILED,
    "payment.refused": PaymentOutcome.FAILED,
    "order.cancelled": PaymentOutcome.CANCELED,
    "payment.cancelled": PaymentOutcome.CANCELED,
}

# Yampi order status aliases, as sent with order.status.updated.
_YAMPI_STATUS_ALIASES = {
    "paid": PaymentOutcome.SUCCEEDED,
    "payment_approved": PaymentOutcome.SUCCEEDED,
    "invoiced": PaymentOutcome.SUCCEEDED,
    "waiting_payment": PaymentOutcome.PENDING,
    "in_review": PaymentOutcome.PROCESSING,
    "refused": PaymentOutcome.FAILED,
    "payment_refused": PaymentOutcome.FAILED,
    "cancelled": PaymentOutcome.CANCELED,
    "canceled": PaymentOutcome.CANCELED,
}


def _yampi_status_alias(resource: Dict[str, Any]) -> Optional[str]:
  status = resource.get("status")
  if isinstance(status, dict):
    status = (status.get("data") or status).get("alias")
  return status if isinstance(status, str) else None


class YampiGateway(PaymentGateway):
  """Yampi payment links (external redirect only)."""

  provider = Provider.YAMPI

  def __init__(
      self,
      api_url: Optional[str],
      user_token: Optional[str],
      secret_key: Optional[str],
      webhook_secret: Optional[str],
      timeout: float = 10.0,
      transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    self.api_url = api_url.rstrip("/") if api_url else None
    self.user_token = user_token
    self.secret_key = secret_key
    self.webhook_secret = webhook_secret
    self.timeout = timeout
    self.transport = transport

  async def _request(
      self, method: str, path: str, body: Optional[Dict[str, Any]] = None
  ) -> Dict[str, Any]:
    if not self.api_url or not self.user_token or not self.secret_key:
      raise ProviderUnavailableError("Yampi is not configured")
    headers = {
        "User-Token": self.user_token,
        "User-Secret-Key": self.secret_key,
    }
    try:
      async with httpx.AsyncClient(
          timeout=self.timeout, transport=self.transport
      ) as client:
        response = await client.request(
            method, f"{self.api_url}{path}", json=body, headers=headers
        )
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
      logger.error("Yampi %s %s failed: %s", method, path, e)
      raise ProviderUnavailableError("Yampi request failed") from e
    return data.get("data") or data

  def _session_from(self, link: Dict[str, Any]) -> ProviderSession:
    link_id = link.get("id")
    redirect_url = (
        link.get("link_url") or link.get("checkout_url") or link.get("url")
    )
    if not link_id or not redirect_url:
      raise ProviderUnavailableError("Yampi returned an incomplete link")
    return ProviderSession(
        transaction_id=str(link_id), redirect_url=redirect_url
    )

  async def create_session(
      self,
      order: db.Order,
      items: List[db.OrderItem],
      route: CheckoutRoute,
      success_url: str,
      cancel_url: str,
  ) -> ProviderSession:
    del route, success_url, cancel_url  # Yampi hosts its own return pages.
    link = await self._request(
        "POST",
        "/checkout/payment-link",
        {
            "name": f"Checkout {order.id[:8]}",
            "active": True,
            "skus": [
                {"id": item.sku or item.variant_id, "quantity": item.quantity}
                for item in items
            ],
            "metadata": {"order_id": order.id, "cart_id": order.cart_id},
        },
    )
    session = self._session_from(link)
    logger.info(
        "Created Yampi link %s for order %s", session.transaction_id, order.id
    )
    return session

  async def fetch_session(
      self, transaction_id: str, route: CheckoutRoute
  ) -> ProviderSession:
    del route  # Unused.
    link = await self._request(
        "GET", f"/checkout/payment-link/{transaction_id}"
    )
    return self._session_from(link)

  async def fetch_outcome(self, transaction_id: str) -> PaymentOutcome:
    link = await self._request(
        "GET", f"/checkout/payment-link/{transaction_id}"
    )
    order = link.get("order") or {}
    if isinstance(order, dict) and "data" in order:
      order = order["data"] or {}
    alias = _yampi_status_alias(order) if order else None
    return _YAMPI_STATUS_ALIASES.get(alias or "", PaymentOutcome.PENDING)

  def verify_event(self, payload: bytes, headers: Mapping[str, str]) -> None:
    if not self.webhook_secret:
      logger.error("Yampi webhook secret is not configured")
      raise InternalError("Webhook secret not configured")
    signature = headers.get("x-yampi-hmac-sha256")
    if not signature:
      raise BadRequestError("Missing X-Yampi-Hmac-SHA256 header")
    expected = base64.b64encode(
        hmac.new(
            self.webhook_secret.encode("utf-8"), payload, hashlib.sha256
        ).digest()
    ).decode("ascii")
    if not hmac.compare_digest(signature.strip(), expected):
      logger.warning("Rejected Yampi webhook with invalid signature")
      raise BadRequestError("Invalid signature")

  def parse_event(self, payload: bytes) -> PaymentEvent:
    data = _load_json(payload)
    event_type = data.get("event") or data.get("type")
    if not event_type:
      raise BadRequestError("Event type is required")
    resource = data.get("resource") or data.get("data") or {}
    metadata = resource.get("metadata") or {}

    outcome = _YAMPI_EVENT_OUTCOMES.get(event_type)
    if event_type == "order.status.updated":
      outcome = _YAMPI_STATUS_ALIASES.get(_yampi_status_alias(resource) or "")

    link_id = resource.get("payment_link_id")
    return PaymentEvent(
        # Yampi events carry no id of their own; identical bodies are the
        # same delivery.
        event_id=hashlib.sha256(payload).hexdigest(),
        event_type=event_type,
        outcome=outcome,
        order_id=metadata.get("order_id"),
        transaction_id=str(link_id) if link_id else None,
    )
