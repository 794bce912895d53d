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

"""Checkout router for starting payments.

This module provides the `CheckoutRouter` class, which turns a storefront
cart into exactly one payment attempt at the provider the store selected.

A `start` request goes through, in order:
- Payload validation and the per (cart_id, IP) rate limit.
- The request-level idempotency guard on `request_id`.
- Server-side pricing and the client total tolerance check.
- One transaction that creates or resumes the cart's order, replaces its
  items and reserves the stock.
- The provider call, whose reference is stored through the atomic charge
  claim, so concurrent starts converge on a single provider session.
"""

import asyncio
import logging
import secrets
from typing import Any
from typing import Dict

import config
import db
from enums import Channel
from enums import Experience
from enums import OrderStatus
from enums import Provider
from enums import RouterAction
from enums import TERMINAL_STATUSES
from exceptions import BadRequestError
from exceptions import CheckoutError
from exceptions import CheckoutNotModifiableError
from exceptions import IdempotencyConflictError
from exceptions import InternalError
from exceptions import ProviderUnavailableError
from exceptions import ResourceNotFoundError
from models import RouterResponse
from models import StartRequest
from pydantic import ValidationError
from services import pricing
from services.idempotency import already_charged
from services.idempotency import compute_request_hash
from services.idempotency import IdempotencyGuard
from services.payment_gateways import CheckoutRoute
from services.payment_gateways import PaymentGateway
from services.payment_gateways import ProviderSession
from services.rate_limiter import RateLimiter
from services.reservations import ReservationService
from services.settings_service import SettingsService
from sqlalchemy.exc import IntegrityError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ROUTE_START = "start"


def _describe_validation_error(error: ValidationError) -> str:
  first = error.errors()[0]
  location = ".".join(str(part) for part in first.get("loc", ()))
  return f"Invalid payload: {location}: {first.get('msg')}"


class CheckoutRouter:
  """Decides and starts the payment route of a cart."""

  def __init__(
      self,
      session: AsyncSession,
      gateways: Dict[Provider, PaymentGateway],
      rate_limiter: RateLimiter,
      guard: IdempotencyGuard,
      reservations: ReservationService,
      public_base_url: str,
  ):
    self.session = session
    self.gateways = gateways
    self.rate_limiter = rate_limiter
    self.guard = guard
    self.reservations = reservations
    self.settings = SettingsService(session)
    self.public_base_url = public_base_url.rstrip("/")

  def validate(self, payload: Any) -> StartRequest:
    """Parses a router payload.

    Raises:
      BadRequestError: If the route is not `start` or a field is invalid.
    """
    if not isinstance(payload, dict):
      raise BadRequestError("Invalid payload: expected a JSON object")
    if payload.get("route") != ROUTE_START:
      raise BadRequestError(f"Unsupported route: {payload.get('route')!r}")
    try:
      return StartRequest.model_validate(payload)
    except ValidationError as e:
      raise BadRequestError(_describe_validation_error(e)) from e

  async def route(self, payload: Any, client_ip: str) -> Dict[str, Any]:
    """Handles a router call and returns the response body.

    A repeated `request_id` with the same body returns the stored body
    without executing again.
    """
    request = self.validate(payload)
    self.rate_limiter.check(request.cart_id, client_ip)

    cached = await self.guard.begin(
        request.request_id, compute_request_hash(request)
    )
    if cached is not None:
      return cached

    try:
      response = await self._start(request)
    except (Exception, asyncio.CancelledError):
      # The claim is dropped so the caller can retry with the same id; a
      # pending order is resumed by cart on the next attempt.
      await self.guard.abandon(request.request_id)
      raise

    body = response.model_dump(mode="json", exclude_none=True)
    await self.guard.complete(request.request_id, 200, body)
    return body

  async def _start(self, request: StartRequest) -> RouterResponse:
    priced = await pricing.price_cart(
        self.session,
        request.items,
        request.coupon_code,
        pricing.to_cents(request.shipping_cost),
    )
    client_total = (
        pricing.to_cents(request.total_amount)
        if request.total_amount is not None
        else None
    )
    pricing.check_client_total(client_total, priced.total_amount)

    route = await self.settings.get_route()
    order = await self._prepare_order(request, priced, route)

    if order.status != OrderStatus.PENDING.value and already_charged(
        order.status, order.transaction_id
    ):
      logger.info("Order %s already charged; nothing to start", order.id)
      return RouterResponse(
          provider=Provider(order.provider),
          channel=Channel(order.channel),
          experience=Experience(order.experience),
          action=RouterAction.COMPLETE,
          order_id=order.id,
          order_access_token=order.access_token,
          message="Order already paid",
      )

    # An order keeps the route it was started with.
    order_route = CheckoutRoute(
        Provider(order.provider),
        Channel(order.channel),
        Experience(order.experience),
    )
    provider_session = await self._open_provider_session(
        order, order_route, request
    )
    if order_route.channel == Channel.INTERNAL:
      return RouterResponse(
          provider=order_route.provider,
          channel=order_route.channel,
          experience=order_route.experience,
          action=RouterAction.RENDER,
          order_id=order.id,
          order_access_token=order.access_token,
          client_secret=provider_session.client_secret,
      )
    return RouterResponse(
        provider=order_route.provider,
        channel=order_route.channel,
        experience=order_route.experience,
        action=RouterAction.REDIRECT,
        order_id=order.id,
        order_access_token=order.access_token,
        redirect_url=provider_session.redirect_url,
    )

  def _authorize_resume(self, order: db.Order, request: StartRequest) -> None:
    """Lets only the original buyer resume an existing order of a cart.

    An unclaimed pending order never had its token handed out, so the cart
    alone may resume it.
    """
    if order.status == OrderStatus.PENDING.value and not order.transaction_id:
      return
    if request.order_access_token and secrets.compare_digest(
        request.order_access_token, order.access_token or ""
    ):
      return
    if request.user_id and order.user_id and request.user_id == order.user_id:
      return
    logger.warning("Rejected resume of order %s without credentials", order.id)
    raise ResourceNotFoundError("Order not found")

  async def _prepare_order(
      self,
      request: StartRequest,
      priced: pricing.PricedCart,
      route: CheckoutRoute,
  ) -> db.Order:
    """Creates or resumes the cart's order and reserves its stock.

    Everything is written in one transaction; any failure leaves no order,
    item or reservation behind.
    """
    try:
      order = await db.get_order_by_cart(self.session, request.cart_id)
      payment_started = False
      if order is not None:
        self._authorize_resume(order, request)
        status = OrderStatus(order.status)
        if status in TERMINAL_STATUSES:
          raise CheckoutNotModifiableError(
              f"Order {order.id} is {status.value} and cannot be modified"
          )
        if status != OrderStatus.PENDING:
          return order
        payment_started = bool(order.transaction_id)
        if payment_started:
          await self._check_unchanged(order, priced)
          logger.info(
              "Resuming started order %s for cart %s", order.id, order.cart_id
          )
        else:
          self._fill_order(order, request, priced, route)
          logger.info(
              "Resuming order %s for cart %s", order.id, order.cart_id
          )
      else:
        now = db.utcnow()
        order = db.Order(
            id=db.new_id(),
            cart_id=request.cart_id,
            status=OrderStatus.PENDING.value,
            access_token=secrets.token_urlsafe(24),
            user_id=request.user_id,
            created_at=now,
        )
        self._fill_order(order, request, priced, route)
        self.session.add(order)
        logger.info("Creating order %s for cart %s", order.id, order.cart_id)

      if not payment_started:
        await db.replace_order_items(
            self.session,
            order.id,
            [
                db.OrderItem(
                    variant_id=line.variant_id,
                    sku=line.sku,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total_price=line.total_price,
                )
                for line in priced.lines
            ],
        )
      # Also takes back holds the sweeper released from a started order.
      await self.reservations.reserve_order(
          order.id, request.cart_id, priced.lines
      )
      await db.log_request(
          self.session,
          method="POST",
          url="/checkout-router",
          correlation_id=config.correlation_id_var.get(),
          cart_id=request.cart_id,
          payload=request.model_dump(mode="json"),
      )
      await self.session.commit()
      return order
    except CheckoutError:
      await self.session.rollback()
      raise
    except IntegrityError as e:
      await self.session.rollback()
      logger.warning("Concurrent start for cart %s: %s", request.cart_id, e)
      raise IdempotencyConflictError(
          "A checkout for this cart is already in progress"
      ) from e
    except SQLAlchemyError as e:
      await self.session.rollback()
      logger.exception("Failed to persist order for cart %s", request.cart_id)
      raise InternalError("Failed to persist order") from e

  async def _check_unchanged(
      self, order: db.Order, priced: pricing.PricedCart
  ) -> None:
    """Rejects a cart that no longer matches the provider session."""
    items = await db.get_order_items(self.session, order.id)
    started = sorted((item.variant_id, item.quantity) for item in items)
    current = sorted((line.variant_id, line.quantity) for line in priced.lines)
    if order.total_amount != priced.total_amount or started != current:
      raise CheckoutNotModifiableError(
          "Payment already started for a different cart"
      )

  def _fill_order(
      self,
      order: db.Order,
      request: StartRequest,
      priced: pricing.PricedCart,
      route: CheckoutRoute,
  ) -> None:
    order.subtotal = priced.subtotal
    order.discount_amount = priced.discount_amount
    order.shipping_cost = priced.shipping_cost
    order.total_amount = priced.total_amount
    order.coupon_code = priced.coupon_code
    order.provider = route.provider.value
    order.channel = route.channel.value
    order.experience = route.experience.value
    order.customer = request.customer
    order.shipping = request.shipping
    order.attribution = request.attribution
    order.user_id = order.user_id or request.user_id
    order.updated_at = db.utcnow()

  async def _open_provider_session(
      self,
      order: db.Order,
      route: CheckoutRoute,
      request: StartRequest,
  ) -> ProviderSession:
    """Creates the provider session once, or re-fetches the existing one."""
    gateway = self.gateways.get(route.provider)
    if gateway is None:
      raise ProviderUnavailableError(
          f"No gateway configured for {route.provider.value}"
      )

    if order.transaction_id:
      return await gateway.fetch_session(order.transaction_id, route)

    items = await db.get_order_items(self.session, order.id)
    provider_session = await gateway.create_session(
        order,
        items,
        route,
        success_url=request.success_url or self._return_url("success", order),
        cancel_url=request.cancel_url or self._return_url("cancel", order),
    )

    claimed = await db.claim_transaction(
        self.session, order.id, provider_session.transaction_id
    )
    await self.session.commit()
    if claimed:
      return provider_session

    current = await db.get_order(self.session, order.id)
    if current.transaction_id == provider_session.transaction_id:
      return provider_session
    if current.transaction_id:
      logger.info(
          "Order %s was claimed concurrently by %s",
          order.id,
          current.transaction_id,
      )
      return await gateway.fetch_session(current.transaction_id, route)
    raise CheckoutNotModifiableError(
        f"Order {order.id} is {current.status} and cannot be charged"
    )

  def _return_url(self, outcome: str, order: db.Order) -> str:
    return f"{self.public_base_url}/checkout/{outcome}?order_id={order.id}"
