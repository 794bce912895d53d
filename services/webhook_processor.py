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

"""Webhook processor for provider payment events.

Every event is authenticated before it is parsed, stored under its provider
event id, and applied to its order at most once. A failed application keeps
the event with its error so the provider's redelivery, or a manual
reprocess, can finish it later.
"""

import asyncio
import dataclasses
import logging
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import Mapping
from typing import Optional

import db
from enums import PaymentOutcome
from enums import Provider
from exceptions import BadRequestError
from exceptions import CheckoutError
from exceptions import InternalError
from exceptions import ProviderUnavailableError
from exceptions import ResourceNotFoundError
from models import ReprocessResponse
from models import WebhookResponse
from services import order_state
from services.payment_gateways import PaymentEvent
from services.payment_gateways import PaymentGateway
from services.reservations import ReservationService
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class WebhookProcessor:
  """Verifies, records and applies provider webhook events."""

  def __init__(
      self,
      session: AsyncSession,
      gateways: Dict[Provider, PaymentGateway],
      reservations: ReservationService,
      lookup_attempts: int = 3,
      retry_base_seconds: float = 0.5,
      sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ):
    self.session = session
    self.gateways = gateways
    self.reservations = reservations
    self.lookup_attempts = max(1, lookup_attempts)
    self.retry_base_seconds = retry_base_seconds
    self._sleep = sleep

  def _gateway(self, provider: Provider) -> PaymentGateway:
    gateway = self.gateways.get(provider)
    if gateway is None:
      raise ProviderUnavailableError(
          f"No gateway configured for {provider.value}"
      )
    return gateway

  async def process(
      self, provider: Provider, payload: bytes, headers: Mapping[str, str]
  ) -> WebhookResponse:
    """Handles one delivery of a provider webhook.

    Raises:
      BadRequestError: If the signature is missing or invalid, or the body
        is not an event.
      InternalError: If the event could not be applied; it stays stored
        for redelivery or reprocessing.
    """
    gateway = self._gateway(provider)
    gateway.verify_event(payload, headers)
    event = gateway.parse_event(payload)

    existing = await db.get_webhook_event(self.session, event.event_id)
    if existing is not None and existing.processed_at is not None:
      logger.info("Duplicate %s event %s", provider.value, event.event_id)
      return WebhookResponse(duplicate=True)

    if existing is None:
      stored = await db.insert_webhook_event(
          self.session,
          event.event_id,
          provider.value,
          event.event_type,
          payload.decode("utf-8", errors="replace"),
      )
      if not stored:
        # A concurrent delivery of the same event owns it.
        logger.info(
            "Event %s is being handled by a concurrent delivery",
            event.event_id,
        )
        return WebhookResponse(duplicate=True)
    else:
      logger.info(
          "Retrying previously failed event %s (%s attempts)",
          event.event_id,
          existing.attempts,
      )

    await self._apply(event)
    return WebhookResponse()

  async def reprocess(self, event_id: Optional[str]) -> ReprocessResponse:
    """Applies a stored event again, without re-verifying its signature.

    Raises:
      BadRequestError: If event_id is missing.
      ResourceNotFoundError: If no such event was received.
      InternalError: If applying the event fails again.
    """
    if not event_id:
      raise BadRequestError("event_id is required")
    record = await db.get_webhook_event(self.session, event_id)
    if record is None:
      raise ResourceNotFoundError(f"Webhook event {event_id} not found")
    if record.processed_at is not None:
      logger.info("Event %s already processed; nothing to do", event_id)
      return ReprocessResponse(event_id=event_id)

    gateway = self._gateway(Provider(record.provider))
    event = gateway.parse_event(record.payload.encode("utf-8"))
    event = dataclasses.replace(event, event_id=record.event_id)
    logger.info("Reprocessing %s event %s", record.provider, event_id)
    await self._apply(event)
    return ReprocessResponse(event_id=event_id)

  async def _apply(self, event: PaymentEvent) -> None:
    try:
      if event.outcome is None or event.outcome == PaymentOutcome.PENDING:
        logger.info(
            "Event %s (%s) has no effect on orders",
            event.event_id,
            event.event_type,
        )
      else:
        order = await self._find_order(event)
        if order is None:
          raise ResourceNotFoundError(
              f"No order found for event {event.event_id}"
          )
        await order_state.apply_payment_outcome(
            self.session,
            self.reservations,
            order,
            event.outcome,
            transaction_id=event.transaction_id,
            event_type=event.event_type,
        )
      await db.mark_webhook_processed(self.session, event.event_id)
      await self.session.commit()
    except (CheckoutError, SQLAlchemyError) as e:
      await self.session.rollback()
      logger.error("Failed to apply event %s: %s", event.event_id, e)
      await db.mark_webhook_failed(self.session, event.event_id, str(e))
      await self.session.commit()
      raise InternalError(
          f"Failed to process event {event.event_id}"
      ) from e
    logger.info("Processed event %s (%s)", event.event_id, event.event_type)

  async def _find_order(self, event: PaymentEvent) -> Optional[db.Order]:
    """Finds the event's order, waiting for it with exponential backoff.

    The provider may call back before the checkout's own transaction is
    visible.
    """
    for attempt in range(self.lookup_attempts):
      order = None
      if event.order_id:
        order = await db.get_order(self.session, event.order_id)
      if order is None and event.transaction_id:
        order = await db.get_order_by_transaction(
            self.session, event.transaction_id
        )
      if order is not None:
        return order
      if attempt + 1 < self.lookup_attempts:
        # End the read so the next attempt sees newly committed rows.
        await self.session.rollback()
        delay = self.retry_base_seconds * (2**attempt)
        logger.info(
            "Order for event %s not found; retrying in %.2fs",
            event.event_id,
            delay,
        )
        await self._sleep(delay)
    return None
