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

"""Resolves orders left pending against their payment provider."""

import logging
from typing import Dict
from typing import Optional

import db
from enums import OrderStatus
from enums import PaymentOutcome
from enums import Provider
from exceptions import BadRequestError
from exceptions import ProviderUnavailableError
from exceptions import ResourceNotFoundError
from models import ReconcileResponse
from services import order_state
from services.payment_gateways import PaymentGateway
from services.reservations import ReservationService
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

RECONCILE_EVENT = "reconcile_order"

# Orders the provider may still settle.
RECONCILABLE_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.PROCESSING.value,
)


class Reconciler:
  """Service that asks the provider of record what happened to an order."""

  def __init__(
      self,
      session: AsyncSession,
      gateways: Dict[Provider, PaymentGateway],
      reservations: ReservationService,
  ):
    self.session = session
    self.gateways = gateways
    self.reservations = reservations

  async def reconcile(
      self, order_id: Optional[str], correlation_id: Optional[str] = None
  ) -> ReconcileResponse:
    """Reconciles one order.

    Only a pending or processing order with a provider reference is looked
    up; any other order is reported as is. A payment the provider still
    reports as in flight leaves the order where it is.

    Raises:
      BadRequestError: If order_id is missing.
      ResourceNotFoundError: If the order does not exist.
      ProviderUnavailableError: If the provider cannot be queried.
    """
    if not order_id:
      raise BadRequestError("order_id is required")
    order = await db.get_order(self.session, order_id)
    if order is None:
      raise ResourceNotFoundError(f"Order {order_id} not found")

    previous_status = order.status
    if (
        previous_status not in RECONCILABLE_STATUSES
        or not order.transaction_id
    ):
      logger.info(
          "Order %s (%s) needs no reconciliation", order_id, previous_status
      )
      return ReconcileResponse(
          order_id=order_id,
          previous_status=previous_status,
          new_status=previous_status,
          payment_synced=bool(await db.get_payments(self.session, order_id)),
          correlation_id=correlation_id,
      )

    gateway = self.gateways.get(Provider(order.provider))
    if gateway is None:
      raise ProviderUnavailableError(
          f"No gateway configured for {order.provider}"
      )
    outcome = await gateway.fetch_outcome(order.transaction_id)
    logger.info(
        "Provider reports %s for order %s (%s)",
        outcome.value,
        order_id,
        order.transaction_id,
    )
    if outcome == PaymentOutcome.PROCESSING:
      outcome = PaymentOutcome.PENDING

    new_status, _ = await order_state.apply_payment_outcome(
        self.session,
        self.reservations,
        order,
        outcome,
        event_type=RECONCILE_EVENT,
    )
    await self.session.commit()

    payment_synced = bool(await db.get_payments(self.session, order_id))
    if new_status != previous_status:
      logger.info(
          "Reconciled order %s: %s -> %s", order_id, previous_status, new_status
      )
    return ReconcileResponse(
        order_id=order_id,
        previous_status=previous_status,
        new_status=new_status,
        payment_synced=payment_synced,
        correlation_id=correlation_id,
    )
