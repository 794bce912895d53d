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

"""Order status transitions driven by payment outcomes.

Webhooks and the reconciler both land here, so an order converges to the
same state whichever of them observes the payment first.
"""

import logging
from typing import Optional
from typing import Tuple

import db
from enums import ALLOWED_TRANSITIONS
from enums import OrderStatus
from enums import PaymentOutcome
from services.reservations import ReservationService
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

OUTCOME_STATUS = {
    PaymentOutcome.SUCCEEDED: OrderStatus.PAID,
    PaymentOutcome.PROCESSING: OrderStatus.PROCESSING,
    PaymentOutcome.FAILED: OrderStatus.FAILED,
    PaymentOutcome.CANCELED: OrderStatus.CANCELLED,
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
  return target in ALLOWED_TRANSITIONS.get(current, frozenset())


async def transition(
    session: AsyncSession,
    order_id: str,
    allowed_from,
    to: OrderStatus,
    **values,
) -> bool:
  """Moves an order to `to` only from one of `allowed_from`.

  Sources that may not reach `to` are dropped, so terminal statuses never
  change.
  """
  sources = [s for s in allowed_from if can_transition(s, to)]
  if not sources:
    return False
  return await db.transition_order_status(
      session, order_id, sources, to, **values
  )


async def apply_payment_outcome(
    session: AsyncSession,
    reservations: ReservationService,
    order: db.Order,
    outcome: Optional[PaymentOutcome],
    transaction_id: Optional[str] = None,
    event_type: Optional[str] = None,
) -> Tuple[str, bool]:
  """Applies a provider payment outcome to an order. Does not commit.

  Args:
    session: The database session to use.
    reservations: Ledger used to consume or release the order's stock.
    order: The order, as last read.
    outcome: The provider's verdict; None or pending leaves the order as is.
    transaction_id: Provider reference of the payment, when known.
    event_type: Webhook event type to record on the order.

  Returns:
    (status after the call, whether a Payment row was written)
  """
  target = OUTCOME_STATUS.get(outcome) if outcome else None
  current = OrderStatus(order.status)
  reference = transaction_id or order.transaction_id

  if target is None:
    return current.value, False

  if current == target:
    if target == OrderStatus.PAID:
      return current.value, await _record_payment(session, order, reference)
    return current.value, False

  if not can_transition(current, target):
    logger.info(
        "Ignoring %s for order %s in status %s",
        outcome.value,
        order.id,
        current.value,
    )
    return current.value, False

  values = {}
  if event_type:
    values["last_webhook_event"] = event_type
  if transaction_id and not order.transaction_id:
    values["transaction_id"] = transaction_id
  if not await transition(session, order.id, [current], target, **values):
    # Someone else moved the order first; report what it is now.
    fresh = await db.get_order(session, order.id)
    logger.info(
        "Order %s changed concurrently to %s", order.id, fresh.status
    )
    return fresh.status, False

  logger.info(
      "Order %s: %s -> %s (%s)",
      order.id,
      current.value,
      target.value,
      event_type or "reconcile",
  )
  payment_synced = False
  if target == OrderStatus.PAID:
    await reservations.consume_for_order(order.id)
    payment_synced = await _record_payment(session, order, reference)
    if order.coupon_code and not await db.increment_coupon_uses(
        session, order.coupon_code
    ):
      logger.warning(
          "Coupon %s exceeded its use limit on order %s",
          order.coupon_code,
          order.id,
      )
  elif target in (OrderStatus.FAILED, OrderStatus.CANCELLED):
    await reservations.release_for_order(order.id)
  return target.value, payment_synced


async def _record_payment(
    session: AsyncSession, order: db.Order, reference: Optional[str]
) -> bool:
  if await db.get_payments(session, order.id):
    return False
  return await db.save_payment_once(
      session,
      transaction_id=reference or f"order_{order.id}",
      order_id=order.id,
      provider=order.provider,
      amount=order.total_amount,
      status=OrderStatus.PAID.value,
  )
