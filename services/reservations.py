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

"""Inventory reservation ledger.

A reservation is an atomic decrement of a variant's available stock tied to
an order. It ends in one of two ways: consumed when the order is paid, or
released (stock restored) when the order fails, is cancelled, or the
reservation outlives its TTL.
"""

import datetime
import logging
from typing import Any
from typing import Dict
from typing import List

import db
from enums import OrderStatus
from enums import ReservationStatus
from exceptions import OutOfStockError
from services.pricing import PricedLine
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class ReservationService:
  """Reserves, consumes and releases stock. Callers own the transaction."""

  def __init__(self, session: AsyncSession, ttl: datetime.timedelta):
    self.session = session
    self.ttl = ttl

  async def reserve_order(
      self, order_id: str, cart_id: str, lines: List[PricedLine]
  ) -> List[db.Reservation]:
    """Replaces the order's open reservations with fresh ones for `lines`.

    Raises:
      OutOfStockError: If a line cannot be covered by the available stock.
    """
    previous = await db.get_reservations(self.session, order_id=order_id)
    superseded = []
    for reservation in previous:
      if reservation.status == ReservationStatus.CONSUMED.value:
        continue
      if reservation.status == ReservationStatus.ACTIVE.value:
        await self._release(reservation)
      superseded.append(reservation.id)
    await db.delete_reservations(self.session, superseded)

    reservations = []
    for line in lines:
      if not await db.reserve_stock(
          self.session, line.variant_id, line.quantity
      ):
        logger.warning(
            "Insufficient stock for variant %s (cart %s, qty %s)",
            line.variant_id,
            cart_id,
            line.quantity,
        )
        raise OutOfStockError(
            f"Insufficient stock for item {line.variant_id}"
        )
      reservations.append(
          await db.add_reservation(
              self.session,
              line.variant_id,
              cart_id,
              order_id,
              line.quantity,
              self.ttl,
          )
      )
    return reservations

  async def release_for_order(self, order_id: str) -> int:
    """Releases every active reservation of an order."""
    released = 0
    for reservation in await db.get_reservations(
        self.session, order_id=order_id, status=ReservationStatus.ACTIVE
    ):
      if await self._release(reservation):
        released += 1
    if released:
      logger.info("Released %s reservations of order %s", released, order_id)
    return released

  async def consume_for_order(self, order_id: str) -> int:
    """Marks an order's reservations consumed after payment.

    Reservations the sweeper already released are taken again from stock;
    if that stock is gone in the meantime the shortfall is logged.
    """
    consumed = 0
    for reservation in await db.get_reservations(
        self.session, order_id=order_id
    ):
      if reservation.status == ReservationStatus.ACTIVE.value:
        if await db.transition_reservation(
            self.session, reservation.id, ReservationStatus.CONSUMED
        ):
          consumed += 1
      elif reservation.status == ReservationStatus.RELEASED.value:
        if not await db.transition_reservation(
            self.session,
            reservation.id,
            ReservationStatus.CONSUMED,
            from_status=ReservationStatus.RELEASED,
        ):
          continue
        consumed += 1
        if not await db.reserve_stock(
            self.session, reservation.variant_id, reservation.quantity
        ):
          logger.error(
              "Paid order %s oversold variant %s by up to %s units",
              order_id,
              reservation.variant_id,
              reservation.quantity,
          )
    return consumed

  async def release_expired(self) -> Dict[str, Any]:
    """Releases reservations past their TTL and cancels abandoned orders.

    An order is cancelled only while it is still pending and no provider
    charge was started for it. Running twice releases nothing the second
    time.

    Returns:
      {"released": count, "order_ids": affected orders}
    """
    released = 0
    order_ids = set()
    for reservation in await db.get_expired_reservations(
        self.session, db.utcnow()
    ):
      if await self._release(reservation):
        released += 1
        order_ids.add(reservation.order_id)

    for order_id in sorted(order_ids):
      if await db.transition_order_status(
          self.session,
          order_id,
          [OrderStatus.PENDING],
          OrderStatus.CANCELLED,
          unclaimed_only=True,
      ):
        logger.info("Cancelled abandoned order %s", order_id)
        released += await self.release_for_order(order_id)

    await self.session.commit()
    if released:
      logger.info(
          "Released %s expired reservations across %s orders",
          released,
          len(order_ids),
      )
    return {"released": released, "order_ids": sorted(order_ids)}

  async def _release(self, reservation: db.Reservation) -> bool:
    if not await db.transition_reservation(
        self.session, reservation.id, ReservationStatus.RELEASED
    ):
      return False
    await db.restore_stock(
        self.session, reservation.variant_id, reservation.quantity
    )
    return True
