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

"""Utility script to dump orders with their items, reservations and payments.

This script reads from the configured checkout SQLite database and prints a
summary of every order, including its status, provider reference, line items,
inventory reservations and recorded payments. It is useful for debugging and
verifying the state of the server.

Usage:
  uv run dump_orders.py --db_path=... [--status=pending]
"""

import asyncio
import sys

from absl import app as absl_app
from absl import flags
import db
from db import Order
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker

FLAGS = flags.FLAGS
flags.DEFINE_string("db_path", None, "Path to the checkout DB")
flags.DEFINE_string("status", None, "Only show orders in this status")


def _money(cents) -> str:
  return f"{(cents or 0) / 100.0:.2f}"


async def dump_orders():
  """Queries the database and prints all orders."""
  if not FLAGS.db_path:
    print("Error: --db_path is required.")
    sys.exit(1)

  db_url = f"sqlite+aiosqlite:///{FLAGS.db_path}"
  engine = create_async_engine(db_url, echo=False)
  session_factory = sessionmaker(
      engine, expire_on_commit=False, class_=AsyncSession
  )

  try:
    async with session_factory() as session:
      stmt = select(Order).order_by(Order.created_at)
      if FLAGS.status:
        stmt = stmt.where(Order.status == FLAGS.status)
      orders = (await session.execute(stmt)).scalars().all()

      if not orders:
        print("No orders found.")
        return

      for order in orders:
        print(
            f"Order: {order.id} [{order.status}] cart={order.cart_id}"
            f" via {order.provider}/{order.channel}/{order.experience}"
        )
        print(
            f"  Subtotal {_money(order.subtotal)} - discount"
            f" {_money(order.discount_amount)} + shipping"
            f" {_money(order.shipping_cost)} = {_money(order.total_amount)}"
        )
        if order.transaction_id:
          print(f"  Provider reference: {order.transaction_id}")
        for item in await db.get_order_items(session, order.id):
          print(
              f"  - {item.product_name} ({item.variant_id}) x{item.quantity}"
              f" @ {_money(item.unit_price)} = {_money(item.total_price)}"
          )
        for reservation in await db.get_reservations(
            session, order_id=order.id
        ):
          print(
              f"  Reservation {reservation.variant_id} x{reservation.quantity}"
              f" [{reservation.status}] expires {reservation.expires_at}"
          )
        for payment in await db.get_payments(session, order.id):
          print(
              f"  Payment {payment.transaction_id} {_money(payment.amount)}"
              f" [{payment.status}]"
          )
        print("-" * 60)
  finally:
    await engine.dispose()


def main(argv):
  """Main entry point for the order dump script."""
  del argv
  asyncio.run(dump_orders())


if __name__ == "__main__":
  absl_app.run(main)
