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

"""Utility script to dump request logs from the database.

This script reads and displays the checkout router requests stored in the
checkout DB. It provides details such as timestamp, method, URL, correlation
id and payload for each request. It can optionally look up and display the
status of the order created for the request's cart.

Usage:
  uv run dump_log.py --db_path=... [--show_order]
"""

import asyncio
import json
import sys

from absl import app as absl_app
from absl import flags
import db
from db import RequestLog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker

FLAGS = flags.FLAGS
flags.DEFINE_string("db_path", None, "Path to the checkout DB")
flags.DEFINE_bool("show_order", False, "Show the correlated order status")


async def dump_logs():
  """Queries the database and prints request logs."""
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
      print("=== REQUEST LOGS ===")
      result = await session.execute(select(RequestLog).order_by(RequestLog.id))
      logs = result.scalars().all()

      if not logs:
        print("No request logs found.")
        return

      for log in logs:
        print(f"[{log.timestamp}] {log.method} {log.url}")
        if log.correlation_id:
          print(f"  Request ID: {log.correlation_id}")
        if log.cart_id:
          print(f"  Cart ID: {log.cart_id}")

          if FLAGS.show_order:
            order = await db.get_order_by_cart(session, log.cart_id)
            if order:
              print(f"  Order: {order.id} ({order.status})")

        if log.payload:
          print(f"  Payload: {json.dumps(log.payload, indent=2)}")
        print("-" * 40)
  finally:
    await engine.dispose()


def main(argv):
  """Main entry point for the log dump script."""
  del argv
  asyncio.run(dump_logs())


if __name__ == "__main__":
  absl_app.run(main)
