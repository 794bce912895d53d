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

"""Batch reconciliation of stale orders.

Selects orders that are still pending or processing, already have a
provider reference and are older than --hours, and asks the server's
/reconcile-order endpoint to resolve each one. Individual failures are
logged and skipped.

Usage:
  uv run reconcile_stale.py --db_path=... --server_url=... \
  --admin_api_key=... [--hours=2]
"""

import asyncio
import dataclasses
import datetime
import logging
import sys
from typing import Optional

from absl import app as absl_app
from absl import flags
# config defines the shared db_path and admin_api_key flags.
import config  # pylint: disable=unused-import
import db
import httpx

FLAGS = flags.FLAGS
flags.DEFINE_string(
    "server_url", "http://localhost:8080", "Base URL of the checkout server"
)
flags.DEFINE_float("hours", 2.0, "Minimum age of an unsettled order")
flags.DEFINE_float("timeout", 30.0, "Timeout of each reconcile call")

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class SweepResult:
  """What a reconciliation sweep did.

  Attributes:
    selected: Stale orders found.
    checked: Orders the server answered for.
    changed: Orders whose status the server changed.
  """

  selected: int = 0
  checked: int = 0
  changed: int = 0


async def reconcile_stale(
    session_factory,
    server_url: str,
    admin_api_key: str,
    hours: float,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SweepResult:
  """Reconciles every stale order through the server."""
  cutoff = db.utcnow() - datetime.timedelta(hours=hours)
  async with session_factory() as session:
    orders = await db.list_stale_pending_orders(session, cutoff)
  order_ids = [order.id for order in orders]
  logger.info("Found %s unsettled orders older than %sh", len(order_ids), hours)

  result = SweepResult(selected=len(order_ids))
  headers = {"Authorization": f"Bearer {admin_api_key}"}
  async with httpx.AsyncClient(
      base_url=server_url.rstrip("/"), timeout=timeout, transport=transport
  ) as client:
    for order_id in order_ids:
      try:
        response = await client.post(
            "/reconcile-order", json={"order_id": order_id}, headers=headers
        )
        response.raise_for_status()
        data = response.json()
      except (httpx.HTTPError, ValueError) as e:
        logger.error("Reconcile of order %s failed: %s", order_id, e)
        continue
      if not data.get("ok"):
        logger.error("Reconcile of order %s was refused: %s", order_id, data)
        continue
      result.checked += 1
      previous_status = data.get("previous_status")
      new_status = data.get("new_status")
      if new_status == previous_status:
        logger.info("Order %s is still %s", order_id, previous_status)
        continue
      result.changed += 1
      logger.info("Order %s: %s -> %s", order_id, previous_status, new_status)
  return result


async def run() -> None:
  if not FLAGS.db_path or not FLAGS.admin_api_key:
    print("Error: --db_path and --admin_api_key are required.")
    sys.exit(1)
  await db.manager.init_db(FLAGS.db_path)
  try:
    result = await reconcile_stale(
        db.manager.session_factory,
        FLAGS.server_url,
        FLAGS.admin_api_key,
        FLAGS.hours,
        timeout=FLAGS.timeout,
    )
  finally:
    await db.manager.close()
  print(
      f"reconciled {result.changed}/{result.selected} orders older than"
      f" {FLAGS.hours}h; {result.checked - result.changed} still unsettled,"
      f" {result.selected - result.checked} failed"
  )


def main(argv) -> None:
  """Main entry point for the reconciliation sweep."""
  del argv
  logging.basicConfig(level=logging.INFO)
  asyncio.run(run())


if __name__ == "__main__":
  absl_app.run(main)
