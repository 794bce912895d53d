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

"""Calls the server's /release-expired-reservations endpoint once.

Meant to run from a scheduler every few minutes; the endpoint is idempotent.

Usage:
  uv run release_reservations.py --server_url=... --admin_api_key=...
"""

import asyncio
import logging
import sys

from absl import app as absl_app
from absl import flags
import httpx

FLAGS = flags.FLAGS
flags.DEFINE_string(
    "server_url", "http://localhost:8080", "Base URL of the checkout server"
)
flags.DEFINE_string("admin_api_key", None, "Admin bearer token")
flags.DEFINE_float("timeout", 30.0, "Timeout of the release call")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def release_expired() -> None:
  """Triggers the release and prints what was freed."""
  if not FLAGS.admin_api_key:
    print("Error: --admin_api_key is required.")
    sys.exit(1)

  url = f"{FLAGS.server_url.rstrip('/')}/release-expired-reservations"
  try:
    async with httpx.AsyncClient(timeout=FLAGS.timeout) as client:
      response = await client.post(
          url, headers={"Authorization": f"Bearer {FLAGS.admin_api_key}"}
      )
      response.raise_for_status()
      data = response.json()
  except (httpx.HTTPError, ValueError) as e:
    logger.error("Release of expired reservations failed: %s", e)
    sys.exit(1)

  print(
      f"Released {data.get('released', 0)} expired reservations;"
      f" order_ids: {data.get('order_ids', [])}"
  )


def main(argv) -> None:
  """Main entry point for the reservation cleanup."""
  del argv
  asyncio.run(release_expired())


if __name__ == "__main__":
  absl_app.run(main)
