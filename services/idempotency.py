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

"""Request-level and order-level deduplication.

`IdempotencyGuard` makes a `request_id` execute at most once: the first call
claims the key, later calls with the same body replay the stored response and
calls with a different body are rejected. `already_charged` is the order-level
check that keeps a second provider charge from being started.
"""

import datetime
import hashlib
import json
import logging
from typing import Any
from typing import Dict
from typing import Optional

import db
from enums import CHARGED_STATUSES
from enums import IdempotencyState
from enums import OrderStatus
from exceptions import IdempotencyConflictError
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def compute_request_hash(data: Any) -> str:
  """Computes SHA256 hash of the JSON-serialized data."""
  if isinstance(data, BaseModel):
    # sort_keys is not supported in model_dump_json, so dump to a dict first.
    json_str = json.dumps(data.model_dump(mode="json"), sort_keys=True)
  else:
    json_str = json.dumps(data, sort_keys=True, default=str)
  return hashlib.sha256(json_str.encode("utf-8")).hexdigest()


def already_charged(status: Optional[str], provider_ref: Optional[str]) -> bool:
  """Whether an order has, or may have, a charge at its provider.

  An order counts as charged once it reached a charged status or as soon as
  a provider reference was recorded for it, whatever its status.
  """
  if provider_ref:
    return True
  if not status:
    return False
  try:
    return OrderStatus(status) in CHARGED_STATUSES
  except ValueError:
    return False


class IdempotencyGuard:
  """Claims, replays and completes `request_id` executions."""

  def __init__(
      self,
      session: AsyncSession,
      retention: datetime.timedelta,
      claim_timeout: datetime.timedelta,
  ):
    self.session = session
    self.retention = retention
    self.claim_timeout = claim_timeout

  async def begin(
      self, key: str, request_hash: str
  ) -> Optional[Dict[str, Any]]:
    """Claims `key` for this request.

    Args:
      key: The caller-supplied request_id.
      request_hash: Hash of the request body.

    Returns:
      The stored response body when the request already completed, or None
      once the key is claimed and the caller should execute.

    Raises:
      IdempotencyConflictError: If the key was used with another body, or a
        concurrent request holds it.
    """
    # Two passes: a lost insert race is resolved by re-reading the winner.
    for _ in range(2):
      now = db.utcnow()
      record = await db.get_idempotency_record(self.session, key)
      if record and record.created_at < now - self.retention:
        logger.info("Dropping expired idempotency record %s", key)
        await db.delete_idempotency_record(self.session, key)
        await self.session.commit()
        record = None

      if record:
        if record.request_hash != request_hash:
          raise IdempotencyConflictError(
              "Idempotency key reused with different parameters"
          )
        if record.state == IdempotencyState.COMPLETED.value:
          logger.info("Replaying stored response for request %s", key)
          return record.response_body
        if await db.take_over_idempotency_claim(
            self.session, key, now - self.claim_timeout
        ):
          await self.session.commit()
          logger.warning("Took over abandoned claim for request %s", key)
          return None
        raise IdempotencyConflictError("Request is already in progress")

      if await db.claim_idempotency_record(self.session, key, request_hash):
        return None

    raise IdempotencyConflictError("Request is already in progress")

  async def complete(
      self, key: str, response_status: int, response_body: Dict[str, Any]
  ) -> None:
    await db.complete_idempotency_record(
        self.session, key, response_status, response_body
    )
    await self.session.commit()

  async def abandon(self, key: str) -> None:
    """Releases a claim after a failed execution so the caller may retry."""
    await self.session.rollback()
    await db.delete_idempotency_record(self.session, key)
    await self.session.commit()

  async def purge_expired(self) -> int:
    purged = await db.purge_idempotency_records(
        self.session, db.utcnow() - self.retention
    )
    await self.session.commit()
    if purged:
      logger.info("Purged %s expired idempotency records", purged)
    return purged
