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

"""In-process sliding window rate limiter."""

import collections
import logging
import math
import threading
import time
from typing import Callable
from typing import Deque
from typing import Dict

from exceptions import RateLimitedError

logger = logging.getLogger(__name__)


class RateLimiter:
  """Allows at most `max_requests` per key within `window_seconds`.

  Each key keeps the timestamps of its recent requests. Checks are serialized
  by a lock so concurrent requests cannot both take the last slot.
  """

  def __init__(
      self,
      max_requests: int,
      window_seconds: float,
      clock: Callable[[], float] = time.monotonic,
  ):
    self.max_requests = max_requests
    self.window_seconds = window_seconds
    self._clock = clock
    self._buckets: Dict[str, Deque[float]] = {}
    self._lock = threading.Lock()

  @staticmethod
  def key_for(cart_id: str, ip: str) -> str:
    return f"{cart_id}|{ip}"

  def hit(self, key: str) -> float:
    """Records a request for `key`.

    Returns:
      0 when the request is allowed, else the seconds until a slot frees up.
    """
    with self._lock:
      now = self._clock()
      bucket = self._buckets.setdefault(key, collections.deque())
      while bucket and bucket[0] <= now - self.window_seconds:
        bucket.popleft()
      if len(bucket) >= self.max_requests:
        return bucket[0] + self.window_seconds - now
      bucket.append(now)
      self._prune(now)
      return 0.0

  def check(self, cart_id: str, ip: str) -> None:
    """Raises RateLimitedError if (cart_id, ip) exhausted its budget."""
    retry_after = self.hit(self.key_for(cart_id, ip))
    if retry_after > 0:
      logger.warning("Rate limit exceeded for cart %s from %s", cart_id, ip)
      raise RateLimitedError(
          "Too many requests", retry_after=max(1, math.ceil(retry_after))
      )

  def reset(self) -> None:
    with self._lock:
      self._buckets.clear()

  def _prune(self, now: float) -> None:
    # Drop idle keys once the table grows, so one-off carts do not pile up.
    if len(self._buckets) < 10000:
      return
    stale = [
        key
        for key, bucket in self._buckets.items()
        if not bucket or bucket[-1] <= now - self.window_seconds
    ]
    for key in stale:
      del self._buckets[key]
