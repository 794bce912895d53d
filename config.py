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

"""Shared configuration, logging and startup logic for the checkout server."""

import contextlib
import contextvars
import logging
from typing import Optional

from absl import flags
import db
from fastapi import FastAPI

FLAGS = flags.FLAGS

SERVER_VERSION = "1.0.0"

LOG_FORMAT = (
    "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"
)

# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string("db_path", None, "Path to the checkout SQLite DB")
  flags.DEFINE_string(
      "database_url",
      None,
      "SQLAlchemy async database URL; takes precedence over --db_path",
  )
  flags.DEFINE_integer("port", None, "Port to run the server on")
  flags.DEFINE_string(
      "admin_api_key",
      None,
      "Bearer token required by reconcile, reprocess, release and settings"
      " endpoints",
  )
  flags.DEFINE_string(
      "public_base_url",
      "http://localhost:8080",
      "Storefront URL used to build provider return URLs",
  )
  flags.DEFINE_string("currency", "brl", "ISO currency code for charges")
  flags.DEFINE_string("stripe_secret_key", None, "Stripe secret API key")
  flags.DEFINE_string(
      "stripe_webhook_secret", None, "Stripe webhook signing secret"
  )
  flags.DEFINE_string(
      "yampi_api_url", None, "Base URL of the Yampi store API"
  )
  flags.DEFINE_string("yampi_user_token", None, "Yampi API user token")
  flags.DEFINE_string("yampi_secret_key", None, "Yampi API secret key")
  flags.DEFINE_string(
      "yampi_webhook_secret", None, "Yampi webhook HMAC secret"
  )
  flags.DEFINE_integer(
      "rate_limit_max_requests",
      30,
      "Router requests allowed per (cart_id, ip) within the window",
  )
  flags.DEFINE_float(
      "rate_limit_window_seconds", 60.0, "Rate limiter sliding window"
  )
  flags.DEFINE_integer(
      "idempotency_retention_hours", 24, "How long request_id results live"
  )
  flags.DEFINE_float(
      "idempotency_claim_timeout_seconds",
      60.0,
      "Age after which an unfinished request_id claim may be taken over",
  )
  flags.DEFINE_integer(
      "reservation_ttl_minutes", 15, "Lifetime of an inventory reservation"
  )
  flags.DEFINE_float(
      "router_timeout_seconds", 20.0, "End-to-end budget of a router call"
  )
  flags.DEFINE_float(
      "provider_timeout_seconds", 10.0, "Timeout of a single provider call"
  )
  flags.DEFINE_integer(
      "webhook_order_lookup_attempts",
      3,
      "Attempts to find the order of a webhook event before failing it",
  )
  flags.DEFINE_float(
      "webhook_retry_base_seconds",
      0.5,
      "Base delay of the exponential backoff between order lookups",
  )
except flags.DuplicateFlagError:
  pass


# Correlation id of the request being served, set by the HTTP middleware.
correlation_id_var: contextvars.ContextVar[Optional[str]] = (
    contextvars.ContextVar("correlation_id", default=None)
)


class CorrelationIdFilter(logging.Filter):
  """Stamps every record with the correlation id of the current request."""

  def filter(self, record: logging.LogRecord) -> bool:
    record.correlation_id = correlation_id_var.get() or "-"
    return True


def configure_logging(level: int = logging.INFO) -> None:
  """Configures root logging with the correlation id in every line."""
  logging.basicConfig(level=level, format=LOG_FORMAT)
  for handler in logging.getLogger().handlers:
    if not any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
      handler.addFilter(CorrelationIdFilter())


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Shared lifespan manager for initializing the database."""
  del app  # Unused.
  # In tests the flag is unset and sessions come from dependency overrides.
  db_path = FLAGS["db_path"].value
  database_url = FLAGS["database_url"].value
  if db_path or database_url:
    await db.manager.init_db(db_path, database_url)
  yield
  await db.manager.close()
