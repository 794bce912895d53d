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

"""FastAPI dependencies for the checkout server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Database session management.
- Payment gateway construction from the configured credentials.
- The process-wide rate limiter.
- Admin bearer token verification and client IP extraction.
- Service instantiation (router, reconciler, webhook processor, settings).
"""

import datetime
import secrets
from typing import AsyncGenerator, Dict, Optional

import config
import db
from enums import Provider
from exceptions import UnauthorizedError
from fastapi import Depends
from fastapi import Header
from fastapi import Request
from services.checkout_router import CheckoutRouter
from services.idempotency import IdempotencyGuard
from services.payment_gateways import PaymentGateway
from services.payment_gateways import StripeGateway
from services.payment_gateways import YampiGateway
from services.rate_limiter import RateLimiter
from services.reconciler import Reconciler
from services.reservations import ReservationService
from services.settings_service import SettingsService
from services.webhook_processor import WebhookProcessor
from sqlalchemy.ext.asyncio import AsyncSession

_rate_limiter: Optional[RateLimiter] = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for a database session."""
  async with db.manager.session_factory() as session:
    yield session


def get_gateways() -> Dict[Provider, PaymentGateway]:
  """Dependency provider for the payment gateways, keyed by provider."""
  flags = config.FLAGS
  return {
      Provider.STRIPE: StripeGateway(
          secret_key=flags.stripe_secret_key,
          webhook_secret=flags.stripe_webhook_secret,
          currency=flags.currency,
          timeout=flags.provider_timeout_seconds,
      ),
      Provider.YAMPI: YampiGateway(
          api_url=flags.yampi_api_url,
          user_token=flags.yampi_user_token,
          secret_key=flags.yampi_secret_key,
          webhook_secret=flags.yampi_webhook_secret,
          timeout=flags.provider_timeout_seconds,
      ),
  }


def get_rate_limiter() -> RateLimiter:
  """Dependency provider for the process-wide rate limiter."""
  global _rate_limiter
  if _rate_limiter is None:
    _rate_limiter = RateLimiter(
        config.FLAGS.rate_limit_max_requests,
        config.FLAGS.rate_limit_window_seconds,
    )
  return _rate_limiter


async def verify_admin(
    authorization: Optional[str] = Header(None),
) -> None:
  """Requires `Authorization: Bearer <admin_api_key>`."""
  expected = config.FLAGS.admin_api_key
  if not expected:
    # No key configured means no administrative access at all.
    raise UnauthorizedError("Admin access is not configured")
  scheme, _, token = (authorization or "").partition(" ")
  if scheme.lower() != "bearer" or not secrets.compare_digest(
      token.strip(), expected
  ):
    raise UnauthorizedError("Invalid or missing bearer token")


def get_client_ip(request: Request) -> str:
  """Returns the caller's IP, preferring the first X-Forwarded-For hop."""
  forwarded = request.headers.get("x-forwarded-for")
  if forwarded:
    first = forwarded.split(",")[0].strip()
    if first:
      return first
  if request.client and request.client.host:
    return request.client.host
  return "unknown"


def get_reservation_service(
    session: AsyncSession = Depends(get_db),
) -> ReservationService:
  """Dependency provider for ReservationService."""
  return ReservationService(
      session,
      datetime.timedelta(minutes=config.FLAGS.reservation_ttl_minutes),
  )


def get_idempotency_guard(
    session: AsyncSession = Depends(get_db),
) -> IdempotencyGuard:
  """Dependency provider for IdempotencyGuard."""
  return IdempotencyGuard(
      session,
      retention=datetime.timedelta(
          hours=config.FLAGS.idempotency_retention_hours
      ),
      claim_timeout=datetime.timedelta(
          seconds=config.FLAGS.idempotency_claim_timeout_seconds
      ),
  )


def get_checkout_router(
    session: AsyncSession = Depends(get_db),
    gateways: Dict[Provider, PaymentGateway] = Depends(get_gateways),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
    reservations: ReservationService = Depends(get_reservation_service),
) -> CheckoutRouter:
  """Dependency provider for CheckoutRouter."""
  return CheckoutRouter(
      session,
      gateways,
      rate_limiter,
      guard,
      reservations,
      config.FLAGS.public_base_url,
  )


def get_reconciler(
    session: AsyncSession = Depends(get_db),
    gateways: Dict[Provider, PaymentGateway] = Depends(get_gateways),
    reservations: ReservationService = Depends(get_reservation_service),
) -> Reconciler:
  """Dependency provider for Reconciler."""
  return Reconciler(session, gateways, reservations)


def get_webhook_processor(
    session: AsyncSession = Depends(get_db),
    gateways: Dict[Provider, PaymentGateway] = Depends(get_gateways),
    reservations: ReservationService = Depends(get_reservation_service),
) -> WebhookProcessor:
  """Dependency provider for WebhookProcessor."""
  return WebhookProcessor(
      session,
      gateways,
      reservations,
      lookup_attempts=config.FLAGS.webhook_order_lookup_attempts,
      retry_base_seconds=config.FLAGS.webhook_retry_base_seconds,
  )


def get_settings_service(
    session: AsyncSession = Depends(get_db),
) -> SettingsService:
  """Dependency provider for SettingsService."""
  return SettingsService(session)
