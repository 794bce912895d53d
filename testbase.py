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

"""Shared fixtures for the checkout server tests.

Provides a test case base class backed by a temporary SQLite database with
the FastAPI dependencies overridden, a seeded catalog, and a fake Stripe
gateway that never leaves the process.
"""

import asyncio
import datetime
import hashlib
import hmac
import json
import os
import shutil
import tempfile
import time
from typing import Any, AsyncGenerator, Dict, List, Optional
import uuid

from absl import flags
from absl.testing import absltest
from absl.testing import flagsaver
import db
import dependencies
from enums import Channel
from enums import OrderStatus
from enums import PaymentOutcome
from enums import Provider
from exceptions import ProviderUnavailableError
from fastapi.testclient import TestClient
from server import app
from services.payment_gateways import CheckoutRoute
from services.payment_gateways import ProviderSession
from services.payment_gateways import StripeGateway
from services.payment_gateways import YampiGateway
from services.rate_limiter import RateLimiter
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

FLAGS = flags.FLAGS

ADMIN_KEY = "test-admin-key"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
YAMPI_WEBHOOK_SECRET = "yampi_test_secret"


def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET,
                     timestamp: Optional[int] = None) -> str:
  """Builds a Stripe-Signature header value for `payload`."""
  timestamp = timestamp or int(time.time())
  signed = f"{timestamp}.".encode("utf-8") + payload
  digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
  return f"t={timestamp},v1={digest}"


def stripe_event(
    event_type: str,
    obj: Dict[str, Any],
    event_id: Optional[str] = None,
) -> bytes:
  return json.dumps({
      "id": event_id or f"evt_{uuid.uuid4().hex}",
      "type": event_type,
      "data": {"object": obj},
  }).encode("utf-8")


class FakeStripeGateway(StripeGateway):
  """Stripe gateway whose provider calls are answered in memory.

  Signature verification and event parsing are the real ones.
  """

  def __init__(self):
    super().__init__(
        secret_key="sk_test_fake", webhook_secret=STRIPE_WEBHOOK_SECRET
    )
    self.created: List[str] = []
    self.outcomes: Dict[str, PaymentOutcome] = {}
    self.unavailable = False

  async def create_session(self, order, items, route, success_url, cancel_url):
    if self.unavailable:
      raise ProviderUnavailableError("Stripe error: APIConnectionError")
    self.created.append(order.id)
    if route.channel == Channel.INTERNAL:
      transaction_id = f"pi_fake_{order.id}"
      return ProviderSession(
          transaction_id=transaction_id,
          client_secret=f"{transaction_id}_secret",
      )
    transaction_id = f"cs_fake_{order.id}"
    return ProviderSession(
        transaction_id=transaction_id,
        redirect_url=f"https://checkout.stripe.test/{transaction_id}",
    )

  async def fetch_session(
      self, transaction_id: str, route: CheckoutRoute
  ) -> ProviderSession:
    if self.unavailable:
      raise ProviderUnavailableError("Stripe error: APIConnectionError")
    if transaction_id.startswith("cs_"):
      return ProviderSession(
          transaction_id=transaction_id,
          redirect_url=f"https://checkout.stripe.test/{transaction_id}",
      )
    return ProviderSession(
        transaction_id=transaction_id,
        client_secret=f"{transaction_id}_secret",
    )

  async def fetch_outcome(self, transaction_id: str) -> PaymentOutcome:
    if self.unavailable:
      raise ProviderUnavailableError("Stripe error: APIConnectionError")
    return self.outcomes.get(transaction_id, PaymentOutcome.PENDING)


class CheckoutTestCase(absltest.TestCase):
  """Base class: temporary DB, dependency overrides and a seeded catalog."""

  def setUp(self) -> None:
    super().setUp()
    if not FLAGS.is_parsed():
      FLAGS.mark_as_parsed()
    self.enter_context(
        flagsaver.flagsaver(
            admin_api_key=ADMIN_KEY,
            webhook_order_lookup_attempts=1,
            webhook_retry_base_seconds=0.0,
        )
    )

    # Create a temporary directory for the test database
    self.test_dir = tempfile.mkdtemp()
    db_url = f"sqlite+aiosqlite:///{os.path.join(self.test_dir, 'test.db')}"
    # Connections are not pooled: tests touch the DB from several loops.
    self.engine = create_async_engine(db_url, echo=False, poolclass=NullPool)
    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async def init_schema() -> None:
      async with self.engine.begin() as conn:
        await conn.run_sync(db.Base.metadata.create_all)

    asyncio.run(init_schema())

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
      async with self.session_factory() as session:
        yield session

    self.gateway = FakeStripeGateway()
    self.yampi_gateway = YampiGateway(
        api_url=None,
        user_token=None,
        secret_key=None,
        webhook_secret=YAMPI_WEBHOOK_SECRET,
    )
    self.rate_limiter = RateLimiter(30, 60.0)

    app.dependency_overrides[dependencies.get_db] = override_get_db
    app.dependency_overrides[dependencies.get_gateways] = lambda: {
        Provider.STRIPE: self.gateway,
        Provider.YAMPI: self.yampi_gateway,
    }
    app.dependency_overrides[dependencies.get_rate_limiter] = (
        lambda: self.rate_limiter
    )

    self.client = TestClient(app)
    asyncio.run(self._seed_catalog())

  def tearDown(self) -> None:
    app.dependency_overrides.clear()
    asyncio.run(self.engine.dispose())
    shutil.rmtree(self.test_dir)
    super().tearDown()

  async def _seed_catalog(self) -> None:
    async with self.session_factory() as session:
      session.add_all([
          db.Product(id="ring", name="Aurora Ring", base_price=10000),
          db.Product(
              id="necklace", name="Lumen Necklace", base_price=5000,
              sale_price=4500,
          ),
          db.Product(
              id="retired", name="Retired Bracelet", base_price=3000,
              is_active=False,
          ),
          db.ProductVariant(
              id="ring-14", product_id="ring", size="14", sku="RING-14",
              stock_quantity=5,
          ),
          db.ProductVariant(
              id="necklace-45", product_id="necklace", size="45cm",
              price_modifier=500, stock_quantity=2,
          ),
          db.ProductVariant(
              id="retired-u", product_id="retired", stock_quantity=10,
          ),
          db.Coupon(
              code="WELCOME10", discount_type="percentage",
              discount_value=10, uses_count=0, is_active=True,
          ),
      ])
      await session.commit()

  def run_async(self, coro):
    return asyncio.run(coro)

  def admin_headers(self) -> Dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_KEY}"}

  def start_payload(self, **overrides: Any) -> Dict[str, Any]:
    payload = {
        "route": "start",
        "request_id": str(uuid.uuid4()),
        "cart_id": f"cart_{uuid.uuid4().hex[:12]}",
        "items": [{"variant_id": "ring-14", "quantity": 1}],
        "shipping_cost": 0,
    }
    payload.update(overrides)
    return payload

  def start(self, **overrides: Any):
    return self.client.post("/checkout-router", json=self.start_payload(
        **overrides
    ))

  # --- DB inspection helpers ---

  async def _get_order(self, order_id: str) -> Optional[db.Order]:
    async with self.session_factory() as session:
      return await db.get_order(session, order_id)

  def get_order(self, order_id: str) -> Optional[db.Order]:
    return self.run_async(self._get_order(order_id))

  async def _get_stock(self, variant_id: str) -> Optional[int]:
    async with self.session_factory() as session:
      return await db.get_stock(session, variant_id)

  def get_stock(self, variant_id: str) -> Optional[int]:
    return self.run_async(self._get_stock(variant_id))

  async def _count(self, model) -> int:
    async with self.session_factory() as session:
      result = await session.execute(select(model))
      return len(result.scalars().all())

  def count(self, model) -> int:
    return self.run_async(self._count(model))

  async def _get_payments(self, order_id: str) -> List[db.Payment]:
    async with self.session_factory() as session:
      return await db.get_payments(session, order_id)

  def get_payments(self, order_id: str) -> List[db.Payment]:
    return self.run_async(self._get_payments(order_id))

  async def _get_reservations(self, order_id: str) -> List[db.Reservation]:
    async with self.session_factory() as session:
      return await db.get_reservations(session, order_id=order_id)

  def get_reservations(self, order_id: str) -> List[db.Reservation]:
    return self.run_async(self._get_reservations(order_id))

  async def _create_order(
      self,
      status: OrderStatus = OrderStatus.PENDING,
      transaction_id: Optional[str] = None,
      variant_id: str = "ring-14",
      quantity: int = 1,
      reserve: bool = True,
      expires_in: datetime.timedelta = datetime.timedelta(minutes=15),
      created_ago: datetime.timedelta = datetime.timedelta(0),
  ) -> str:
    """Inserts an order the way the router leaves it, bypassing HTTP."""
    now = db.utcnow()
    order_id = db.new_id()
    async with self.session_factory() as session:
      session.add(
          db.Order(
              id=order_id,
              cart_id=f"cart_{order_id}",
              status=status.value,
              subtotal=10000 * quantity,
              discount_amount=0,
              shipping_cost=0,
              total_amount=10000 * quantity,
              provider=Provider.STRIPE.value,
              channel=Channel.INTERNAL.value,
              experience="transparent",
              transaction_id=transaction_id,
              access_token="token",
              created_at=now - created_ago,
              updated_at=now - created_ago,
          )
      )
      await session.flush()
      if reserve:
        assert await db.reserve_stock(session, variant_id, quantity)
        session.add(
            db.Reservation(
                id=db.new_id(),
                variant_id=variant_id,
                cart_id=f"cart_{order_id}",
                order_id=order_id,
                quantity=quantity,
                status="active",
                created_at=now,
                expires_at=now + expires_in,
            )
        )
      await session.commit()
    return order_id

  def create_order(self, **kwargs: Any) -> str:
    return self.run_async(self._create_order(**kwargs))
