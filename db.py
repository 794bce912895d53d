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

"""Database management and persistence layer for the checkout core.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the server. It utilizes SQLAlchemy
with SQLite (via aiosqlite).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup.
- WAL Mode: Automatically enables SQLite Write-Ahead Logging so the server
  and the batch scripts can share the database.
- Declarative Models: Defines tables for the catalog, orders, inventory
  reservations, checkout settings, webhook events, payments, request logging
  and idempotency tracking.
- Data Access Helpers: Asynchronous functions for reads and for the
  conditional writes (stock decrements, status transitions, charge claims)
  that keep concurrent checkouts consistent.
"""

import datetime
import logging
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Tuple
import uuid

from enums import Channel
from enums import Experience
from enums import IdempotencyState
from enums import OrderStatus
from enums import Provider
from enums import ReservationStatus
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import delete
from sqlalchemy import DateTime
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy import Text
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

# Seconds SQLite waits on a locked database before failing a write.
SQLITE_BUSY_TIMEOUT = 15


def utcnow() -> datetime.datetime:
  """Naive UTC timestamp; every datetime column stores naive UTC."""
  return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
  return str(uuid.uuid4())


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(
      self, db_path: Optional[str] = None, database_url: Optional[str] = None
  ) -> None:
    """Initializes the database engine and creates tables.

    Args:
      db_path: Path of a SQLite file, used when no URL is given.
      database_url: Any SQLAlchemy async database URL.
    """
    url = database_url or f"sqlite+aiosqlite:///{db_path}"
    is_sqlite = url.startswith("sqlite")
    self.engine = create_async_engine(
        url,
        echo=False,
        connect_args={"timeout": SQLITE_BUSY_TIMEOUT} if is_sqlite else {},
    )

    if is_sqlite:
      async with self.engine.connect() as conn:
        await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


# --- Catalog ---


class Product(Base):
  __tablename__ = "products"

  id = Column(String, primary_key=True)
  name = Column(String)
  base_price = Column(Integer)  # In cents
  sale_price = Column(Integer, nullable=True)  # In cents
  is_active = Column(Boolean, default=True)


class ProductVariant(Base):
  __tablename__ = "product_variants"

  id = Column(String, primary_key=True)
  product_id = Column(String, ForeignKey("products.id"), index=True)
  size = Column(String, nullable=True)
  sku = Column(String, nullable=True)
  base_price = Column(Integer, nullable=True)  # In cents
  sale_price = Column(Integer, nullable=True)  # In cents
  price_modifier = Column(Integer, nullable=True)  # In cents
  # Available stock; active reservations are already subtracted.
  stock_quantity = Column(Integer, default=0)
  is_active = Column(Boolean, default=True)


class Coupon(Base):
  __tablename__ = "coupons"

  code = Column(String, primary_key=True)
  discount_type = Column(String)  # 'percentage' or 'fixed'
  discount_value = Column(Integer)  # Percentage (e.g., 10) or cents
  min_purchase_amount = Column(Integer, nullable=True)  # In cents
  max_uses = Column(Integer, nullable=True)
  uses_count = Column(Integer, default=0)
  expiry_date = Column(DateTime, nullable=True)
  is_active = Column(Boolean, default=True)


# --- Checkout state ---


class CheckoutSettings(Base):
  __tablename__ = "checkout_settings"

  id = Column(Integer, primary_key=True)
  provider = Column(String)
  channel = Column(String)
  experience = Column(String)
  updated_at = Column(DateTime)


class CheckoutSettingsAudit(Base):
  __tablename__ = "checkout_settings_audit"

  id = Column(Integer, primary_key=True, autoincrement=True)
  previous_provider = Column(String, nullable=True)
  previous_channel = Column(String, nullable=True)
  previous_experience = Column(String, nullable=True)
  provider = Column(String)
  channel = Column(String)
  experience = Column(String)
  change_reason = Column(String, nullable=True)
  changed_at = Column(DateTime)


class Order(Base):
  __tablename__ = "orders"

  id = Column(String, primary_key=True)
  cart_id = Column(String, unique=True, index=True)
  status = Column(String, index=True)
  subtotal = Column(Integer)  # All amounts in cents
  discount_amount = Column(Integer, default=0)
  shipping_cost = Column(Integer, default=0)
  total_amount = Column(Integer)
  coupon_code = Column(String, nullable=True)
  provider = Column(String)
  channel = Column(String)
  experience = Column(String)
  transaction_id = Column(String, nullable=True, index=True)
  access_token = Column(String)
  user_id = Column(String, nullable=True)
  customer = Column(JSON, nullable=True)
  shipping = Column(JSON, nullable=True)
  attribution = Column(JSON, nullable=True)
  last_webhook_event = Column(String, nullable=True)
  created_at = Column(DateTime, index=True)
  updated_at = Column(DateTime)


class OrderItem(Base):
  __tablename__ = "order_items"

  id = Column(Integer, primary_key=True, autoincrement=True)
  order_id = Column(String, ForeignKey("orders.id"), index=True)
  variant_id = Column(String)
  sku = Column(String, nullable=True)
  product_name = Column(String)
  quantity = Column(Integer)
  unit_price = Column(Integer)  # In cents
  total_price = Column(Integer)  # In cents


class Reservation(Base):
  __tablename__ = "inventory_reservations"

  id = Column(String, primary_key=True)
  variant_id = Column(String, index=True)
  cart_id = Column(String, index=True)
  order_id = Column(String, ForeignKey("orders.id"), index=True)
  quantity = Column(Integer)
  status = Column(String, index=True)
  created_at = Column(DateTime)
  expires_at = Column(DateTime, index=True)
  released_at = Column(DateTime, nullable=True)


class WebhookEvent(Base):
  __tablename__ = "webhook_events"

  event_id = Column(String, primary_key=True)
  provider = Column(String)
  event_type = Column(String)
  payload = Column(Text)  # Raw body as received, already verified
  received_at = Column(DateTime)
  processed_at = Column(DateTime, nullable=True)
  error_message = Column(String, nullable=True)
  attempts = Column(Integer, default=0)


class Payment(Base):
  __tablename__ = "payments"

  id = Column(String, primary_key=True)
  transaction_id = Column(String, unique=True)
  order_id = Column(String, ForeignKey("orders.id"), index=True)
  provider = Column(String)
  amount = Column(Integer)  # In cents
  status = Column(String)
  created_at = Column(DateTime)


class RequestLog(Base):
  __tablename__ = "request_logs"

  id = Column(Integer, primary_key=True, autoincrement=True)
  timestamp = Column(String)
  method = Column(String)
  url = Column(String)
  correlation_id = Column(String, nullable=True)
  cart_id = Column(String, nullable=True)
  payload = Column(JSON, nullable=True)


class IdempotencyRecord(Base):
  __tablename__ = "idempotency_records"

  key = Column(String, primary_key=True)
  request_hash = Column(String)
  state = Column(String)
  response_status = Column(Integer, nullable=True)
  response_body = Column(JSON, nullable=True)
  created_at = Column(DateTime)


# --- Data Access Helpers ---


async def get_variants(
    session: AsyncSession, variant_ids: Iterable[str]
) -> Dict[str, Tuple[ProductVariant, Product]]:
  """Retrieves variants together with their products.

  Args:
    session: The database session to use.
    variant_ids: The variant IDs to look up.

  Returns:
    A mapping of variant ID to (variant, product) for every variant found.
  """
  result = await session.execute(
      select(ProductVariant, Product)
      .join(Product, Product.id == ProductVariant.product_id)
      .where(ProductVariant.id.in_(list(variant_ids)))
  )
  return {variant.id: (variant, product) for variant, product in result.all()}


async def get_coupon(session: AsyncSession, code: str) -> Optional[Coupon]:
  """Retrieves a coupon by code (case-insensitive codes are stored upper)."""
  return await session.get(Coupon, code.strip().upper())


async def increment_coupon_uses(session: AsyncSession, code: str) -> bool:
  """Atomically counts one use of a coupon if it has uses left."""
  stmt = (
      update(Coupon)
      .where(Coupon.code == code.strip().upper())
      .where(
          (Coupon.max_uses.is_(None)) | (Coupon.uses_count < Coupon.max_uses)
      )
      .values(uses_count=Coupon.uses_count + 1)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def reserve_stock(
    session: AsyncSession, variant_id: str, quantity: int
) -> bool:
  """Atomically decrements stock if sufficient stock exists."""
  stmt = (
      update(ProductVariant)
      .where(ProductVariant.id == variant_id)
      .where(ProductVariant.stock_quantity >= quantity)
      .values(stock_quantity=ProductVariant.stock_quantity - quantity)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def restore_stock(
    session: AsyncSession, variant_id: str, quantity: int
) -> None:
  """Returns previously reserved units to the available stock."""
  await session.execute(
      update(ProductVariant)
      .where(ProductVariant.id == variant_id)
      .values(stock_quantity=ProductVariant.stock_quantity + quantity)
  )


async def get_stock(session: AsyncSession, variant_id: str) -> Optional[int]:
  """Retrieves the available stock of a variant."""
  result = await session.execute(
      select(ProductVariant.stock_quantity).where(
          ProductVariant.id == variant_id
      )
  )
  return result.scalar_one_or_none()


async def add_reservation(
    session: AsyncSession,
    variant_id: str,
    cart_id: str,
    order_id: str,
    quantity: int,
    ttl: datetime.timedelta,
) -> Reservation:
  """Records an active reservation expiring after `ttl`."""
  now = utcnow()
  reservation = Reservation(
      id=new_id(),
      variant_id=variant_id,
      cart_id=cart_id,
      order_id=order_id,
      quantity=quantity,
      status=ReservationStatus.ACTIVE.value,
      created_at=now,
      expires_at=now + ttl,
  )
  session.add(reservation)
  return reservation


async def get_reservations(
    session: AsyncSession,
    order_id: Optional[str] = None,
    cart_id: Optional[str] = None,
    status: Optional[ReservationStatus] = None,
) -> List[Reservation]:
  """Retrieves reservations filtered by order, cart and/or status."""
  stmt = select(Reservation)
  if order_id is not None:
    stmt = stmt.where(Reservation.order_id == order_id)
  if cart_id is not None:
    stmt = stmt.where(Reservation.cart_id == cart_id)
  if status is not None:
    stmt = stmt.where(Reservation.status == status.value)
  result = await session.execute(stmt.order_by(Reservation.created_at))
  return list(result.scalars().all())


async def get_expired_reservations(
    session: AsyncSession, now: datetime.datetime
) -> List[Reservation]:
  """Retrieves active reservations whose TTL has elapsed."""
  result = await session.execute(
      select(Reservation)
      .where(Reservation.status == ReservationStatus.ACTIVE.value)
      .where(Reservation.expires_at <= now)
  )
  return list(result.scalars().all())


async def transition_reservation(
    session: AsyncSession,
    reservation_id: str,
    to_status: ReservationStatus,
    from_status: ReservationStatus = ReservationStatus.ACTIVE,
) -> bool:
  """Moves a reservation out of `from_status` if no one else did first."""
  values: Dict[str, Any] = {"status": to_status.value}
  if to_status == ReservationStatus.RELEASED:
    values["released_at"] = utcnow()
  result = await session.execute(
      update(Reservation)
      .where(Reservation.id == reservation_id)
      .where(Reservation.status == from_status.value)
      .values(**values)
  )
  return result.rowcount > 0


async def delete_reservations(
    session: AsyncSession, reservation_ids: Iterable[str]
) -> None:
  """Deletes reservations superseded by a newer checkout of the same cart."""
  ids = list(reservation_ids)
  if ids:
    await session.execute(delete(Reservation).where(Reservation.id.in_(ids)))


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
  """Retrieves an order by ID, bypassing the identity map cache."""
  result = await session.execute(
      select(Order)
      .where(Order.id == order_id)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def get_order_by_cart(
    session: AsyncSession, cart_id: str
) -> Optional[Order]:
  """Retrieves the order created for a cart, if any."""
  result = await session.execute(
      select(Order)
      .where(Order.cart_id == cart_id)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def get_order_by_transaction(
    session: AsyncSession, transaction_id: str
) -> Optional[Order]:
  """Retrieves an order by its provider transaction reference."""
  result = await session.execute(
      select(Order)
      .where(Order.transaction_id == transaction_id)
      .execution_options(populate_existing=True)
  )
  return result.scalars().first()


async def claim_transaction(
    session: AsyncSession, order_id: str, transaction_id: str
) -> bool:
  """Sets the provider reference only on a pending order that has none.

  This is the single write that decides which provider session an order is
  charged through; concurrent callers race on the WHERE clause, not on a
  prior read.

  Args:
    session: The database session to use.
    order_id: The order to claim.
    transaction_id: The provider session/charge reference.

  Returns:
    True if this call set the reference.
  """
  result = await session.execute(
      update(Order)
      .where(Order.id == order_id)
      .where(Order.status == OrderStatus.PENDING.value)
      .where(Order.transaction_id.is_(None))
      .values(transaction_id=transaction_id, updated_at=utcnow())
  )
  return result.rowcount > 0


async def transition_order_status(
    session: AsyncSession,
    order_id: str,
    from_statuses: Iterable[OrderStatus],
    to_status: OrderStatus,
    unclaimed_only: bool = False,
    **values: Any,
) -> bool:
  """Atomically moves an order to `to_status` if it is in `from_statuses`.

  With `unclaimed_only`, orders that already carry a provider reference are
  left alone.
  """
  stmt = (
      update(Order)
      .where(Order.id == order_id)
      .where(Order.status.in_([s.value for s in from_statuses]))
  )
  if unclaimed_only:
    stmt = stmt.where(Order.transaction_id.is_(None))
  result = await session.execute(
      stmt.values(status=to_status.value, updated_at=utcnow(), **values)
  )
  return result.rowcount > 0


async def replace_order_items(
    session: AsyncSession, order_id: str, items: List[OrderItem]
) -> None:
  """Replaces the line items of an order."""
  existing = await session.execute(
      select(OrderItem).where(OrderItem.order_id == order_id)
  )
  for item in existing.scalars().all():
    await session.delete(item)
  for item in items:
    item.order_id = order_id
    session.add(item)


async def get_order_items(
    session: AsyncSession, order_id: str
) -> List[OrderItem]:
  """Retrieves the line items of an order."""
  result = await session.execute(
      select(OrderItem).where(OrderItem.order_id == order_id)
  )
  return list(result.scalars().all())


async def list_stale_pending_orders(
    session: AsyncSession, cutoff: datetime.datetime
) -> List[Order]:
  """Retrieves unsettled orders with a provider reference older than cutoff.

  Both pending and processing orders are returned; the provider may still
  settle either.
  """
  result = await session.execute(
      select(Order)
      .where(
          Order.status.in_(
              [OrderStatus.PENDING.value, OrderStatus.PROCESSING.value]
          )
      )
      .where(Order.transaction_id.is_not(None))
      .where(Order.created_at < cutoff)
      .order_by(Order.created_at)
  )
  return list(result.scalars().all())


async def get_checkout_settings(
    session: AsyncSession,
) -> Optional[CheckoutSettings]:
  """Retrieves the store's checkout settings row."""
  result = await session.execute(
      select(CheckoutSettings)
      .where(CheckoutSettings.id == 1)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def save_checkout_settings(
    session: AsyncSession,
    provider: Provider,
    channel: Channel,
    experience: Experience,
    change_reason: Optional[str] = None,
) -> CheckoutSettings:
  """Saves the checkout settings and appends an audit entry."""
  now = utcnow()
  existing = await get_checkout_settings(session)
  audit = CheckoutSettingsAudit(
      previous_provider=existing.provider if existing else None,
      previous_channel=existing.channel if existing else None,
      previous_experience=existing.experience if existing else None,
      provider=provider.value,
      channel=channel.value,
      experience=experience.value,
      change_reason=change_reason,
      changed_at=now,
  )
  session.add(audit)
  if existing:
    existing.provider = provider.value
    existing.channel = channel.value
    existing.experience = experience.value
    existing.updated_at = now
    return existing
  settings = CheckoutSettings(
      id=1,
      provider=provider.value,
      channel=channel.value,
      experience=experience.value,
      updated_at=now,
  )
  session.add(settings)
  return settings


async def get_webhook_event(
    session: AsyncSession, event_id: str
) -> Optional[WebhookEvent]:
  """Retrieves a webhook event by its provider-assigned ID."""
  result = await session.execute(
      select(WebhookEvent)
      .where(WebhookEvent.event_id == event_id)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def insert_webhook_event(
    session: AsyncSession,
    event_id: str,
    provider: str,
    event_type: str,
    payload: str,
) -> bool:
  """Stores a newly received event and commits.

  Returns:
    False if the event_id was already stored by a concurrent delivery.
  """
  session.add(
      WebhookEvent(
          event_id=event_id,
          provider=provider,
          event_type=event_type,
          payload=payload,
          received_at=utcnow(),
          attempts=0,
      )
  )
  try:
    await session.commit()
  except IntegrityError:
    await session.rollback()
    return False
  return True


async def mark_webhook_processed(session: AsyncSession, event_id: str) -> None:
  """Marks an event as applied and clears any previous error."""
  await session.execute(
      update(WebhookEvent)
      .where(WebhookEvent.event_id == event_id)
      .values(
          processed_at=utcnow(),
          error_message=None,
          attempts=WebhookEvent.attempts + 1,
      )
  )


async def mark_webhook_failed(
    session: AsyncSession, event_id: str, error_message: str
) -> None:
  """Records a failed attempt, leaving the event eligible for reprocessing."""
  await session.execute(
      update(WebhookEvent)
      .where(WebhookEvent.event_id == event_id)
      .values(
          processed_at=None,
          error_message=error_message[:1000],
          attempts=WebhookEvent.attempts + 1,
      )
  )


async def save_payment_once(
    session: AsyncSession,
    transaction_id: str,
    order_id: str,
    provider: str,
    amount: int,
    status: str,
) -> bool:
  """Records a payment unless one exists for the same provider reference."""
  result = await session.execute(
      select(Payment.id).where(Payment.transaction_id == transaction_id)
  )
  if result.scalar_one_or_none():
    return False
  session.add(
      Payment(
          id=new_id(),
          transaction_id=transaction_id,
          order_id=order_id,
          provider=provider,
          amount=amount,
          status=status,
          created_at=utcnow(),
      )
  )
  return True


async def get_payments(session: AsyncSession, order_id: str) -> List[Payment]:
  """Retrieves the payments recorded for an order."""
  result = await session.execute(
      select(Payment).where(Payment.order_id == order_id)
  )
  return list(result.scalars().all())


async def log_request(
    session: AsyncSession,
    method: str,
    url: str,
    correlation_id: Optional[str] = None,
    cart_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
  """Logs an HTTP request to the database."""
  log_entry = RequestLog(
      timestamp=datetime.datetime.now(datetime.timezone.utc).isoformat(),
      method=method,
      url=url,
      correlation_id=correlation_id,
      cart_id=cart_id,
      payload=payload,
  )
  session.add(log_entry)


async def get_idempotency_record(
    session: AsyncSession, key: str
) -> Optional[IdempotencyRecord]:
  """Retrieves an idempotency record by key, bypassing the identity map."""
  result = await session.execute(
      select(IdempotencyRecord)
      .where(IdempotencyRecord.key == key)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def claim_idempotency_record(
    session: AsyncSession, key: str, request_hash: str
) -> bool:
  """Inserts an in-progress record for `key` and commits.

  Returns:
    False if another request already holds the key.
  """
  session.add(
      IdempotencyRecord(
          key=key,
          request_hash=request_hash,
          state=IdempotencyState.IN_PROGRESS.value,
          created_at=utcnow(),
      )
  )
  try:
    await session.commit()
  except IntegrityError:
    await session.rollback()
    return False
  return True


async def complete_idempotency_record(
    session: AsyncSession,
    key: str,
    response_status: int,
    response_body: Dict[str, Any],
) -> None:
  """Stores the final response under an in-progress key."""
  await session.execute(
      update(IdempotencyRecord)
      .where(IdempotencyRecord.key == key)
      .values(
          state=IdempotencyState.COMPLETED.value,
          response_status=response_status,
          response_body=response_body,
      )
  )


async def delete_idempotency_record(session: AsyncSession, key: str) -> None:
  """Drops a record so the key can be claimed again."""
  record = await session.get(IdempotencyRecord, key)
  if record:
    await session.delete(record)


async def take_over_idempotency_claim(
    session: AsyncSession, key: str, stale_before: datetime.datetime
) -> bool:
  """Re-stamps an abandoned in-progress claim so a new request can own it."""
  result = await session.execute(
      update(IdempotencyRecord)
      .where(IdempotencyRecord.key == key)
      .where(IdempotencyRecord.state == IdempotencyState.IN_PROGRESS.value)
      .where(IdempotencyRecord.created_at < stale_before)
      .values(created_at=utcnow())
  )
  return result.rowcount > 0


async def purge_idempotency_records(
    session: AsyncSession, cutoff: datetime.datetime
) -> int:
  """Deletes records created before `cutoff`."""
  result = await session.execute(
      delete(IdempotencyRecord).where(IdempotencyRecord.created_at < cutoff)
  )
  return result.rowcount
