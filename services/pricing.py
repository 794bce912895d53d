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

"""Server-side pricing of a cart.

Totals sent by the storefront are never trusted: unit prices come from the
catalog, the discount from the coupon table, and the client total is only
compared against the recomputed one.
"""

import dataclasses
import datetime
from decimal import Decimal
from decimal import ROUND_HALF_UP
import logging
from typing import List
from typing import Optional

import db
from enums import DiscountType
from exceptions import BadRequestError
from exceptions import PriceMismatchError
from exceptions import ResourceNotFoundError
from models import StartItem
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Smallest tolerated deviation between client and server totals, in cents.
MIN_TOLERANCE_CENTS = 10
TOLERANCE_RATIO = Decimal("0.01")

_CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
  """Converts a currency amount to integer cents, rounding half up."""
  return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
  return (Decimal(cents) / 100).quantize(_CENT)


@dataclasses.dataclass
class PricedLine:
  variant_id: str
  product_name: str
  quantity: int
  unit_price: int
  total_price: int
  sku: Optional[str] = None


@dataclasses.dataclass
class PricedCart:
  """A cart priced from the catalog, all amounts in cents."""

  lines: List[PricedLine]
  subtotal: int
  discount_amount: int
  shipping_cost: int
  total_amount: int
  coupon_code: Optional[str] = None


def resolve_unit_price(variant: db.ProductVariant, product: db.Product) -> int:
  """Returns the unit price of a variant in cents.

  The variant's own sale or base price wins when positive; otherwise the
  product price (sale first) is adjusted by the variant's modifier.
  """
  if variant.sale_price and variant.sale_price > 0:
    return variant.sale_price
  if variant.base_price and variant.base_price > 0:
    return variant.base_price
  product_price = product.sale_price or product.base_price or 0
  return product_price + (variant.price_modifier or 0)


def compute_coupon_discount(
    coupon: Optional[db.Coupon],
    subtotal: int,
    now: Optional[datetime.datetime] = None,
) -> int:
  """Computes the discount a coupon grants on `subtotal`.

  Args:
    coupon: The coupon row, or None when the code does not exist.
    subtotal: Cart subtotal in cents.
    now: Reference time for the expiry check.

  Returns:
    The discount in cents, never more than the subtotal.

  Raises:
    BadRequestError: If the coupon is unknown or cannot be used.
  """
  if coupon is None or not coupon.is_active:
    raise BadRequestError("Invalid coupon")
  now = now or db.utcnow()
  if coupon.expiry_date and coupon.expiry_date < now:
    raise BadRequestError("Coupon has expired")
  uses = coupon.uses_count or 0
  if coupon.max_uses is not None and uses >= coupon.max_uses:
    raise BadRequestError("Coupon usage limit reached")
  if coupon.min_purchase_amount and subtotal < coupon.min_purchase_amount:
    raise BadRequestError("Minimum purchase not reached for coupon")

  if coupon.discount_type == DiscountType.PERCENTAGE.value:
    raw = (Decimal(subtotal) * Decimal(coupon.discount_value) / 100).quantize(
        Decimal("1"), ROUND_HALF_UP
    )
    discount = int(raw)
  elif coupon.discount_type == DiscountType.FIXED.value:
    discount = coupon.discount_value
  else:
    raise BadRequestError("Invalid coupon")
  return min(subtotal, max(0, discount))


def price_tolerance(server_total: int) -> int:
  """Largest accepted deviation in cents: max(0.10, 1% of the total)."""
  ratio = int(
      (Decimal(server_total) * TOLERANCE_RATIO).quantize(
          Decimal("1"), ROUND_HALF_UP
      )
  )
  return max(MIN_TOLERANCE_CENTS, ratio)


def check_client_total(client_total: Optional[int], server_total: int) -> None:
  """Rejects a client total that deviates beyond the tolerance."""
  if client_total is None:
    return
  if abs(client_total - server_total) > price_tolerance(server_total):
    logger.warning(
        "Price mismatch: client total %s, server total %s",
        client_total,
        server_total,
    )
    raise PriceMismatchError(
        f"Total {from_cents(client_total)} does not match server total"
        f" {from_cents(server_total)}"
    )


async def price_cart(
    session: AsyncSession,
    items: List[StartItem],
    coupon_code: Optional[str],
    shipping_cost: int,
) -> PricedCart:
  """Prices cart lines from the catalog and applies the coupon.

  Lines that repeat a variant are merged.

  Raises:
    ResourceNotFoundError: If a variant is unknown or not for sale.
    BadRequestError: If the coupon cannot be applied.
  """
  quantities = {}
  for item in items:
    quantities[item.variant_id] = (
        quantities.get(item.variant_id, 0) + item.quantity
    )

  catalog = await db.get_variants(session, quantities.keys())
  lines = []
  for variant_id, quantity in quantities.items():
    entry = catalog.get(variant_id)
    if entry is None:
      raise ResourceNotFoundError(f"Variant {variant_id} not found")
    variant, product = entry
    if not variant.is_active or not product.is_active:
      raise ResourceNotFoundError(f"Variant {variant_id} is not available")
    unit_price = resolve_unit_price(variant, product)
    name = product.name
    if variant.size:
      name = f"{name} ({variant.size})"
    lines.append(
        PricedLine(
            variant_id=variant_id,
            product_name=name,
            quantity=quantity,
            unit_price=unit_price,
            total_price=unit_price * quantity,
            sku=variant.sku,
        )
    )

  subtotal = sum(line.total_price for line in lines)
  discount = 0
  normalized_code = None
  if coupon_code and coupon_code.strip():
    normalized_code = coupon_code.strip().upper()
    coupon = await db.get_coupon(session, normalized_code)
    discount = compute_coupon_discount(coupon, subtotal)

  return PricedCart(
      lines=lines,
      subtotal=subtotal,
      discount_amount=discount,
      shipping_cost=shipping_cost,
      total_amount=subtotal - discount + shipping_cost,
      coupon_code=normalized_code,
  )
