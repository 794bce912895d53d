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

"""Tests for server-side cart pricing."""

import datetime
from decimal import Decimal

from absl.testing import absltest
import db
from exceptions import BadRequestError
from exceptions import PriceMismatchError
from exceptions import ResourceNotFoundError
from models import StartItem
from services import pricing
import testbase


class PricingFunctionsTest(absltest.TestCase):

  def test_to_cents_rounds_half_up(self):
    self.assertEqual(pricing.to_cents(Decimal("100.00")), 10000)
    self.assertEqual(pricing.to_cents(Decimal("0.005")), 1)
    self.assertEqual(pricing.to_cents(Decimal("19.99")), 1999)
    self.assertEqual(pricing.from_cents(1999), Decimal("19.99"))

  def test_tolerance_has_a_floor_of_ten_cents(self):
    self.assertEqual(pricing.price_tolerance(500), 10)
    self.assertEqual(pricing.price_tolerance(10000), 100)

  def test_client_total_within_tolerance_is_accepted(self):
    pricing.check_client_total(10005, 10000)
    pricing.check_client_total(9900, 10000)
    pricing.check_client_total(None, 10000)

  def test_client_total_beyond_tolerance_is_rejected(self):
    with self.assertRaises(PriceMismatchError) as cm:
      pricing.check_client_total(100, 10000)
    self.assertEqual(cm.exception.status_code, 422)
    with self.assertRaises(PriceMismatchError):
      pricing.check_client_total(10101, 10000)

  def test_unit_price_prefers_variant_prices(self):
    product = db.Product(id="p", name="P", base_price=10000, sale_price=9000)
    self.assertEqual(
        pricing.resolve_unit_price(
            db.ProductVariant(sale_price=7000, base_price=8000), product
        ),
        7000,
    )
    self.assertEqual(
        pricing.resolve_unit_price(
            db.ProductVariant(base_price=8000), product
        ),
        8000,
    )

  def test_unit_price_falls_back_to_product_with_modifier(self):
    product = db.Product(id="p", name="P", base_price=10000, sale_price=9000)
    self.assertEqual(
        pricing.resolve_unit_price(
            db.ProductVariant(price_modifier=500), product
        ),
        9500,
    )
    self.assertEqual(
        pricing.resolve_unit_price(
            db.ProductVariant(sale_price=0, price_modifier=-1000),
            db.Product(id="q", name="Q", base_price=5000),
        ),
        4000,
    )


class CouponDiscountTest(absltest.TestCase):

  def _coupon(self, **kwargs):
    values = dict(
        code="C",
        discount_type="percentage",
        discount_value=10,
        uses_count=0,
        is_active=True,
    )
    values.update(kwargs)
    return db.Coupon(**values)

  def test_percentage_discount(self):
    self.assertEqual(
        pricing.compute_coupon_discount(self._coupon(), 15990), 1599
    )

  def test_fixed_discount_is_capped_at_subtotal(self):
    coupon = self._coupon(discount_type="fixed", discount_value=5000)
    self.assertEqual(pricing.compute_coupon_discount(coupon, 3000), 3000)

  def test_unusable_coupons_are_rejected(self):
    now = datetime.datetime(2026, 1, 1)
    unusable = [
        None,
        self._coupon(is_active=False),
        self._coupon(expiry_date=now - datetime.timedelta(days=1)),
        self._coupon(max_uses=5, uses_count=5),
        self._coupon(min_purchase_amount=20000),
    ]
    for coupon in unusable:
      with self.subTest(coupon=coupon):
        with self.assertRaises(BadRequestError):
          pricing.compute_coupon_discount(coupon, 10000, now=now)


class PriceCartTest(testbase.CheckoutTestCase):

  def _price(self, items, coupon_code=None, shipping_cost=0):
    async def run():
      async with self.session_factory() as session:
        return await pricing.price_cart(
            session,
            [StartItem(**item) for item in items],
            coupon_code,
            shipping_cost,
        )

    return self.run_async(run())

  def test_prices_from_catalog_and_merges_lines(self):
    priced = self._price(
        [
            {"variant_id": "ring-14", "quantity": 1, "unit_price": "0.01"},
            {"variant_id": "ring-14", "quantity": 1},
            {"variant_id": "necklace-45", "quantity": 1},
        ],
        shipping_cost=1500,
    )
    self.assertLen(priced.lines, 2)
    ring, necklace = priced.lines
    self.assertEqual(ring.quantity, 2)
    self.assertEqual(ring.unit_price, 10000)
    self.assertEqual(ring.product_name, "Aurora Ring (14)")
    self.assertEqual(ring.sku, "RING-14")
    self.assertEqual(necklace.unit_price, 5000)
    self.assertEqual(priced.subtotal, 25000)
    self.assertEqual(priced.total_amount, 26500)

  def test_applies_coupon_case_insensitively(self):
    priced = self._price(
        [{"variant_id": "ring-14", "quantity": 1}], coupon_code=" welcome10 "
    )
    self.assertEqual(priced.coupon_code, "WELCOME10")
    self.assertEqual(priced.discount_amount, 1000)
    self.assertEqual(priced.total_amount, 9000)

  def test_unknown_coupon_is_rejected(self):
    with self.assertRaises(BadRequestError):
      self._price([{"variant_id": "ring-14", "quantity": 1}], "NOPE")

  def test_unknown_or_inactive_variant_is_not_found(self):
    with self.assertRaises(ResourceNotFoundError):
      self._price([{"variant_id": "missing", "quantity": 1}])
    with self.assertRaises(ResourceNotFoundError):
      self._price([{"variant_id": "retired-u", "quantity": 1}])


if __name__ == "__main__":
  absltest.main()
