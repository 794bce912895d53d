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

"""Database initialization script for the checkout server.

This script imports the catalog (products and variants with their stock) and
the coupons from CSV files into the configured SQLite database. It clears any
existing catalog rows before populating them with the new dataset. Orders,
reservations and payments are left untouched.

Usage:
  uv run import_csv.py --db_path=... --data_dir=...
"""

import asyncio
import csv
import datetime
import logging
import os
from typing import Optional

from absl import app as absl_app
from absl import flags
import db
from db import Coupon
from db import Product
from db import ProductVariant
from sqlalchemy import delete

FLAGS = flags.FLAGS
flags.DEFINE_string("db_path", "checkout.db", "Path to the checkout DB")
flags.DEFINE_string(
    "data_dir",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "data"),
    "Directory containing products.csv, variants.csv and coupons.csv",
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _int_or_none(value: Optional[str]) -> Optional[int]:
  return int(value) if value not in (None, "") else None


def _bool(value: Optional[str]) -> bool:
  return (value or "true").strip().lower() in ("1", "true", "yes")


async def import_csv_data() -> None:
  """Reads CSV files and populates the database."""
  data_dir = FLAGS.data_dir
  # Ensure tables exist
  await db.manager.init_db(FLAGS.db_path)

  try:
    async with db.manager.session_factory() as session:
      logger.info("Clearing existing catalog...")
      await session.execute(delete(ProductVariant))
      await session.execute(delete(Product))

      logger.info("Importing Products from CSV...")
      products = []
      with open(os.path.join(data_dir, "products.csv"), "r") as f:
        reader = csv.DictReader(f)
        for row in reader:
          products.append(
              Product(
                  id=row["id"],
                  name=row["name"],
                  base_price=int(row["base_price"]),
                  sale_price=_int_or_none(row.get("sale_price")),
                  is_active=_bool(row.get("is_active")),
              )
          )
      session.add_all(products)

      logger.info("Importing Variants from CSV...")
      variants = []
      with open(os.path.join(data_dir, "variants.csv"), "r") as f:
        reader = csv.DictReader(f)
        for row in reader:
          variants.append(
              ProductVariant(
                  id=row["id"],
                  product_id=row["product_id"],
                  size=row.get("size") or None,
                  sku=row.get("sku") or None,
                  base_price=_int_or_none(row.get("base_price")),
                  sale_price=_int_or_none(row.get("sale_price")),
                  price_modifier=_int_or_none(row.get("price_modifier")),
                  stock_quantity=int(row["stock_quantity"]),
                  is_active=_bool(row.get("is_active")),
              )
          )
      session.add_all(variants)
      await session.commit()

      logger.info("Clearing existing coupons...")
      await session.execute(delete(Coupon))

      logger.info("Importing Coupons from CSV...")
      coupons = []
      coupons_path = os.path.join(data_dir, "coupons.csv")
      if os.path.exists(coupons_path):
        with open(coupons_path, "r") as f:
          reader = csv.DictReader(f)
          for row in reader:
            expiry = row.get("expiry_date")
            coupons.append(
                Coupon(
                    code=row["code"].strip().upper(),
                    discount_type=row["discount_type"],
                    discount_value=int(row["discount_value"]),
                    min_purchase_amount=_int_or_none(
                        row.get("min_purchase_amount")
                    ),
                    max_uses=_int_or_none(row.get("max_uses")),
                    uses_count=0,
                    expiry_date=(
                        datetime.datetime.fromisoformat(expiry)
                        if expiry
                        else None
                    ),
                    is_active=_bool(row.get("is_active")),
                )
            )
        session.add_all(coupons)
      await session.commit()

    logger.info("Database populated from CSVs.")
  finally:
    await db.manager.close()


def main(argv) -> None:
  """Main entry point for the CSV import script."""
  del argv
  asyncio.run(import_csv_data())


if __name__ == "__main__":
  absl_app.run(main)
