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

"""Request and response models of the checkout HTTP surface.

Amounts are decimal currency units on the wire; the persistence layer stores
cents.
"""

import datetime
from decimal import Decimal
from typing import Any
from typing import Dict
from typing import List
from typing import Literal
from typing import Optional

from enums import Channel
from enums import Experience
from enums import Provider
from enums import RouterAction
from pydantic import BaseModel
from pydantic import Field

# Largest amount and line quantity accepted on the wire; cents must fit a
# 64-bit INTEGER column.
MAX_AMOUNT = Decimal("1000000000")
MAX_QUANTITY = 10000


class StartItem(BaseModel):
  """A cart line as sent by the storefront."""

  variant_id: str = Field(..., min_length=1)
  quantity: int = Field(..., ge=1, le=MAX_QUANTITY)
  # Accepted for compatibility with older clients; prices are always
  # resolved server-side.
  unit_price: Optional[Decimal] = Field(None, ge=0, le=MAX_AMOUNT)


class StartRequest(BaseModel):
  """Body of a `route = "start"` call to the checkout router."""

  route: Literal["start"]
  request_id: str = Field(..., min_length=1)
  cart_id: str = Field(..., min_length=1)
  items: List[StartItem] = Field(..., min_length=1)
  subtotal: Optional[Decimal] = Field(None, ge=0, le=MAX_AMOUNT)
  discount_amount: Decimal = Field(Decimal("0"), ge=0, le=MAX_AMOUNT)
  shipping_cost: Decimal = Field(Decimal("0"), ge=0, le=MAX_AMOUNT)
  total_amount: Optional[Decimal] = Field(None, ge=0, le=MAX_AMOUNT)
  coupon_code: Optional[str] = None
  customer: Optional[Dict[str, Any]] = None
  shipping: Optional[Dict[str, Any]] = None
  attribution: Optional[Any] = None
  order_access_token: Optional[str] = None
  user_id: Optional[str] = None
  success_url: Optional[str] = None
  cancel_url: Optional[str] = None


class RouterResponse(BaseModel):
  """Decision returned by the checkout router."""

  success: bool = True
  provider: Provider
  channel: Channel
  experience: Experience
  action: RouterAction
  order_id: Optional[str] = None
  order_access_token: Optional[str] = None
  redirect_url: Optional[str] = None
  client_secret: Optional[str] = None
  message: Optional[str] = None


class ReconcileRequest(BaseModel):
  order_id: Optional[str] = None


class ReconcileResponse(BaseModel):
  ok: bool = True
  order_id: str
  previous_status: str
  new_status: str
  payment_synced: bool = False
  correlation_id: Optional[str] = None


class ReprocessRequest(BaseModel):
  event_id: Optional[str] = None


class ReprocessResponse(BaseModel):
  ok: bool = True
  event_id: str


class WebhookResponse(BaseModel):
  ok: bool = True
  duplicate: bool = False


class ReleaseResponse(BaseModel):
  released: int
  order_ids: List[str] = []


class CheckoutSettingsUpdate(BaseModel):
  """Administrative change of the store's payment route."""

  active_provider: Provider
  channel: Channel
  experience: Experience
  change_reason: Optional[str] = None


class CheckoutSettingsResponse(BaseModel):
  active_provider: Provider
  channel: Channel
  experience: Experience
  updated_at: Optional[datetime.datetime] = None
