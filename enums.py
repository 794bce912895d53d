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

"""Enumerations for the checkout core.

This module defines the enums used throughout the server to represent order
and reservation lifecycles and the provider/channel/experience selection
that the checkout router resolves on every request.
"""

import enum


class OrderStatus(str, enum.Enum):
  PENDING = "pending"
  PROCESSING = "processing"
  PAID = "paid"
  SHIPPED = "shipped"
  DELIVERED = "delivered"
  CANCELLED = "cancelled"
  FAILED = "failed"


CHARGED_STATUSES = frozenset({
    OrderStatus.PROCESSING,
    OrderStatus.PAID,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
})

TERMINAL_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.FAILED,
})

# Status -> statuses it may move to. Terminal statuses have no entry.
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.PAID,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    }),
    OrderStatus.PROCESSING: frozenset({
        OrderStatus.PAID,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    }),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
}


class ReservationStatus(str, enum.Enum):
  ACTIVE = "active"
  RELEASED = "released"
  CONSUMED = "consumed"


class Provider(str, enum.Enum):
  STRIPE = "stripe"
  YAMPI = "yampi"


class Channel(str, enum.Enum):
  INTERNAL = "internal"
  EXTERNAL = "external"


class Experience(str, enum.Enum):
  TRANSPARENT = "transparent"
  NATIVE = "native"


class RouterAction(str, enum.Enum):
  RENDER = "render"
  REDIRECT = "redirect"
  COMPLETE = "complete"


class PaymentOutcome(str, enum.Enum):
  """Authoritative payment state as reported by a provider."""

  SUCCEEDED = "succeeded"
  PROCESSING = "processing"
  PENDING = "pending"
  FAILED = "failed"
  CANCELED = "canceled"


class IdempotencyState(str, enum.Enum):
  IN_PROGRESS = "in_progress"
  COMPLETED = "completed"


class DiscountType(str, enum.Enum):
  PERCENTAGE = "percentage"
  FIXED = "fixed"
