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

"""Custom exceptions for the checkout core."""

from typing import Optional


class CheckoutError(Exception):
  """Base class for all checkout exceptions."""

  def __init__(
      self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    super().__init__(self.message)


class BadRequestError(CheckoutError):
  """Raised when the request is malformed or missing fields."""

  def __init__(self, message: str):
    super().__init__(message, code="BAD_REQUEST", status_code=400)


class UnauthorizedError(CheckoutError):
  """Raised when an administrative call lacks valid credentials."""

  def __init__(self, message: str = "Unauthorized"):
    super().__init__(message, code="UNAUTHORIZED", status_code=401)


class ResourceNotFoundError(CheckoutError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


class IdempotencyConflictError(CheckoutError):
  """Raised when a request_id is reused with different parameters."""

  def __init__(self, message: str):
    super().__init__(message, code="IDEMPOTENCY_CONFLICT", status_code=409)


class CheckoutNotModifiableError(CheckoutError):
  """Raised when a checkout targets an order in a terminal state."""

  def __init__(self, message: str):
    super().__init__(message, code="CHECKOUT_NOT_MODIFIABLE", status_code=409)


class OutOfStockError(CheckoutError):
  """Raised when there is insufficient inventory for an item."""

  def __init__(self, message: str):
    super().__init__(message, code="OUT_OF_STOCK", status_code=409)


class PriceMismatchError(CheckoutError):
  """Raised when the client total deviates from the server total."""

  def __init__(self, message: str):
    super().__init__(message, code="PRICE_MISMATCH", status_code=422)


class RateLimitedError(CheckoutError):
  """Raised when a caller exceeds the request budget for its key."""

  def __init__(self, message: str, retry_after: Optional[int] = None):
    super().__init__(message, code="RATE_LIMITED", status_code=429)
    self.retry_after = retry_after


class InternalError(CheckoutError):
  """Raised when persistence fails; nothing is left half-written."""

  def __init__(self, message: str = "Internal error"):
    super().__init__(message, code="INTERNAL_ERROR", status_code=500)


class ProviderUnavailableError(CheckoutError):
  """Raised when a payment provider call fails or cannot be verified."""

  def __init__(self, message: str):
    super().__init__(message, code="PROVIDER_UNAVAILABLE", status_code=502)


class RouterTimeoutError(CheckoutError):
  """Raised when the router exceeds its end-to-end budget."""

  def __init__(self, message: str):
    super().__init__(message, code="TIMEOUT", status_code=504)
