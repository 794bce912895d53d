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

"""Checkout router endpoint."""

import asyncio
import logging
from typing import Any

import config
import dependencies
from exceptions import BadRequestError
from exceptions import RouterTimeoutError
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Request
from services.checkout_router import CheckoutRouter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/checkout-router",
    response_model=dict[str, Any],
    operation_id="checkout_router",
)
async def checkout_router(
    request: Request,
    client_ip: str = Depends(dependencies.get_client_ip),
    checkout_router_service: CheckoutRouter = Depends(
        dependencies.get_checkout_router
    ),
) -> dict[str, Any]:
  """Routes a cart to its payment provider and starts the payment."""
  try:
    payload = await request.json()
  except ValueError as e:
    raise BadRequestError("Invalid JSON body") from e

  timeout = config.FLAGS.router_timeout_seconds
  try:
    return await asyncio.wait_for(
        checkout_router_service.route(payload, client_ip), timeout=timeout
    )
  except asyncio.TimeoutError as e:
    logger.error("Checkout router exceeded %ss", timeout)
    raise RouterTimeoutError(
        "Checkout did not finish in time; the order stays pending"
    ) from e
