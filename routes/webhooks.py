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

"""Provider webhook endpoints."""

import dependencies
from enums import Provider
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Request
from models import WebhookResponse
from services.webhook_processor import WebhookProcessor

router = APIRouter(prefix="/webhooks")


@router.post(
    "/stripe",
    response_model=WebhookResponse,
    operation_id="stripe_webhook",
)
async def stripe_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(dependencies.get_webhook_processor),
) -> WebhookResponse:
  """Receives Stripe events signed with the endpoint secret."""
  # The raw body is needed as sent for the signature check.
  payload = await request.body()
  return await processor.process(Provider.STRIPE, payload, request.headers)


@router.post(
    "/yampi",
    response_model=WebhookResponse,
    operation_id="yampi_webhook",
)
async def yampi_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(dependencies.get_webhook_processor),
) -> WebhookResponse:
  """Receives Yampi events signed with HMAC-SHA256."""
  payload = await request.body()
  return await processor.process(Provider.YAMPI, payload, request.headers)
