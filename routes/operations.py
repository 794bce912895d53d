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

"""Administrative operations: reconciliation, reprocessing and cleanup."""

import logging
from typing import Optional

import config
import dependencies
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from models import ReconcileRequest
from models import ReconcileResponse
from models import ReleaseResponse
from models import ReprocessRequest
from models import ReprocessResponse
from services.idempotency import IdempotencyGuard
from services.reconciler import Reconciler
from services.reservations import ReservationService
from services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(dependencies.verify_admin)])


@router.post(
    "/reconcile-order",
    response_model=ReconcileResponse,
    operation_id="reconcile_order",
)
async def reconcile_order(
    body: Optional[ReconcileRequest] = Body(None),
    reconciler: Reconciler = Depends(dependencies.get_reconciler),
) -> ReconcileResponse:
  """Resolves a pending order against its payment provider."""
  return await reconciler.reconcile(
      body.order_id if body else None,
      correlation_id=config.correlation_id_var.get(),
  )


@router.post(
    "/reprocess-webhook",
    response_model=ReprocessResponse,
    operation_id="reprocess_webhook",
)
async def reprocess_webhook(
    body: Optional[ReprocessRequest] = Body(None),
    processor: WebhookProcessor = Depends(dependencies.get_webhook_processor),
) -> ReprocessResponse:
  """Applies a stored webhook event again."""
  return await processor.reprocess(body.event_id if body else None)


@router.post(
    "/release-expired-reservations",
    response_model=ReleaseResponse,
    operation_id="release_expired_reservations",
)
async def release_expired_reservations(
    reservations: ReservationService = Depends(
        dependencies.get_reservation_service
    ),
    guard: IdempotencyGuard = Depends(dependencies.get_idempotency_guard),
) -> ReleaseResponse:
  """Releases expired reservations and purges stale idempotency records."""
  result = await reservations.release_expired()
  await guard.purge_expired()
  return ReleaseResponse(**result)
