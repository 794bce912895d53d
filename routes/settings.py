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

"""Checkout settings routes."""

import dependencies
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from models import CheckoutSettingsResponse
from models import CheckoutSettingsUpdate
from services.settings_service import SettingsService

router = APIRouter()


@router.get(
    "/checkout-settings",
    response_model=CheckoutSettingsResponse,
    operation_id="get_checkout_settings",
)
async def get_checkout_settings(
    settings_service: SettingsService = Depends(
        dependencies.get_settings_service
    ),
) -> CheckoutSettingsResponse:
  """Returns the store's active provider, channel and experience."""
  return await settings_service.get_settings()


@router.post(
    "/checkout-settings",
    response_model=CheckoutSettingsResponse,
    operation_id="update_checkout_settings",
    dependencies=[Depends(dependencies.verify_admin)],
)
async def update_checkout_settings(
    update: CheckoutSettingsUpdate = Body(...),
    settings_service: SettingsService = Depends(
        dependencies.get_settings_service
    ),
) -> CheckoutSettingsResponse:
  """Changes the store's checkout route."""
  return await settings_service.update_settings(update)
