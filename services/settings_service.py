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

"""Reads and updates the store's checkout route."""

import logging

import db
from enums import Channel
from enums import Experience
from enums import Provider
from exceptions import BadRequestError
from models import CheckoutSettingsResponse
from models import CheckoutSettingsUpdate
from services.payment_gateways import CheckoutRoute
from services.payment_gateways import DEFAULT_ROUTE
from services.payment_gateways import SUPPORTED_ROUTES
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class SettingsService:
  """Service for the single-row checkout settings."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def get_route(self) -> CheckoutRoute:
    """Returns the configured route, or the default when none is stored."""
    row = await db.get_checkout_settings(self.session)
    if row is None:
      return DEFAULT_ROUTE
    try:
      route = CheckoutRoute(
          Provider(row.provider),
          Channel(row.channel),
          Experience(row.experience),
      )
    except ValueError:
      logger.warning("Stored checkout settings are invalid; using default")
      return DEFAULT_ROUTE
    if route not in SUPPORTED_ROUTES:
      logger.warning("Stored checkout route %s is unsupported", route)
      return DEFAULT_ROUTE
    return route

  async def get_settings(self) -> CheckoutSettingsResponse:
    route = await self.get_route()
    row = await db.get_checkout_settings(self.session)
    return CheckoutSettingsResponse(
        active_provider=route.provider,
        channel=route.channel,
        experience=route.experience,
        updated_at=row.updated_at if row else None,
    )

  async def update_settings(
      self, update: CheckoutSettingsUpdate
  ) -> CheckoutSettingsResponse:
    """Stores a new route and appends an audit entry.

    Raises:
      BadRequestError: If no gateway supports the combination.
    """
    route = CheckoutRoute(
        update.active_provider, update.channel, update.experience
    )
    if route not in SUPPORTED_ROUTES:
      raise BadRequestError(
          f"Unsupported checkout route {update.active_provider.value}/"
          f"{update.channel.value}/{update.experience.value}"
      )
    row = await db.save_checkout_settings(
        self.session,
        route.provider,
        route.channel,
        route.experience,
        update.change_reason,
    )
    await self.session.commit()
    logger.info(
        "Checkout route set to %s/%s/%s",
        route.provider.value,
        route.channel.value,
        route.experience.value,
    )
    return CheckoutSettingsResponse(
        active_provider=route.provider,
        channel=route.channel,
        experience=route.experience,
        updated_at=row.updated_at,
    )
