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

"""Integration tests for the checkout server."""

import asyncio
import datetime
from unittest import mock

from absl.testing import absltest
from absl.testing import flagsaver
import db
from enums import OrderStatus
from sqlalchemy import select
from sqlalchemy import update
import testbase


class SlowStripeGateway(testbase.FakeStripeGateway):
  """Stripe gateway that does not answer within the router budget."""

  async def create_session(self, *args, **kwargs):
    await asyncio.sleep(5)
    return await super().create_session(*args, **kwargs)


class RacingStripeGateway(testbase.FakeStripeGateway):
  """Stripe gateway that loses the charge claim to another start.

  Before answering, a competing session claims the order with its own
  PaymentIntent.
  """

  def __init__(self, session_factory):
    super().__init__()
    self.session_factory = session_factory

  async def create_session(self, order, items, route, success_url, cancel_url):
    async with self.session_factory() as session:
      assert await db.claim_transaction(
          session, order.id, f"pi_winner_{order.id}"
      )
      await session.commit()
    return await super().create_session(
        order, items, route, success_url, cancel_url
    )


class CheckoutRouterTest(testbase.CheckoutTestCase):
  """Tests for POST /checkout-router."""

  def _request_logs(self):
    async def run():
      async with self.session_factory() as session:
        result = await session.execute(select(db.RequestLog))
        return list(result.scalars().all())

    return self.run_async(run())

  async def _orders(self):
    async with self.session_factory() as session:
      result = await session.execute(select(db.Order))
      return list(result.scalars().all())

  def _set_route(self, provider, channel, experience):
    response = self.client.post(
        "/checkout-settings",
        json={
            "active_provider": provider,
            "channel": channel,
            "experience": experience,
            "change_reason": "test",
        },
        headers=self.admin_headers(),
    )
    self.assertEqual(response.status_code, 200, response.text)

  def test_start_renders_internal_checkout(self):
    response = self.client.post(
        "/checkout-router",
        json=self.start_payload(
            cart_id="cart-1",
            items=[{"variant_id": "ring-14", "quantity": 2}],
            shipping_cost="15.00",
            total_amount="215.00",
        ),
        headers={"X-Request-Id": "corr-1"},
    )

    self.assertEqual(response.status_code, 200, response.text)
    body = response.json()
    self.assertTrue(body["success"])
    self.assertEqual(body["provider"], "stripe")
    self.assertEqual(body["channel"], "internal")
    self.assertEqual(body["experience"], "transparent")
    self.assertEqual(body["action"], "render")
    self.assertEqual(
        body["client_secret"], f"pi_fake_{body['order_id']}_secret"
    )
    self.assertNotIn("redirect_url", body)

    order = self.get_order(body["order_id"])
    self.assertEqual(order.status, "pending")
    self.assertEqual(order.cart_id, "cart-1")
    self.assertEqual(order.subtotal, 20000)
    self.assertEqual(order.shipping_cost, 1500)
    self.assertEqual(order.total_amount, 21500)
    self.assertEqual(order.transaction_id, f"pi_fake_{order.id}")
    self.assertEqual(order.access_token, body["order_access_token"])
    self.assertEqual(self.get_stock("ring-14"), 3)
    self.assertLen(self.get_reservations(order.id), 1)
    logs = self._request_logs()
    self.assertLen(logs, 1)
    self.assertEqual(logs[0].correlation_id, "corr-1")
    self.assertEqual(logs[0].cart_id, "cart-1")

  def test_start_redirects_for_external_route(self):
    self._set_route("stripe", "external", "native")

    response = self.start()

    self.assertEqual(response.status_code, 200, response.text)
    body = response.json()
    self.assertEqual(body["action"], "redirect")
    self.assertEqual(body["channel"], "external")
    self.assertEqual(
        body["redirect_url"],
        f"https://checkout.stripe.test/cs_fake_{body['order_id']}",
    )
    self.assertNotIn("client_secret", body)

  def test_coupon_is_applied_server_side(self):
    response = self.start(coupon_code="welcome10", total_amount="90.00")

    self.assertEqual(response.status_code, 200, response.text)
    order = self.get_order(response.json()["order_id"])
    self.assertEqual(order.discount_amount, 1000)
    self.assertEqual(order.total_amount, 9000)
    self.assertEqual(order.coupon_code, "WELCOME10")

  def test_invalid_coupon_is_rejected(self):
    response = self.start(coupon_code="NOPE")

    self.assertEqual(response.status_code, 400)
    self.assertEqual(self.count(db.Order), 0)

  def test_same_request_id_replays_response(self):
    payload = self.start_payload()

    first = self.client.post("/checkout-router", json=payload)
    second = self.client.post("/checkout-router", json=payload)

    self.assertEqual(first.status_code, 200)
    self.assertEqual(second.status_code, 200)
    self.assertEqual(first.json(), second.json())
    self.assertLen(self.gateway.created, 1)
    self.assertEqual(self.count(db.Order), 1)
    self.assertEqual(self.get_stock("ring-14"), 4)

  def test_same_request_id_with_different_body_conflicts(self):
    payload = self.start_payload()
    self.client.post("/checkout-router", json=payload)

    payload["items"] = [{"variant_id": "ring-14", "quantity": 2}]
    response = self.client.post("/checkout-router", json=payload)

    self.assertEqual(response.status_code, 409)
    self.assertEqual(response.json()["code"], "IDEMPOTENCY_CONFLICT")
    self.assertLen(self.gateway.created, 1)

  def test_price_mismatch_is_rejected(self):
    response = self.start(total_amount="1.00")

    self.assertEqual(response.status_code, 422)
    body = response.json()
    self.assertFalse(body["success"])
    self.assertEqual(body["code"], "PRICE_MISMATCH")
    self.assertEqual(self.count(db.Order), 0)
    self.assertEqual(self.get_stock("ring-14"), 5)
    self.assertEmpty(self.gateway.created)

  def test_price_within_tolerance_is_accepted(self):
    response = self.start(total_amount="100.05")

    self.assertEqual(response.status_code, 200, response.text)
    order = self.get_order(response.json()["order_id"])
    self.assertEqual(order.total_amount, 10000)

  def test_client_unit_price_is_ignored(self):
    response = self.start(
        items=[{"variant_id": "ring-14", "quantity": 1, "unit_price": "0.01"}]
    )

    self.assertEqual(response.status_code, 200, response.text)
    order = self.get_order(response.json()["order_id"])
    self.assertEqual(order.total_amount, 10000)

  def test_out_of_stock_creates_nothing(self):
    response = self.start(
        items=[
            {"variant_id": "ring-14", "quantity": 1},
            {"variant_id": "necklace-45", "quantity": 3},
        ]
    )

    self.assertEqual(response.status_code, 409)
    self.assertEqual(response.json()["code"], "OUT_OF_STOCK")
    self.assertEqual(self.count(db.Order), 0)
    self.assertEqual(self.count(db.OrderItem), 0)
    self.assertEqual(self.count(db.Reservation), 0)
    self.assertEqual(self.get_stock("ring-14"), 5)
    self.assertEqual(self.get_stock("necklace-45"), 2)
    # The failed request can be retried under the same id.
    self.assertEqual(self.count(db.IdempotencyRecord), 0)

  def test_unknown_variant_is_not_found(self):
    response = self.start(items=[{"variant_id": "missing", "quantity": 1}])

    self.assertEqual(response.status_code, 404)
    self.assertEqual(response.json()["code"], "RESOURCE_NOT_FOUND")

  def test_malformed_payloads_are_bad_requests(self):
    cases = {
        "unsupported route": self.start_payload(route="refund"),
        "missing request_id": {
            k: v for k, v in self.start_payload().items() if k != "request_id"
        },
        "no items": self.start_payload(items=[]),
        "zero quantity": self.start_payload(
            items=[{"variant_id": "ring-14", "quantity": 0}]
        ),
        "negative shipping": self.start_payload(shipping_cost="-1"),
        "shipping beyond integer range": self.start_payload(shipping_cost=1e20),
        "total beyond integer range": self.start_payload(
            total_amount="100000000000000000000"
        ),
        "huge quantity": self.start_payload(
            items=[{"variant_id": "ring-14", "quantity": 10**19}]
        ),
        "not an object": ["start"],
    }
    for name, payload in cases.items():
      with self.subTest(name):
        response = self.client.post("/checkout-router", json=payload)
        self.assertEqual(response.status_code, 400, response.text)
        self.assertEqual(response.json()["code"], "BAD_REQUEST")
    self.assertEqual(self.count(db.Order), 0)

    response = self.client.post(
        "/checkout-router",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    self.assertEqual(response.status_code, 400)

  def test_rate_limit_per_cart_and_ip(self):
    items = [{"variant_id": "missing", "quantity": 1}]
    for _ in range(30):
      response = self.start(cart_id="cart-busy", items=items)
      self.assertEqual(response.status_code, 404)

    response = self.start(cart_id="cart-busy", items=items)

    self.assertEqual(response.status_code, 429)
    self.assertEqual(response.json()["code"], "RATE_LIMITED")
    self.assertGreaterEqual(int(response.headers["Retry-After"]), 1)

    # Other carts are unaffected.
    self.assertEqual(self.start(cart_id="cart-calm").status_code, 200)

  def test_resume_requires_access_token(self):
    first = self.start(cart_id="cart-1").json()

    anonymous = self.start(cart_id="cart-1")
    self.assertEqual(anonymous.status_code, 404)

    resumed = self.start(
        cart_id="cart-1", order_access_token=first["order_access_token"]
    )
    self.assertEqual(resumed.status_code, 200, resumed.text)
    self.assertEqual(resumed.json()["order_id"], first["order_id"])
    self.assertEqual(resumed.json()["client_secret"], first["client_secret"])
    self.assertLen(self.gateway.created, 1)
    self.assertEqual(self.get_stock("ring-14"), 4)

  def test_resume_by_user_id(self):
    first = self.start(cart_id="cart-1", user_id="user-7").json()

    resumed = self.start(cart_id="cart-1", user_id="user-7")

    self.assertEqual(resumed.status_code, 200, resumed.text)
    self.assertEqual(resumed.json()["order_id"], first["order_id"])

  def test_started_payment_cannot_change_total(self):
    first = self.start(cart_id="cart-1").json()

    response = self.start(
        cart_id="cart-1",
        order_access_token=first["order_access_token"],
        items=[{"variant_id": "ring-14", "quantity": 2}],
    )

    self.assertEqual(response.status_code, 409)
    self.assertEqual(response.json()["code"], "CHECKOUT_NOT_MODIFIABLE")
    self.assertEqual(self.get_stock("ring-14"), 4)

  def test_paid_order_completes_without_new_charge(self):
    first = self.start(cart_id="cart-1").json()
    order_id = first["order_id"]
    payload = testbase.stripe_event(
        "payment_intent.succeeded",
        {"id": f"pi_fake_{order_id}", "metadata": {"order_id": order_id}},
    )
    webhook = self.client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": testbase.stripe_signature(payload)},
    )
    self.assertEqual(webhook.status_code, 200, webhook.text)

    response = self.start(
        cart_id="cart-1", order_access_token=first["order_access_token"]
    )

    self.assertEqual(response.status_code, 200, response.text)
    self.assertEqual(response.json()["action"], "complete")
    self.assertEqual(response.json()["order_id"], order_id)
    self.assertLen(self.gateway.created, 1)

  def test_cancelled_order_cannot_be_restarted(self):
    first = self.start(cart_id="cart-1").json()
    order_id = first["order_id"]
    payload = testbase.stripe_event(
        "payment_intent.canceled",
        {"id": f"pi_fake_{order_id}", "metadata": {"order_id": order_id}},
    )
    self.client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": testbase.stripe_signature(payload)},
    )
    self.assertEqual(self.get_order(order_id).status, OrderStatus.CANCELLED)

    response = self.start(
        cart_id="cart-1", order_access_token=first["order_access_token"]
    )

    self.assertEqual(response.status_code, 409)
    self.assertEqual(self.get_stock("ring-14"), 5)

  def test_provider_failure_keeps_order_pending_and_retryable(self):
    payload = self.start_payload(cart_id="cart-1")
    self.gateway.unavailable = True

    response = self.client.post("/checkout-router", json=payload)

    self.assertEqual(response.status_code, 502)
    self.assertEqual(response.json()["code"], "PROVIDER_UNAVAILABLE")
    self.assertEqual(self.count(db.Order), 1)
    self.assertEqual(self.count(db.IdempotencyRecord), 0)

    self.gateway.unavailable = False
    response = self.client.post("/checkout-router", json=payload)

    self.assertEqual(response.status_code, 200, response.text)
    self.assertEqual(self.count(db.Order), 1)
    self.assertLen(self.gateway.created, 1)
    self.assertEqual(self.get_stock("ring-14"), 4)

  def _expire_reservations(self):
    async def run():
      async with self.session_factory() as session:
        await session.execute(
            update(db.Reservation).values(
                expires_at=db.utcnow() - datetime.timedelta(minutes=1)
            )
        )
        await session.commit()

    self.run_async(run())

  def _set_stock(self, variant_id, quantity):
    async def run():
      async with self.session_factory() as session:
        await session.execute(
            update(db.ProductVariant)
            .where(db.ProductVariant.id == variant_id)
            .values(stock_quantity=quantity)
        )
        await session.commit()

    self.run_async(run())

  def _release_expired(self):
    response = self.client.post(
        "/release-expired-reservations", headers=self.admin_headers()
    )
    self.assertEqual(response.status_code, 200, response.text)
    return response.json()

  def test_started_payment_cannot_change_items(self):
    first = self.start(cart_id="cart-1").json()

    # Two necklaces cost exactly what one ring does.
    response = self.start(
        cart_id="cart-1",
        order_access_token=first["order_access_token"],
        items=[{"variant_id": "necklace-45", "quantity": 2}],
    )

    self.assertEqual(response.status_code, 409)
    self.assertEqual(response.json()["code"], "CHECKOUT_NOT_MODIFIABLE")
    self.assertEqual(self.get_stock("necklace-45"), 2)
    self.assertEqual(self.get_stock("ring-14"), 4)

  def test_resume_after_sweep_reserves_stock_again(self):
    first = self.start(cart_id="cart-1").json()
    order_id = first["order_id"]
    self._expire_reservations()
    self.assertEqual(self._release_expired()["released"], 1)
    self.assertEqual(self.get_order(order_id).status, "pending")
    self.assertEqual(self.get_stock("ring-14"), 5)

    resumed = self.start(
        cart_id="cart-1", order_access_token=first["order_access_token"]
    )

    self.assertEqual(resumed.status_code, 200, resumed.text)
    self.assertEqual(resumed.json()["client_secret"], first["client_secret"])
    self.assertLen(self.gateway.created, 1)
    self.assertEqual(self.get_stock("ring-14"), 4)
    statuses = [r.status for r in self.get_reservations(order_id)]
    self.assertEqual(statuses, ["active"])

  def test_resume_after_sweep_fails_when_stock_is_gone(self):
    first = self.start(cart_id="cart-1").json()
    order_id = first["order_id"]
    self._expire_reservations()
    self._release_expired()
    self._set_stock("ring-14", 0)

    resumed = self.start(
        cart_id="cart-1", order_access_token=first["order_access_token"]
    )

    self.assertEqual(resumed.status_code, 409)
    self.assertEqual(resumed.json()["code"], "OUT_OF_STOCK")
    self.assertEqual(self.get_order(order_id).status, "pending")
    self.assertEqual(self.get_stock("ring-14"), 0)
    statuses = [r.status for r in self.get_reservations(order_id)]
    self.assertEqual(statuses, ["released"])

  def test_timeout_leaves_order_pending_and_request_retryable(self):
    payload = self.start_payload(cart_id="cart-1")
    self.gateway = SlowStripeGateway()

    with flagsaver.flagsaver(router_timeout_seconds=0.05):
      response = self.client.post("/checkout-router", json=payload)

    self.assertEqual(response.status_code, 504)
    self.assertEqual(response.json()["code"], "TIMEOUT")
    (order,) = self.run_async(self._orders())
    self.assertEqual(order.status, "pending")
    self.assertIsNone(order.transaction_id)
    self.assertEqual(self.count(db.IdempotencyRecord), 0)

    self.gateway = testbase.FakeStripeGateway()
    response = self.client.post("/checkout-router", json=payload)

    self.assertEqual(response.status_code, 200, response.text)
    self.assertEqual(response.json()["order_id"], order.id)
    self.assertEqual(self.get_stock("ring-14"), 4)

  def test_concurrent_claim_uses_the_winning_session(self):
    self.gateway = RacingStripeGateway(self.session_factory)

    response = self.start(cart_id="cart-1")

    self.assertEqual(response.status_code, 200, response.text)
    order_id = response.json()["order_id"]
    winner = f"pi_winner_{order_id}"
    self.assertEqual(response.json()["client_secret"], f"{winner}_secret")
    self.assertEqual(self.get_order(order_id).transaction_id, winner)

  def test_concurrent_start_for_same_cart_conflicts(self):
    first = self.start(cart_id="cart-1")
    self.assertEqual(first.status_code, 200, first.text)

    # The second start misses the first order on read and loses the insert.
    with mock.patch.object(
        db, "get_order_by_cart", mock.AsyncMock(return_value=None)
    ):
      response = self.start(cart_id="cart-1")

    self.assertEqual(response.status_code, 409)
    self.assertEqual(response.json()["code"], "IDEMPOTENCY_CONFLICT")
    self.assertEqual(self.count(db.Order), 1)
    self.assertEqual(self.count(db.Reservation), 1)
    self.assertEqual(self.get_stock("ring-14"), 4)
    self.assertLen(self.gateway.created, 1)


class CheckoutSettingsTest(testbase.CheckoutTestCase):
  """Tests for the checkout settings endpoints."""

  def _update(self, body, headers=None):
    return self.client.post(
        "/checkout-settings",
        json=body,
        headers=headers if headers is not None else self.admin_headers(),
    )

  def test_defaults_to_stripe_internal(self):
    response = self.client.get("/checkout-settings")

    self.assertEqual(response.status_code, 200)
    self.assertEqual(
        response.json(),
        {
            "active_provider": "stripe",
            "channel": "internal",
            "experience": "transparent",
            "updated_at": None,
        },
    )

  def test_update_requires_admin(self):
    body = {
        "active_provider": "yampi",
        "channel": "external",
        "experience": "native",
    }
    self.assertEqual(self._update(body, headers={}).status_code, 401)
    self.assertEqual(
        self._update(
            body, headers={"Authorization": "Bearer nope"}
        ).status_code,
        401,
    )

  def test_update_changes_route_and_is_audited(self):
    response = self._update({
        "active_provider": "yampi",
        "channel": "external",
        "experience": "native",
        "change_reason": "Black Friday",
    })

    self.assertEqual(response.status_code, 200, response.text)
    self.assertEqual(response.json()["active_provider"], "yampi")
    self.assertIsNotNone(response.json()["updated_at"])
    current = self.client.get("/checkout-settings").json()
    self.assertEqual(current["active_provider"], "yampi")
    self.assertEqual(current["channel"], "external")

    audit = self.run_async(self._audit_rows())
    self.assertLen(audit, 1)
    self.assertIsNone(audit[0].previous_provider)
    self.assertEqual(audit[0].provider, "yampi")
    self.assertEqual(audit[0].change_reason, "Black Friday")

  async def _audit_rows(self):
    async with self.session_factory() as session:
      result = await session.execute(select(db.CheckoutSettingsAudit))
      return list(result.scalars().all())

  def test_unsupported_route_is_rejected(self):
    response = self._update({
        "active_provider": "yampi",
        "channel": "internal",
        "experience": "transparent",
    })
    self.assertEqual(response.status_code, 400)

    response = self._update({
        "active_provider": "paypal",
        "channel": "external",
        "experience": "native",
    })
    self.assertEqual(response.status_code, 400)
    self.assertEqual(response.json()["code"], "BAD_REQUEST")


class ServerTest(testbase.CheckoutTestCase):

  def test_health(self):
    response = self.client.get("/health")

    self.assertEqual(response.status_code, 200)
    self.assertEqual(response.json(), {"ok": True})

  def test_request_id_is_echoed_or_generated(self):
    response = self.client.get("/health", headers={"X-Request-Id": "abc"})
    self.assertEqual(response.headers["X-Request-Id"], "abc")

    response = self.client.get("/health")
    self.assertTrue(response.headers["X-Request-Id"])

  def test_admin_endpoints_reject_when_key_unset(self):
    self.enter_context(flagsaver.flagsaver(admin_api_key=None))

    response = self.client.post(
        "/reconcile-order",
        json={"order_id": "x"},
        headers=self.admin_headers(),
    )

    self.assertEqual(response.status_code, 401)


if __name__ == "__main__":
  absltest.main()
