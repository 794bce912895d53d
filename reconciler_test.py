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

"""Tests for order reconciliation against the payment provider."""

import datetime

from absl.testing import absltest
from enums import OrderStatus
from enums import PaymentOutcome
import httpx
import reconcile_stale
from server import app
import testbase


class ReconcileOrderTest(testbase.CheckoutTestCase):

  def _reconcile(self, body=None, headers=None):
    return self.client.post(
        "/reconcile-order",
        json=body,
        headers=headers if headers is not None else self.admin_headers(),
    )

  def test_requires_admin(self):
    order_id = self.create_order(transaction_id="pi_1")

    response = self._reconcile({"order_id": order_id}, headers={})

    self.assertEqual(response.status_code, 401)

  def test_requires_order_id(self):
    self.assertEqual(self._reconcile({}).status_code, 400)
    self.assertEqual(self._reconcile().status_code, 400)

  def test_unknown_order(self):
    response = self._reconcile({"order_id": "missing"})

    self.assertEqual(response.status_code, 404)
    self.assertEqual(response.json()["code"], "RESOURCE_NOT_FOUND")

  def test_succeeded_payment_marks_order_paid(self):
    order_id = self.create_order(transaction_id="pi_1")
    self.gateway.outcomes["pi_1"] = PaymentOutcome.SUCCEEDED

    response = self.client.post(
        "/reconcile-order",
        json={"order_id": order_id},
        headers={**self.admin_headers(), "X-Request-Id": "req-42"},
    )

    self.assertEqual(response.status_code, 200)
    self.assertEqual(
        response.json(),
        {
            "ok": True,
            "order_id": order_id,
            "previous_status": "pending",
            "new_status": "paid",
            "payment_synced": True,
            "correlation_id": "req-42",
        },
    )
    order = self.get_order(order_id)
    self.assertEqual(order.status, "paid")
    self.assertEqual(order.last_webhook_event, "reconcile_order")
    self.assertLen(self.get_payments(order_id), 1)

    # A second run finds nothing left to do.
    response = self._reconcile({"order_id": order_id})
    self.assertEqual(response.json()["previous_status"], "paid")
    self.assertEqual(response.json()["new_status"], "paid")
    self.assertTrue(response.json()["payment_synced"])
    self.assertLen(self.get_payments(order_id), 1)

  def test_pending_payment_leaves_order_pending(self):
    order_id = self.create_order(transaction_id="pi_1")

    response = self._reconcile({"order_id": order_id})

    self.assertEqual(response.status_code, 200)
    self.assertEqual(response.json()["new_status"], "pending")
    self.assertFalse(response.json()["payment_synced"])

  def test_processing_payment_leaves_order_pending(self):
    order_id = self.create_order(transaction_id="pi_1")
    self.gateway.outcomes["pi_1"] = PaymentOutcome.PROCESSING

    response = self._reconcile({"order_id": order_id})

    self.assertEqual(response.status_code, 200)
    self.assertEqual(response.json()["new_status"], "pending")
    self.assertEqual(self.get_order(order_id).status, "pending")
    self.assertEqual(self.get_reservations(order_id)[0].status, "active")

    # Once the provider settles, the same order is reconciled to paid.
    self.gateway.outcomes["pi_1"] = PaymentOutcome.SUCCEEDED
    response = self._reconcile({"order_id": order_id})

    self.assertEqual(response.json()["previous_status"], "pending")
    self.assertEqual(response.json()["new_status"], "paid")
    self.assertLen(self.get_payments(order_id), 1)

  def test_processing_order_is_settled(self):
    order_id = self.create_order(
        status=OrderStatus.PROCESSING, transaction_id="pi_1"
    )
    self.gateway.outcomes["pi_1"] = PaymentOutcome.PROCESSING

    response = self._reconcile({"order_id": order_id})
    self.assertEqual(response.json()["new_status"], "processing")

    self.gateway.outcomes["pi_1"] = PaymentOutcome.SUCCEEDED
    response = self._reconcile({"order_id": order_id})

    self.assertEqual(response.status_code, 200)
    self.assertEqual(response.json()["previous_status"], "processing")
    self.assertEqual(response.json()["new_status"], "paid")
    self.assertTrue(response.json()["payment_synced"])
    self.assertEqual(self.get_order(order_id).status, "paid")

  def test_processing_webhook_then_failed_payment(self):
    order_id = self.create_order(transaction_id="pi_1")
    payload = testbase.stripe_event(
        "payment_intent.processing",
        {"id": "pi_1", "metadata": {"order_id": order_id}},
    )
    self.client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": testbase.stripe_signature(payload)},
    )
    self.assertEqual(self.get_order(order_id).status, "processing")
    self.gateway.outcomes["pi_1"] = PaymentOutcome.FAILED

    response = self._reconcile({"order_id": order_id})

    self.assertEqual(response.json()["new_status"], "failed")
    self.assertEqual(self.get_stock("ring-14"), 5)

  def test_failed_payment_releases_stock(self):
    order_id = self.create_order(transaction_id="pi_1", quantity=2)
    self.gateway.outcomes["pi_1"] = PaymentOutcome.FAILED

    response = self._reconcile({"order_id": order_id})

    self.assertEqual(response.json()["new_status"], "failed")
    self.assertEqual(self.get_stock("ring-14"), 5)

  def test_provider_failure_leaves_order_unchanged(self):
    order_id = self.create_order(transaction_id="pi_1")
    self.gateway.unavailable = True

    response = self._reconcile({"order_id": order_id})

    self.assertEqual(response.status_code, 502)
    self.assertEqual(response.json()["code"], "PROVIDER_UNAVAILABLE")
    self.assertEqual(self.get_order(order_id).status, "pending")

  def test_orders_that_are_not_pending_are_not_looked_up(self):
    order_id = self.create_order(
        status=OrderStatus.CANCELLED, transaction_id="pi_1", reserve=False
    )
    self.gateway.unavailable = True

    response = self._reconcile({"order_id": order_id})

    self.assertEqual(response.status_code, 200)
    self.assertEqual(response.json()["new_status"], "cancelled")

  def test_orders_without_provider_reference_are_not_looked_up(self):
    order_id = self.create_order()
    self.gateway.unavailable = True

    response = self._reconcile({"order_id": order_id})

    self.assertEqual(response.status_code, 200)
    self.assertEqual(response.json()["new_status"], "pending")


class ReconcileStaleTest(testbase.CheckoutTestCase):

  def _sweep(self):
    return self.run_async(
        reconcile_stale.reconcile_stale(
            self.session_factory,
            "http://checkout.test",
            testbase.ADMIN_KEY,
            hours=2.0,
            transport=httpx.ASGITransport(app=app),
        )
    )

  def test_counts_only_orders_whose_status_changed(self):
    stale = datetime.timedelta(hours=3)
    paid_id = self.create_order(transaction_id="pi_paid", created_ago=stale)
    waiting_id = self.create_order(
        transaction_id="pi_waiting", created_ago=stale
    )
    processing_id = self.create_order(
        status=OrderStatus.PROCESSING,
        transaction_id="pi_processing",
        created_ago=stale,
    )
    recent_id = self.create_order(transaction_id="pi_recent")
    self.gateway.outcomes["pi_paid"] = PaymentOutcome.SUCCEEDED
    self.gateway.outcomes["pi_processing"] = PaymentOutcome.SUCCEEDED
    self.gateway.outcomes["pi_recent"] = PaymentOutcome.SUCCEEDED

    result = self._sweep()

    self.assertEqual(
        result,
        reconcile_stale.SweepResult(selected=3, checked=3, changed=2),
    )
    self.assertEqual(self.get_order(paid_id).status, "paid")
    self.assertEqual(self.get_order(waiting_id).status, "pending")
    self.assertEqual(self.get_order(processing_id).status, "paid")
    self.assertEqual(self.get_order(recent_id).status, "pending")

  def test_failed_calls_are_not_counted(self):
    self.create_order(
        transaction_id="pi_1", created_ago=datetime.timedelta(hours=3)
    )
    self.gateway.unavailable = True

    result = self._sweep()

    self.assertEqual(
        result,
        reconcile_stale.SweepResult(selected=1, checked=0, changed=0),
    )


if __name__ == "__main__":
  absltest.main()
