"""
Load tests using Locust.

Replays signed Stripe webhook deliveries at high concurrency to check that
redeliveries stay idempotent and the pool holds up.

Run with:
    STRIPE_WEBHOOK_SECRET=whsec_... KYVER_LOAD_REFERENCE=kyv_... \
    locust -f tests/locustfile.py --host=http://localhost:8080
"""
import hashlib
import hmac
import json
import os
import time
import uuid

from locust import HttpUser, between, task

WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
# Reference of a Pending invoice to pay; unknown references are acknowledged too
REFERENCE = os.environ.get("KYVER_LOAD_REFERENCE", "kyv_load_test")


def signed_delivery(event_id: str, reference: str) -> tuple[str, dict]:
    payload = json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": f"cs_load_{event_id}",
                    "client_reference_id": reference,
                    "payment_status": "paid",
                }
            },
        }
    )
    timestamp = int(time.time())
    signature = hmac.new(
        WEBHOOK_SECRET.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256
    ).hexdigest()
    return payload, {
        "Stripe-Signature": f"t={timestamp},v1={signature}",
        "Content-Type": "application/json",
    }


class WebhookUser(HttpUser):
    """
    Simulated provider delivering distinct events.

    Every event is new, so each one goes through verification and the
    reconciler.
    """

    wait_time = between(0.5, 1.5)

    @task(10)
    def deliver_event(self) -> None:
        payload, headers = signed_delivery(f"evt_load_{uuid.uuid4().hex}", f"kyv_{uuid.uuid4().hex}")

        with self.client.post(
            "/webhooks/stripe", data=payload, headers=headers, catch_response=True
        ) as response:
            if response.status_code == 200:
                response.success()
            else:
                response.failure(f"Unexpected status: {response.status_code}")

    @task(3)
    def get_health(self) -> None:
        """Check health endpoint."""
        self.client.get("/health")

    @task(1)
    def get_metrics(self) -> None:
        """Check metrics endpoint."""
        self.client.get("/metrics")


class DuplicateDeliveryUser(HttpUser):
    """
    Test idempotency under load.

    All users redeliver the same event; exactly one delivery may report
    ``processed``.
    """

    wait_time = between(0.1, 0.5)

    @task
    def redeliver_event(self) -> None:
        payload, headers = signed_delivery("evt_load_duplicate", REFERENCE)

        with self.client.post(
            "/webhooks/stripe", data=payload, headers=headers, catch_response=True
        ) as response:
            if response.status_code != 200:
                response.failure(f"Unexpected status: {response.status_code}")
            elif response.json()["status"] not in ("processed", "duplicate", "unknown_invoice"):
                response.failure(f"Unexpected result: {response.json()}")
            else:
                response.success()


"""
Load Test Scenarios:

1. Distinct deliveries:
   locust -f tests/locustfile.py --host=http://localhost:8080 --users=100 --spawn-rate=10 WebhookUser

2. Duplicate storm (pay one Pending invoice from many workers):
   locust -f tests/locustfile.py --host=http://localhost:8080 --users=200 --spawn-rate=50 DuplicateDeliveryUser

Success Criteria:
- p95 latency: <500ms
- Error rate: <1% (503s mean the store pool is undersized)
- Exactly one payment_events row for evt_load_duplicate
- The invoice behind KYVER_LOAD_REFERENCE ends Paid with one chat notification
"""
