from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import override_settings
from django.urls import reverse
from rest_framework.test import APITestCase

from execution.models import Order, Position
from execution.test_utils import make_symbol, make_trader
from jobs.models import JobQueueEntry


@override_settings(
    MIDDLEWARE=[
        "django.middleware.security.SecurityMiddleware",
        "django.contrib.sessions.middleware.SessionMiddleware",
        "django.middleware.common.CommonMiddleware",
        "django.middleware.csrf.CsrfViewMiddleware",
        "django.contrib.auth.middleware.AuthenticationMiddleware",
        "django.contrib.messages.middleware.MessageMiddleware",
        "django.middleware.clickjacking.XFrameOptionsMiddleware",
    ]
)
class LadderApiTest(APITestCase):
    def setUp(self):
        user_model = get_user_model()
        self.user = user_model.objects.create_user(
            username="operator",
            email="operator@example.com",
            password="secret-123",
        )
        self.client.force_authenticate(self.user)
        self.trader = make_trader()
        self.symbol = make_symbol(self.trader.exchange)
        self.position = Position.objects.create(
            trader=self.trader,
            exchange_symbol=self.symbol,
            status=Position.Status.SYNCED,
            side=Position.Side.LONG,
            total_trade_amount=Decimal("1000"),
        )
        Order.objects.create(position=self.position, type=Order.Type.MARKET, status=Order.Status.SYNCED)
        Order.objects.create(position=self.position, type=Order.Type.PROFIT, status=Order.Status.SYNCED)

    def test_positions_list_nests_orders(self):
        resp = self.client.get(reverse("position-list"))

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(len(body), 1)
        self.assertEqual(body[0]["trader"], "alice")
        self.assertEqual(body[0]["symbol"], "BTCUSDT")
        self.assertEqual({o["type"] for o in body[0]["orders"]}, {Order.Type.MARKET, Order.Type.PROFIT})
        self.assertTrue(all(len(o["client_order_id"]) == 32 for o in body[0]["orders"]))

        filtered = self.client.get(reverse("position-list"), {"status": Position.Status.CLOSED})
        self.assertEqual(filtered.json(), [])

    def test_rollback_action_queues_job_once(self):
        url = reverse("position-rollback", args=[self.position.pk])

        first = self.client.post(url)
        second = self.client.post(url)

        self.assertEqual(first.status_code, 202)
        self.assertTrue(first.json()["queued"])
        self.assertEqual(second.json(), {"queued": False, "job_id": None})
        entry = JobQueueEntry.objects.get(job_class="rollback-position")
        self.assertEqual(entry.arguments, [self.position.pk])
        self.assertEqual(first.json()["job_id"], entry.pk)

    def test_rollback_of_terminal_position_conflicts(self):
        Position.objects.filter(pk=self.position.pk).update(status=Position.Status.CLOSED)

        resp = self.client.post(reverse("position-rollback", args=[self.position.pk]))

        self.assertEqual(resp.status_code, 409)
        self.assertFalse(JobQueueEntry.objects.exists())

    def test_retry_only_failed_jobs(self):
        failed = JobQueueEntry.objects.create(
            job_class="validate-position",
            arguments=[self.position.pk],
            group_id="g-1",
            status=JobQueueEntry.Status.FAILED,
            error_message="boom",
        )
        done = JobQueueEntry.objects.create(
            job_class="validate-position",
            arguments=[self.position.pk],
            status=JobQueueEntry.Status.COMPLETED,
        )

        resp = self.client.post(reverse("job-retry", args=[failed.pk]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], JobQueueEntry.Status.PENDING)

        resp = self.client.post(reverse("job-retry", args=[done.pk]))
        self.assertEqual(resp.status_code, 409)

    def test_resolve_group_completes_the_batch(self):
        failed = JobQueueEntry.objects.create(
            job_class="dispatch-order",
            arguments=[1],
            group_id="batch-7",
            status=JobQueueEntry.Status.FAILED,
        )
        JobQueueEntry.objects.create(job_class="dispatch-order", arguments=[2], group_id="batch-7")
        loose = JobQueueEntry.objects.create(job_class="dispatch-order", arguments=[3])

        resp = self.client.post(
            reverse("job-resolve-group", args=[failed.pk]),
            {"note": "cleaned up by hand"},
            format="json",
        )

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"group_id": "batch-7", "resolved": 2})
        failed.refresh_from_db()
        self.assertEqual(failed.status, JobQueueEntry.Status.COMPLETED)
        self.assertIn("cleaned up by hand", failed.error_message)

        resp = self.client.post(reverse("job-resolve-group", args=[loose.pk]))
        self.assertEqual(resp.status_code, 400)

    def test_jobs_filter_by_group(self):
        JobQueueEntry.objects.create(job_class="dispatch-order", arguments=[1], group_id="a")
        JobQueueEntry.objects.create(job_class="dispatch-order", arguments=[2], group_id="b")

        resp = self.client.get(reverse("job-list"), {"group": "b"})

        self.assertEqual([row["arguments"] for row in resp.json()], [[2]])

    def test_anonymous_clients_cannot_trigger_actions(self):
        self.client.force_authenticate(None)

        resp = self.client.post(reverse("position-rollback", args=[self.position.pk]))

        self.assertIn(resp.status_code, (401, 403))
        self.assertFalse(JobQueueEntry.objects.exists())

    def test_health_reports_job_counts(self):
        JobQueueEntry.objects.create(job_class="dispatch-order", arguments=[1], status=JobQueueEntry.Status.FAILED)

        resp = self.client.get(reverse("health"))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok", "jobs": {"running": 0, "failed": 1}})
