from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase

from core.exceptions import JobRegistryError
from core.models import ExceptionLog
from jobs.base import Job
from jobs.models import JobQueueEntry, now_ms
from jobs.poller import (
    JobPoller,
    blocked_groups,
    enqueue,
    enqueue_once,
    resolve_group,
    retry_entry,
)
from jobs.registry import build_job, register_job, registered_tags
from jobs.runner import execute_entry
from jobs.tasks import run_job_entry

Status = JobQueueEntry.Status
HANDLED = []


@register_job("test-record")
class RecordJob(Job):
    def __init__(self, value):
        self.value = value

    def handle(self):
        HANDLED.append(self.value)


@register_job("test-defer")
class DeferJob(Job):
    def handle(self):
        self.defer(30)


@register_job("test-boom")
class BoomJob(Job):
    def handle(self):
        raise RuntimeError("boom")


def _entry(status=Status.PENDING, group_id=None, **kwargs):
    kwargs.setdefault("job_class", "test-record")
    kwargs.setdefault("arguments", ["x"])
    return JobQueueEntry.objects.create(status=status, group_id=group_id, **kwargs)


class RegistryTest(TestCase):
    def test_execution_jobs_are_registered_at_startup(self):
        expected = {
            "dispatch-position",
            "validate-position",
            "rollback-position",
            "close-position",
            "dispatch-order",
            "cancel-order",
            "reprice-position",
        }
        self.assertTrue(expected.issubset(registered_tags()))

    def test_unknown_tag_is_rejected_at_enqueue(self):
        with self.assertRaises(JobRegistryError):
            enqueue("no-such-job", [1])
        self.assertFalse(JobQueueEntry.objects.exists())

    def test_bad_arguments_raise_registry_error(self):
        with self.assertRaises(JobRegistryError):
            build_job("test-record", [1, 2, 3])

    def test_duplicate_tag_for_other_class_is_rejected(self):
        with self.assertRaises(JobRegistryError):

            @register_job("test-record")
            class Other(Job):
                pass


class LeaseTest(TestCase):
    def setUp(self):
        self.poller = JobPoller(max_parallel=10, hostname="host-a")

    def test_running_or_failed_entry_blocks_its_group(self):
        _entry(Status.RUNNING, group_id="g-run")
        _entry(Status.FAILED, group_id="g-fail")
        blocked_run = _entry(group_id="g-run")
        blocked_fail = _entry(group_id="g-fail")
        free = _entry(group_id="g-free")
        self.assertEqual(blocked_groups(), {"g-run", "g-fail"})

        leased = self.poller.lease(10)

        self.assertEqual([e.pk for e in leased], [free.pk])
        self.assertEqual(blocked_groups(), {"g-run", "g-fail", "g-free"})
        blocked_run.refresh_from_db()
        blocked_fail.refresh_from_db()
        self.assertEqual(blocked_run.status, Status.PENDING)
        self.assertEqual(blocked_fail.status, Status.PENDING)

    def test_completed_entries_do_not_block(self):
        _entry(Status.COMPLETED, group_id="g")
        pending = _entry(group_id="g")
        self.assertEqual([e.pk for e in self.poller.lease(5)], [pending.pk])

    def test_one_entry_per_group_per_cycle_fifo(self):
        first = _entry(group_id="g")
        _entry(group_id="g")
        ungrouped_a = _entry()
        ungrouped_b = _entry()

        leased = self.poller.lease(10)

        self.assertEqual([e.pk for e in leased], [first.pk, ungrouped_a.pk, ungrouped_b.pk])

    def test_lease_never_exceeds_max_parallel(self):
        entries = [_entry() for _ in range(5)]
        leased = self.poller.lease(2)
        self.assertEqual([e.pk for e in leased], [entries[0].pk, entries[1].pk])
        self.assertEqual(JobQueueEntry.objects.filter(status=Status.RUNNING).count(), 2)
        self.assertEqual(self.poller.lease(0), [])

    def test_entries_not_yet_available_are_skipped(self):
        _entry(available_at=now_ms() + 60_000)
        ready = _entry()
        self.assertEqual([e.pk for e in self.poller.lease(5)], [ready.pk])

    def test_claim_sets_running_metadata(self):
        entry = _entry()
        leased = self.poller.lease(1)[0]

        entry.refresh_from_db()
        self.assertEqual(leased.pk, entry.pk)
        self.assertEqual(entry.status, Status.RUNNING)
        self.assertEqual(entry.hostname, "host-a")
        self.assertEqual(entry.attempts, 1)
        self.assertIsNotNone(entry.started_at)
        self.assertGreater(entry.lease_expires_at, entry.started_at)

    def test_concurrent_pollers_claim_an_entry_once(self):
        entry = _entry()
        other = JobPoller(max_parallel=10, hostname="host-b")

        # Both pollers saw the same candidate before either claimed it.
        with patch.object(JobPoller, "_select_candidates", return_value=[entry.pk]):
            first = self.poller.lease(1)
            second = other.lease(1)

        self.assertEqual([e.pk for e in first], [entry.pk])
        self.assertEqual(second, [])
        entry.refresh_from_db()
        self.assertEqual(entry.hostname, "host-a")
        self.assertEqual(entry.attempts, 1)


class PollOnceTest(TestCase):
    def setUp(self):
        HANDLED.clear()

    def test_capacity_accounts_for_running_entries(self):
        _entry(Status.RUNNING)
        _entry(Status.RUNNING)
        for value in ("a", "b", "c"):
            enqueue("test-record", [value])

        with patch.object(JobPoller, "dispatch", return_value=True) as dispatch:
            leased = JobPoller(max_parallel=3).poll_once()

        self.assertEqual(len(leased), 1)
        dispatch.assert_called_once()

    def test_dispatch_runs_job_on_worker(self):
        entry = enqueue("test-record", ["hello"])

        JobPoller(max_parallel=3).poll_once()

        entry.refresh_from_db()
        self.assertEqual(HANDLED, ["hello"])
        self.assertEqual(entry.status, Status.COMPLETED)
        self.assertIsNotNone(entry.completed_at)
        self.assertIsNotNone(entry.duration)

    def test_unbuildable_entry_is_failed_at_dispatch(self):
        entry = _entry(arguments=["too", "many"])

        with patch("jobs.tasks.run_job_entry.apply_async") as apply_async:
            JobPoller(max_parallel=3).poll_once()

        apply_async.assert_not_called()
        entry.refresh_from_db()
        self.assertEqual(entry.status, Status.FAILED)
        self.assertIn("JobRegistryError", entry.error_message)

    def test_dispatch_targets_host_queue(self):
        enqueue("test-record", ["q"])
        with patch("jobs.tasks.run_job_entry.apply_async") as apply_async:
            JobPoller(max_parallel=1, queue="worker-7").poll_once()
        self.assertEqual(apply_async.call_args.kwargs["queue"], "worker-7")


class RunnerTest(TestCase):
    def _lease(self, job_class, arguments=None):
        enqueue(job_class, arguments or [])
        return JobPoller(max_parallel=1).lease(1)[0]

    def test_deferred_job_returns_to_pending(self):
        entry = self._lease("test-defer")
        before = now_ms()

        outcome = execute_entry(entry)

        entry.refresh_from_db()
        self.assertEqual(outcome, Status.PENDING)
        self.assertEqual(entry.status, Status.PENDING)
        self.assertGreaterEqual(entry.available_at, before + 30_000)
        self.assertEqual(JobPoller(max_parallel=1).lease(1), [])

    def test_deferrals_count_previous_leases(self):
        entry = self._lease("test-record", ["v"])
        entry.attempts = 3
        job = build_job("test-record", ["v"])
        job.set_job_entry(entry)
        self.assertEqual(job.deferrals, 2)

    def test_failing_job_is_logged_and_marked_failed(self):
        entry = self._lease("test-boom")

        with self.assertRaises(RuntimeError):
            execute_entry(entry)

        entry.refresh_from_db()
        self.assertEqual(entry.status, Status.FAILED)
        self.assertEqual(entry.error_message, "RuntimeError: boom")
        log = ExceptionLog.objects.get()
        self.assertEqual(log.context["job_entry_id"], entry.pk)

    def test_task_skips_entries_that_are_not_running(self):
        entry = enqueue("test-record", ["never"])
        HANDLED.clear()
        self.assertEqual(run_job_entry(entry.pk), Status.PENDING)
        self.assertEqual(run_job_entry(999_999), "missing")
        self.assertEqual(HANDLED, [])


class RecoveryTest(TestCase):
    def test_reaper_fails_expired_leases(self):
        stale = _entry(Status.RUNNING, group_id="g", hostname="dead-host", lease_expires_at=now_ms() - 1000)
        fresh = _entry(Status.RUNNING, group_id="h", lease_expires_at=now_ms() + 60_000)

        reaped = JobPoller().reap_expired_leases()

        stale.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(reaped, 1)
        self.assertEqual(stale.status, Status.FAILED)
        self.assertIn("dead-host", stale.error_message)
        self.assertEqual(fresh.status, Status.RUNNING)

    def test_retry_unfreezes_group(self):
        failed = _entry(Status.FAILED, group_id="g", error_message="boom")
        _entry(group_id="g")

        self.assertTrue(retry_entry(failed))
        failed.refresh_from_db()
        self.assertEqual(failed.status, Status.PENDING)
        self.assertIn("boom", failed.error_message)
        self.assertNotIn("g", blocked_groups())
        self.assertFalse(retry_entry(failed))

    def test_resolve_group_completes_failed_and_pending(self):
        failed = _entry(Status.FAILED, group_id="g", error_message="boom")
        pending = _entry(group_id="g")
        other = _entry(group_id="other")

        resolved = resolve_group("g", "rolled back")

        self.assertEqual(resolved, 2)
        failed.refresh_from_db()
        pending.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(failed.status, Status.COMPLETED)
        self.assertEqual(failed.error_message, "boom\nrolled back")
        self.assertEqual(pending.status, Status.COMPLETED)
        self.assertEqual(other.status, Status.PENDING)
        self.assertEqual(resolve_group("", "noop"), 0)

    def test_enqueue_once_skips_identical_pending_entry(self):
        self.assertIsNotNone(enqueue_once("test-record", ["same"]))
        self.assertIsNone(enqueue_once("test-record", ["same"]))
        self.assertIsNotNone(enqueue_once("test-record", ["different"]))
        self.assertEqual(JobQueueEntry.objects.count(), 2)


class JobPollerCommandTest(TestCase):
    def test_once_runs_a_single_cycle(self):
        HANDLED.clear()
        enqueue("test-record", ["cmd"])
        out = StringIO()

        call_command("job_poller", "--once", "--max-parallel", "2", stdout=out)

        self.assertIn("Job poller started", out.getvalue())
        self.assertEqual(HANDLED, ["cmd"])
