from datetime import timedelta

from tightship.core.clock import add_months, utc_now
from tightship.models.subscription import SubscriptionStatus
from tightship.models.usage import MetricType
from tightship.workers import cleanup_usage, expire_subscriptions, usage_jobs


def test_expiry_run_once(repo, grace, make_org):
    end = utc_now() - timedelta(days=10)
    org = make_org(period_start=end - timedelta(days=30), period_end=end)

    summary = expire_subscriptions.run_once(grace)

    assert summary["suspended"] == 1
    assert repo.get_subscription(org).status == SubscriptionStatus.PAST_DUE


class CountingGrace:
    def __init__(self, fail_on=()):
        self.calls = 0
        self.fail_on = set(fail_on)

    def process_expired_subscriptions(self):
        self.calls += 1
        if self.calls in self.fail_on:
            raise RuntimeError("database unavailable")
        return {"processed": 0, "in_grace_period": 0, "suspended": 0, "errors": 0}


def test_expiry_loop_sleeps_between_sweeps():
    grace = CountingGrace()
    sleeps = []

    iterations = expire_subscriptions.run_loop(grace, interval_seconds=30, max_iterations=3, sleep=sleeps.append)

    assert iterations == 3
    assert grace.calls == 3
    assert sleeps == [30, 30]


def test_expiry_loop_survives_failed_sweep():
    grace = CountingGrace(fail_on={1})

    expire_subscriptions.run_loop(grace, interval_seconds=1, max_iterations=2, sleep=lambda s: None)

    assert grace.calls == 2


def test_cleanup_job_uses_given_ledger(ledger):
    now = utc_now()
    ledger.track_usage("org_a", MetricType.API_CALLS, 1, now=add_months(now, -30))
    ledger.track_usage("org_a", MetricType.API_CALLS, 1, now=now)

    dry = cleanup_usage.cleanup_usage(ledger=ledger, dry_run=True)
    assert (dry["candidates"], dry["deleted"]) == (1, 0)

    result = cleanup_usage.cleanup_usage(ledger=ledger, retention_months=12)
    assert result["deleted"] == 1


def test_usage_job_tracks_through_service(subscriptions, ledger, monkeypatch):
    monkeypatch.setattr(usage_jobs, "_subscriptions", lambda: subscriptions)

    assert usage_jobs.track_api_call("org_a") == 1
    assert usage_jobs.track_api_call("org_a") == 2
    assert ledger.get_current_usage("org_a", MetricType.API_CALLS) == 2
