import pytest

from application.ports.jobs import FAIL_ABANDONED_PURCHASE, PAYOUT_USERS, UPDATE_PAYOUT_STATUS, JobScheduler
from infrastructure.tasks import TaskDispatcher, celery_app
from infrastructure.tasks.tasks import payouts


class _Sent:
    id = "task-1"


def test_dispatcher_sends_named_task_with_countdown(monkeypatch):
    sent = []

    def fake_send_task(name, kwargs=None, countdown=None):
        sent.append((name, kwargs, countdown))
        return _Sent()

    monkeypatch.setattr(celery_app, "send_task", fake_send_task)
    dispatcher = TaskDispatcher()

    assert isinstance(dispatcher, JobScheduler)
    assert dispatcher.schedule(UPDATE_PAYOUT_STATUS, kwargs={"payment_id": 3}, delay_seconds=300) == "task-1"
    dispatcher.schedule(PAYOUT_USERS, kwargs={"user_ids": [1]}, delay_seconds=0)

    assert sent == [
        (UPDATE_PAYOUT_STATUS, {"payment_id": 3}, 300),
        (PAYOUT_USERS, {"user_ids": [1]}, None),
    ]


def test_jobs_are_registered_and_routed():
    for name in (FAIL_ABANDONED_PURCHASE, PAYOUT_USERS, UPDATE_PAYOUT_STATUS):
        assert name in celery_app.tasks
    assert celery_app.conf.task_routes[PAYOUT_USERS] == {"queue": "payouts"}
    assert celery_app.conf.task_always_eager is True


def test_payout_job_rejects_other_processors():
    with pytest.raises(ValueError):
        payouts.payout_users("2024-01-31", "stripe", [1])
