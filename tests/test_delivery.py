import asyncio
import datetime

import pytest

from santadraw.core.config import DeliverySettings
from santadraw.db import NotificationType, get_session, repo
from santadraw.services import draw, group_flow
from santadraw.services.delivery import STRANDED_CLAIM_ERROR, DeliveryWorker, retry_delay
from santadraw.services.transport import DeliveryResult, render_message

T0 = datetime.datetime(2026, 12, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += datetime.timedelta(**kwargs)


class FakeTransport:
    def __init__(self, results=None, delay=0.0):
        self.results = list(results or [])
        self.delay = delay
        self.sent = []

    async def send(self, recipient_address, template_type, template_data):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append((recipient_address, template_type, dict(template_data)))
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return DeliveryResult.success()


class FailingTransport(FakeTransport):
    async def send(self, recipient_address, template_type, template_data):
        self.sent.append((recipient_address, template_type, dict(template_data)))
        return DeliveryResult.failure("forbidden", "bot was blocked by the user")


def _settings(**overrides):
    values = dict(max_attempts=3, retry_base_seconds=60, send_timeout_seconds=5, claim_ttl_seconds=300, batch_size=50)
    values.update(overrides)
    return DeliverySettings(**values)


@pytest.fixture
def drawn_group(session_factory):
    """Three participants drawn at T0, so three outcome intents are due at T0."""
    with get_session(session_factory) as session:
        users = [repo.upsert_user(session, 500 + i, f"member{i}", f"Member {i}") for i in range(3)]
        group = group_flow.create_group(session, users[0], "Book club")
        for user in users[1:]:
            group_flow.join_group(session, group, user)
        draw.execute_draw(session, group.id, users[0].id, "15", now=T0)
        return group.id, [user.telegram_id for user in users]


def _intents(session_factory, group_id):
    with get_session(session_factory) as session:
        return repo.list_intents(session, group_id=group_id)


def test_retry_delay_doubles():
    assert retry_delay(1, 60) == datetime.timedelta(seconds=60)
    assert retry_delay(2, 60) == datetime.timedelta(seconds=120)
    assert retry_delay(4, 60) == datetime.timedelta(seconds=480)


def test_due_intents_are_sent_once(session_factory, drawn_group):
    group_id, telegram_ids = drawn_group
    transport = FakeTransport()
    worker = DeliveryWorker(transport, _settings(), session_factory=session_factory, clock=FakeClock(T0))

    report = asyncio.run(worker.run_once())

    assert (report.claimed, report.sent, report.failed, report.exhausted) == (3, 3, 0, 0)
    assert sorted(address for address, _, _ in transport.sent) == sorted(str(t) for t in telegram_ids)
    assert all(template == NotificationType.OUTCOME_READY for _, template, _ in transport.sent)
    assert all(data["group_name"] == "Book club" and data["budget"] == "15.00" for _, _, data in transport.sent)
    for intent in _intents(session_factory, group_id):
        assert intent.sent_at == T0
        assert intent.attempt_count == 1
        assert intent.last_error is None

    assert asyncio.run(worker.run_once()).claimed == 0


def test_intents_not_due_are_left_alone(session_factory, drawn_group):
    worker = DeliveryWorker(
        FakeTransport(), _settings(), session_factory=session_factory, clock=FakeClock(T0 - datetime.timedelta(seconds=1))
    )
    assert asyncio.run(worker.run_once()).claimed == 0


def test_failed_send_backs_off_exponentially(session_factory, drawn_group):
    group_id, _ = drawn_group
    clock = FakeClock(T0)
    worker = DeliveryWorker(FailingTransport(), _settings(), session_factory=session_factory, clock=clock)

    report = asyncio.run(worker.run_once())
    assert (report.claimed, report.failed, report.exhausted) == (3, 3, 0)
    for intent in _intents(session_factory, group_id):
        assert intent.attempt_count == 1
        assert intent.send_after == T0 + datetime.timedelta(seconds=60)
        assert "forbidden" in intent.last_error
        assert intent.sent_at is None

    clock.advance(seconds=59)
    assert asyncio.run(worker.run_once()).claimed == 0

    clock.advance(seconds=1)
    assert asyncio.run(worker.run_once()).claimed == 3
    for intent in _intents(session_factory, group_id):
        assert intent.attempt_count == 2
        assert intent.send_after == clock.now + datetime.timedelta(seconds=120)


def test_exhausted_intents_are_marked_failed(session_factory, drawn_group):
    group_id, _ = drawn_group
    clock = FakeClock(T0)
    failures = []
    worker = DeliveryWorker(
        FailingTransport(),
        _settings(max_attempts=3),
        session_factory=session_factory,
        clock=clock,
        on_exhausted=failures.append,
    )

    reports = []
    for _ in range(3):
        reports.append(asyncio.run(worker.run_once()))
        clock.advance(days=1)

    assert [report.exhausted for report in reports] == [0, 0, 3]
    assert len(failures) == 3
    assert all(failure.attempts == 3 for failure in failures)
    for intent in _intents(session_factory, group_id):
        assert intent.attempt_count == 3
        assert intent.failed_at is not None
        assert intent.sent_at is None

    assert asyncio.run(worker.run_once()).claimed == 0
    with get_session(session_factory) as session:
        assert len(repo.list_failed_intents(session)) == 3


def test_slow_transport_times_out(session_factory, drawn_group):
    group_id, _ = drawn_group
    worker = DeliveryWorker(
        FakeTransport(delay=1),
        _settings(send_timeout_seconds=0.05),
        session_factory=session_factory,
        clock=FakeClock(T0),
    )

    report = asyncio.run(worker.run_once())

    assert report.failed == 3
    assert all("timeout" in intent.last_error for intent in _intents(session_factory, group_id))


def test_transport_exception_counts_as_failure(session_factory, drawn_group):
    group_id, _ = drawn_group
    transport = FakeTransport(results=[ConnectionError("reset"), DeliveryResult.success(), DeliveryResult.success()])
    worker = DeliveryWorker(transport, _settings(), session_factory=session_factory, clock=FakeClock(T0))

    report = asyncio.run(worker.run_once())

    assert (report.sent, report.failed) == (2, 1)
    failed = [intent for intent in _intents(session_factory, group_id) if intent.sent_at is None]
    assert len(failed) == 1
    assert "ConnectionError" in failed[0].last_error


def test_claimed_intents_are_not_claimed_twice(session_factory, drawn_group):
    worker = DeliveryWorker(FakeTransport(), _settings(), session_factory=session_factory, clock=FakeClock(T0))

    first = worker.claim_batch(T0)
    second = worker.claim_batch(T0)
    assert len(first) == 3
    assert second == []

    # An abandoned claim becomes visible again once its lease runs out.
    again = worker.claim_batch(T0 + datetime.timedelta(seconds=300))
    assert sorted(claim.id for claim in again) == sorted(claim.id for claim in first)
    assert all(claim.attempt_count == 2 for claim in again)


def test_final_claim_abandoned_by_crashed_worker_is_failed(session_factory, drawn_group):
    group_id, _ = drawn_group
    clock = FakeClock(T0)
    failures = []
    worker = DeliveryWorker(
        FakeTransport(),
        _settings(max_attempts=1),
        session_factory=session_factory,
        clock=clock,
        on_exhausted=failures.append,
    )

    # Claimed on the last allowed attempt, then the process dies before sending.
    assert len(worker.claim_batch(T0)) == 3

    clock.advance(days=30)
    report = asyncio.run(worker.run_once())

    assert (report.claimed, report.exhausted) == (0, 3)
    assert len(failures) == 3
    assert all(failure.attempts == 1 for failure in failures)
    for intent in _intents(session_factory, group_id):
        assert intent.failed_at == clock.now
        assert intent.sent_at is None
        assert intent.last_error == STRANDED_CLAIM_ERROR

    assert asyncio.run(worker.run_once()).exhausted == 0


def test_final_claim_inside_its_lease_is_left_alone(session_factory, drawn_group):
    failures = []
    worker = DeliveryWorker(
        FakeTransport(),
        _settings(max_attempts=1),
        session_factory=session_factory,
        clock=FakeClock(T0 + datetime.timedelta(seconds=299)),
        on_exhausted=failures.append,
    )
    worker.claim_batch(T0)

    assert worker.expire_stranded(T0 + datetime.timedelta(seconds=299)) == []
    assert failures == []


def test_batch_size_limits_claims(session_factory, drawn_group):
    worker = DeliveryWorker(FakeTransport(), _settings(batch_size=2), session_factory=session_factory, clock=FakeClock(T0))
    assert asyncio.run(worker.run_once()).claimed == 2
    assert asyncio.run(worker.run_once()).claimed == 1


def test_cancelled_batch_releases_claims(session_factory, drawn_group):
    group_id, _ = drawn_group
    worker = DeliveryWorker(
        FakeTransport(delay=10), _settings(send_timeout_seconds=60), session_factory=session_factory, clock=FakeClock(T0)
    )

    async def scenario():
        task = asyncio.create_task(worker.run_once())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    for intent in _intents(session_factory, group_id):
        assert intent.sent_at is None
        assert intent.attempt_count == 0
        assert intent.send_after == T0


def test_wish_notification_carries_recipient(session_factory, drawn_group):
    group_id, telegram_ids = drawn_group
    with get_session(session_factory) as session:
        editor = repo.get_user_by_telegram_id(session, telegram_ids[1])
        update = group_flow.update_wish(
            session, group_id, editor.id, "A good book", delay_seconds=60, max_attempts=3, now=T0
        )
        giver = repo.get_user_by_id(session, update.notification.user_id)
        giver_address = str(giver.telegram_id)

    transport = FakeTransport()
    worker = DeliveryWorker(
        transport, _settings(), session_factory=session_factory, clock=FakeClock(T0 + datetime.timedelta(seconds=60))
    )
    asyncio.run(worker.run_once())

    wish_sends = [send for send in transport.sent if send[1] == NotificationType.WISH_UPDATED]
    assert len(wish_sends) == 1
    address, _, data = wish_sends[0]
    assert address == giver_address
    assert data["recipient_label"] == "Member 1"


def test_render_message():
    text = render_message(NotificationType.OUTCOME_READY, {"group_name": "<Team>", "budget": "10.00"})
    assert "&lt;Team&gt;" in text
    assert "/mygift" in text
    assert "10.00" in text
    text = render_message(NotificationType.WISH_UPDATED, {"group_name": "Team", "recipient_label": "Ann"})
    assert text.startswith("Ann updated")
