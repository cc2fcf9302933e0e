from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from src.credits import ledger
from src.credits.ledger import (
    TRANSACTION_REFUND,
    TRANSACTION_USAGE,
    InsufficientCreditsError,
)
from src.generation import service as generation_service
from src.generation.params import InvalidCombinationError, GenerationParams
from src.generation.service import (
    NOTIFICATION_MALFORMED,
    NOTIFICATION_PROCESSED,
    ProviderDispatchFailedError,
    RefundNotAllowedError,
    TaskAccessDeniedError,
    TaskPersistFailedError,
    apply_normalized_result,
    build_callback_url,
    check_status,
    ingest_notification,
    request_generation,
    request_manual_refund,
)
from src.providers.base import (
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    REASON_CONTENT_POLICY,
    REASON_SERVER_ERROR,
    NormalizedResult,
    PollStatus,
)
from src.storage.models import CreditTransaction, ProviderNotification, VideoTask
from src.tasks.store import STATE_COMPLETED, STATE_FAILED, STATE_PROCESSING, TaskNotFoundError, find_by_task_id
from tests.conftest import FakeVideoProvider, failing_provider, seed_user, user_balance


PARAMS = GenerationParams(prompt="slow soap cutting", triggers=["soap"], duration=5, quality="720p")


def _success_callback(task_id: str, url: str = "https://cdn.example/v.mp4") -> dict:
    return {"code": 200, "msg": "All generated successfully.", "data": {"task_id": task_id, "video_url": url}}


def _failure_callback(task_id: str) -> dict:
    return {"code": 400, "msg": "Inappropriate content detected", "data": {"task_id": task_id}}


def _transactions(session_factory, user_id: str, transaction_type: str) -> int:
    with session_factory() as session:
        return int(
            session.scalar(
                select(func.count())
                .select_from(CreditTransaction)
                .where(CreditTransaction.user_id == user_id, CreditTransaction.transaction_type == transaction_type)
            )
        )


def test_happy_path_debits_dispatches_and_completes(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-happy"])

    with session_factory() as session:
        outcome = request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())

    assert outcome.task.task_id == "rw-happy"
    assert outcome.task.state == STATE_PROCESSING
    assert outcome.credits_deducted == 20
    assert outcome.remaining_credits == 80
    assert provider.requests[0].callback_url == "https://asmr.example.test/callbacks/kie/runway"
    assert provider.requests[0].prompt.startswith("ASMR video: slow soap cutting, featuring soap cutting")

    with session_factory() as session:
        ack = ingest_notification(session, provider="runway", payload=_success_callback("rw-happy"))
        task = find_by_task_id(session, "rw-happy")

    assert ack.status == NOTIFICATION_PROCESSED
    assert ack.transitioned is True
    assert task.state == STATE_COMPLETED
    assert task.video_url == "https://cdn.example/v.mp4"
    assert user_balance(session_factory, user_id) == 80


def test_failure_notification_refunds_the_task_cost(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-fail"])

    with session_factory() as session:
        request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        ack = ingest_notification(session, provider="runway", payload=_failure_callback("rw-fail"))
        task = find_by_task_id(session, "rw-fail")

    assert ack.state == STATE_FAILED
    assert task.failure_reason == REASON_CONTENT_POLICY
    assert task.error_code == "400"
    assert user_balance(session_factory, user_id) == 100
    assert _transactions(session_factory, user_id, TRANSACTION_REFUND) == 1


def test_duplicate_success_notification_is_a_noop(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-dup"])

    with session_factory() as session:
        request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        first = ingest_notification(session, provider="runway", payload=_success_callback("rw-dup"))
        second = ingest_notification(
            session, provider="runway", payload=_success_callback("rw-dup", "https://cdn.example/other.mp4")
        )
        task = find_by_task_id(session, "rw-dup")

    assert first.transitioned is True
    assert second.transitioned is False
    assert second.status == NOTIFICATION_PROCESSED
    assert task.video_url == "https://cdn.example/v.mp4"


def test_repeated_failure_notifications_refund_exactly_once(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-many"])

    with session_factory() as session:
        request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        acks = [ingest_notification(session, provider="runway", payload=_failure_callback("rw-many")) for _ in range(5)]

    assert [ack.transitioned for ack in acks] == [True, False, False, False, False]
    assert user_balance(session_factory, user_id) == 100
    assert _transactions(session_factory, user_id, TRANSACTION_REFUND) == 1


def test_failure_after_completion_does_not_refund(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-late"])

    with session_factory() as session:
        request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        ingest_notification(session, provider="runway", payload=_success_callback("rw-late"))
        late = ingest_notification(session, provider="runway", payload=_failure_callback("rw-late"))

    assert late.state == STATE_COMPLETED
    assert late.transitioned is False
    assert user_balance(session_factory, user_id) == 80
    assert _transactions(session_factory, user_id, TRANSACTION_REFUND) == 0


def test_dispatch_failure_nets_to_zero_and_leaves_no_task(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = failing_provider()

    with session_factory() as session:
        with pytest.raises(ProviderDispatchFailedError) as exc_info:
            request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        task_count = session.scalar(select(func.count()).select_from(VideoTask))

    assert exc_info.value.refunded_credits == 20
    assert exc_info.value.remaining_credits == 100
    assert task_count == 0
    assert user_balance(session_factory, user_id) == 100
    assert _transactions(session_factory, user_id, TRANSACTION_USAGE) == 1
    assert _transactions(session_factory, user_id, TRANSACTION_REFUND) == 1


def test_unpriced_combination_never_touches_credits(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider()
    params = GenerationParams(prompt="rain", duration=8, quality="1080p")

    with session_factory() as session:
        with pytest.raises(InvalidCombinationError):
            request_generation(session, user_id=user_id, params=params, provider_factory=provider.factory())

    assert provider.requests == []
    assert user_balance(session_factory, user_id) == 100
    assert _transactions(session_factory, user_id, TRANSACTION_USAGE) == 0


def test_insufficient_credits_never_dispatch(session_factory) -> None:
    user_id = seed_user(session_factory, credits=10)
    provider = FakeVideoProvider()

    with session_factory() as session:
        with pytest.raises(InsufficientCreditsError):
            request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())

    assert provider.requests == []
    assert user_balance(session_factory, user_id) == 10


def test_unknown_task_notification_creates_ownerless_record(session_factory) -> None:
    with session_factory() as session:
        ack = ingest_notification(session, provider="veo3", payload={"code": 500, "msg": "boom", "data": {"taskId": "veo-x"}})
        task = find_by_task_id(session, "veo-x")
        credit_rows = session.scalar(select(func.count()).select_from(CreditTransaction))

    assert ack.status == NOTIFICATION_PROCESSED
    assert task.owner_user_id is None
    assert task.credit_cost == 0
    assert task.state == STATE_FAILED
    assert credit_rows == 0


def test_dispatch_adopts_record_created_by_early_failure(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)

    with session_factory() as session:
        ingest_notification(session, provider="runway", payload=_failure_callback("rw-early"))

    provider = FakeVideoProvider(task_ids=["rw-early"])
    with session_factory() as session:
        outcome = request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())

    assert outcome.task.owner_user_id == user_id
    assert outcome.task.state == STATE_FAILED
    assert outcome.task.credit_cost == 20
    assert outcome.remaining_credits == 100
    assert user_balance(session_factory, user_id) == 100


def test_malformed_notification_is_recorded_and_acknowledged(session_factory) -> None:
    with session_factory() as session:
        ack = ingest_notification(session, provider="runway", payload={"code": 200, "data": {}})
        rows = list(session.scalars(select(ProviderNotification)).all())

    assert ack.status == NOTIFICATION_MALFORMED
    assert ack.task_id is None
    assert len(rows) == 1
    assert rows[0].status == NOTIFICATION_MALFORMED


def test_poll_completes_task_and_later_webhook_is_ignored(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-poll"])
    provider.statuses["rw-poll"] = PollStatus(
        task_id="rw-poll",
        state="completed",
        progress=100,
        result=NormalizedResult(task_id="rw-poll", outcome=OUTCOME_SUCCESS, video_url="https://cdn.example/p.mp4"),
    )

    with session_factory() as session:
        request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        view = check_status(session, task_id="rw-poll", user_id=user_id, provider_factory=provider.factory())
        late = ingest_notification(session, provider="runway", payload=_failure_callback("rw-poll"))

    assert view.status == STATE_COMPLETED
    assert view.progress == 100
    assert view.transitioned is True
    assert view.result.video_url == "https://cdn.example/p.mp4"
    assert late.transitioned is False
    assert user_balance(session_factory, user_id) == 80


def test_polled_failure_refunds_once_across_repeated_checks(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-poll-fail"])
    provider.statuses["rw-poll-fail"] = PollStatus(
        task_id="rw-poll-fail",
        state="failed",
        progress=0,
        result=NormalizedResult(
            task_id="rw-poll-fail",
            outcome=OUTCOME_FAILURE,
            error_code="500",
            error_message="Internal error",
            failure_reason="server_error",
        ),
    )

    with session_factory() as session:
        request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        first = check_status(session, task_id="rw-poll-fail", user_id=user_id, provider_factory=provider.factory())
        second = check_status(session, task_id="rw-poll-fail", user_id=user_id, provider_factory=provider.factory())

    assert first.status == STATE_FAILED
    assert first.credits_refunded is True
    assert second.credits_refunded is True
    assert provider.status_calls == ["rw-poll-fail"]
    assert user_balance(session_factory, user_id) == 100
    assert _transactions(session_factory, user_id, TRANSACTION_REFUND) == 1


def test_active_task_reports_provider_progress(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-active"])

    with session_factory() as session:
        request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        view = check_status(session, task_id="rw-active", user_id=user_id, provider_factory=provider.factory())

    assert view.status == STATE_PROCESSING
    assert view.progress == 50
    assert view.result is None


def test_status_checks_enforce_ownership(session_factory) -> None:
    owner = seed_user(session_factory)
    stranger = seed_user(session_factory)
    provider = FakeVideoProvider(task_ids=["rw-owned"])

    with session_factory() as session:
        request_generation(session, user_id=owner, params=PARAMS, provider_factory=provider.factory())
        with pytest.raises(TaskAccessDeniedError):
            check_status(session, task_id="rw-owned", user_id=stranger, provider_factory=provider.factory())
        with pytest.raises(TaskNotFoundError):
            check_status(session, task_id="missing", user_id=owner, provider_factory=provider.factory())


def test_manual_refund_is_idempotent_and_limited_to_failed_tasks(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-manual", "rw-running"])

    with session_factory() as session:
        request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        ingest_notification(session, provider="runway", payload=_failure_callback("rw-manual"))

        repeat = request_manual_refund(session, task_id="rw-manual", user_id=user_id)
        with pytest.raises(RefundNotAllowedError):
            request_manual_refund(session, task_id="rw-running", user_id=user_id)

    assert repeat.applied is False
    assert user_balance(session_factory, user_id) == 80
    assert _transactions(session_factory, user_id, TRANSACTION_REFUND) == 1


def test_callback_url_uses_public_base_url() -> None:
    assert build_callback_url("veo3") == "https://asmr.example.test/callbacks/kie/veo3"


def test_persist_failure_after_dispatch_refunds_the_debit(monkeypatch, session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-lost"])

    def _broken_create_task(session, **kwargs):
        raise OperationalError("INSERT INTO video_tasks", {}, Exception("database is locked"))

    original_create_task = generation_service.create_task
    monkeypatch.setattr(generation_service, "create_task", _broken_create_task)
    with session_factory() as session:
        with pytest.raises(TaskPersistFailedError) as exc_info:
            request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())

    assert exc_info.value.task_id == "rw-lost"
    assert exc_info.value.refunded_credits == 20
    assert exc_info.value.remaining_credits == 100
    assert user_balance(session_factory, user_id) == 100
    assert _transactions(session_factory, user_id, TRANSACTION_REFUND) == 1

    monkeypatch.setattr(generation_service, "create_task", original_create_task)
    with session_factory() as session:
        late = ingest_notification(session, provider="runway", payload=_failure_callback("rw-lost"))
        task = find_by_task_id(session, "rw-lost")

    assert late.state == STATE_FAILED
    assert task.owner_user_id is None
    assert user_balance(session_factory, user_id) == 100
    assert _transactions(session_factory, user_id, TRANSACTION_REFUND) == 1


def test_unrecognized_failure_reason_is_stored_as_server_error(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-odd"])

    with session_factory() as session:
        request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        transition = apply_normalized_result(
            session,
            NormalizedResult(task_id="rw-odd", outcome=OUTCOME_FAILURE, error_code="599", failure_reason="gremlins"),
            provider="runway",
        )

    assert transition.transitioned is True
    assert transition.task.failure_reason == REASON_SERVER_ERROR
    assert user_balance(session_factory, user_id) == 100


def test_ownerless_task_is_hidden_from_users(session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)

    with session_factory() as session:
        ingest_notification(session, provider="runway", payload=_success_callback("rw-stray"))
        with pytest.raises(TaskNotFoundError):
            check_status(session, task_id="rw-stray", user_id=user_id)
        with pytest.raises(TaskNotFoundError):
            request_manual_refund(session, task_id="rw-stray", user_id=user_id)
        view = check_status(session, task_id="rw-stray", user_id=None)

    assert view.status == STATE_COMPLETED


def test_concurrent_failure_deliveries_refund_once(monkeypatch, session_factory) -> None:
    user_id = seed_user(session_factory, credits=100)
    provider = FakeVideoProvider(task_ids=["rw-race"])

    with session_factory() as session:
        request_generation(session, user_id=user_id, params=PARAMS, provider_factory=provider.factory())
        first = ingest_notification(session, provider="runway", payload=_failure_callback("rw-race"))

    real_lookup = ledger._find_by_idempotency_key
    stale_reads = [None]

    def _stale_then_real(session, key):
        if stale_reads:
            return stale_reads.pop()
        return real_lookup(session, key)

    monkeypatch.setattr(ledger, "_find_by_idempotency_key", _stale_then_real)
    with session_factory() as session:
        second = ingest_notification(session, provider="runway", payload=_failure_callback("rw-race"))

    assert stale_reads == []
    assert first.transitioned is True
    assert second.status == NOTIFICATION_PROCESSED
    assert second.transitioned is False
    assert user_balance(session_factory, user_id) == 100
    assert _transactions(session_factory, user_id, TRANSACTION_REFUND) == 1
