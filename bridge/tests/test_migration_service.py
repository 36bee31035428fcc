"""
Tests for migration decisions, single-user migration and bulk migration.
"""

import asyncio
import json
import time
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from bridge.schemas.migration import (
    SKIP_ALREADY_MIGRATED,
    SKIP_EXISTS_REMOTELY,
    SKIP_USER_NOT_FOUND,
)
from bridge.services.errors import (
    InconsistentStateError,
    RemoteConflictError,
    RemoteCreateFailedError,
    RemoteUnavailableError,
    RemoteValidationError,
    StoreUnavailableError,
    UserNotFoundError,
)
from bridge.services.migration_service import (
    BulkMigrationOptions,
    KeyedLocks,
    MigrationRunControl,
    MigrationService,
)
from bridge.utils.password_generator import DIGITS, LOWERCASE, SYMBOLS, UPPERCASE


@pytest.fixture
def service(fake_store, fake_identity, fake_notifier):
    return MigrationService(
        store=fake_store, identity=fake_identity, notifier=fake_notifier
    )


def _recording_control(fake_identity, snapshots, stop_after=None):
    """Control whose inter-chunk wait records which users were created so far."""
    control = MigrationRunControl()

    async def fake_wait(seconds):
        snapshots.append(({c["user_id"] for c in fake_identity.created}, seconds))
        if stop_after is not None and len(snapshots) >= stop_after:
            control.cancel()
        return control.should_stop()

    control.wait = fake_wait
    return control


class TestDecide:
    @pytest.mark.asyncio
    async def test_already_migrated_skips_without_remote_call(
        self, service, fake_identity, make_local_user
    ):
        user = make_local_user(1, migrated_to_entra=True, entra_user_id="entra-1")

        decision = await service.decide(user)

        assert decision.proceed is False
        assert decision.reason == SKIP_ALREADY_MIGRATED
        assert fake_identity.exists_calls == []

    @pytest.mark.asyncio
    async def test_existing_remote_identity_skips(
        self, service, fake_identity, make_local_user
    ):
        user = make_local_user(1)
        fake_identity.existing_emails.add(user.email)

        decision = await service.decide(user)

        assert decision.proceed is False
        assert decision.reason == SKIP_EXISTS_REMOTELY

    @pytest.mark.asyncio
    async def test_new_user_proceeds(self, service, make_local_user):
        decision = await service.decide(make_local_user(1))
        assert decision.proceed is True
        assert decision.reason is None

    @pytest.mark.asyncio
    async def test_existence_check_failure_propagates(
        self, service, fake_identity, make_local_user, unavailable_error
    ):
        user = make_local_user(1)
        fake_identity.exists_errors[user.email] = unavailable_error

        with pytest.raises(RemoteUnavailableError):
            await service.decide(user)


class TestMigrateSingleUser:
    @pytest.mark.asyncio
    async def test_migrates_with_forced_password_change(
        self, service, fake_store, fake_identity, make_local_user
    ):
        fake_store.users[1] = make_local_user(1)

        outcome = await service.migrate_single_user(1)

        assert outcome.status == "migrated"
        assert outcome.entra_user_id == "entra-1"
        assert len(fake_identity.created) == 1
        created = fake_identity.created[0]
        assert created["force_change"] is True
        assert created["password"] == outcome.temporary_password
        assert len(outcome.temporary_password) == 16
        assert fake_store.users[1].migrated_to_entra is True
        assert fake_store.users[1].entra_user_id == "entra-1"

    @pytest.mark.asyncio
    async def test_unknown_user_raises_not_found(self, service):
        with pytest.raises(UserNotFoundError):
            await service.migrate_single_user(999)

    @pytest.mark.asyncio
    async def test_already_migrated_is_a_no_op(
        self, service, fake_store, fake_identity, make_local_user
    ):
        fake_store.users[1] = make_local_user(
            1, migrated_to_entra=True, entra_user_id="entra-old"
        )

        outcome = await service.migrate_single_user(1)

        assert outcome.status == "skipped"
        assert outcome.reason == SKIP_ALREADY_MIGRATED
        assert fake_identity.exists_calls == []
        assert fake_identity.created == []
        assert fake_store.mark_calls == []

    @pytest.mark.asyncio
    async def test_exists_remotely_leaves_record_unchanged(
        self, service, fake_store, fake_identity, make_local_user
    ):
        user = make_local_user(1)
        fake_store.users[1] = user
        fake_identity.existing_emails.add(user.email)

        outcome = await service.migrate_single_user(1)

        assert outcome.status == "skipped"
        assert outcome.reason == SKIP_EXISTS_REMOTELY
        assert fake_store.users[1] == user
        assert fake_identity.created == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            RemoteValidationError("Password does not meet complexity", 400),
            RemoteConflictError("Another object already exists", 400),
            RemoteUnavailableError("Graph unavailable", 503),
        ],
    )
    async def test_remote_create_failure_makes_no_local_change(
        self, service, fake_store, fake_identity, make_local_user, error
    ):
        user = make_local_user(1)
        fake_store.users[1] = user
        fake_identity.create_errors[user.email] = error

        with pytest.raises(RemoteCreateFailedError) as exc_info:
            await service.migrate_single_user(1)

        assert exc_info.value.cause_kind == error.kind
        assert fake_store.users[1].migrated_to_entra is False
        assert fake_store.users[1].entra_user_id is None
        assert fake_store.mark_calls == []

    @pytest.mark.asyncio
    async def test_mark_failure_after_create_is_inconsistent_state(
        self, service, fake_store, fake_identity, make_local_user, caplog
    ):
        fake_store.users[1] = make_local_user(1)
        fake_store.fail_mark = True

        with pytest.raises(InconsistentStateError) as exc_info:
            await service.migrate_single_user(1)

        assert exc_info.value.entra_user_id == "entra-1"
        assert len(fake_identity.created) == 1
        events = [
            json.loads(r.getMessage())
            for r in caplog.records
            if "migration_inconsistent_state" in r.getMessage()
        ]
        assert events and events[0]["user_id"] == 1

    @pytest.mark.asyncio
    async def test_lost_compare_and_swap_is_inconsistent_state(
        self, service, fake_store, make_local_user
    ):
        fake_store.users[1] = make_local_user(1)
        fake_store.mark_migrated = AsyncMock(return_value=False)

        with pytest.raises(InconsistentStateError):
            await service.migrate_single_user(1)

    @pytest.mark.asyncio
    async def test_send_email_queues_notification(
        self, service, fake_store, fake_notifier, make_local_user
    ):
        fake_store.users[1] = make_local_user(1)

        outcome = await service.migrate_single_user(1, send_email=True)

        assert fake_notifier.submitted == [
            ("user1@example.com", outcome.temporary_password, 1)
        ]

    @pytest.mark.asyncio
    async def test_notification_not_sent_for_skips(
        self, service, fake_store, fake_notifier, make_local_user
    ):
        fake_store.users[1] = make_local_user(
            1, migrated_to_entra=True, entra_user_id="entra-1"
        )

        await service.migrate_single_user(1, send_email=True)

        assert fake_notifier.submitted == []

    @pytest.mark.asyncio
    async def test_concurrent_attempts_for_same_user_create_once(
        self, service, fake_store, fake_identity, make_local_user
    ):
        fake_store.users[1] = make_local_user(1)
        fake_identity.create_delay = 0.02

        first, second = await asyncio.gather(
            service.migrate_single_user(1), service.migrate_single_user(1)
        )

        assert len(fake_identity.created) == 1
        assert sorted([first.status, second.status]) == ["migrated", "skipped"]
        assert len(service._locks) == 0


class TestMigrateWithPassword:
    @pytest.mark.asyncio
    async def test_uses_known_password_without_forced_change(
        self, service, fake_store, fake_identity, make_local_user
    ):
        user = make_local_user(1)
        fake_store.users[1] = user

        outcome = await service.migrate_with_password(user, "Known-pass1")

        assert outcome.status == "migrated"
        assert outcome.temporary_password is None
        assert fake_identity.created[0]["password"] == "Known-pass1"
        assert fake_identity.created[0]["force_change"] is False

    @pytest.mark.asyncio
    async def test_rereads_user_under_lock(
        self, service, fake_store, fake_identity, make_local_user
    ):
        stale = make_local_user(1)
        fake_store.users[1] = make_local_user(
            1, migrated_to_entra=True, entra_user_id="entra-batch"
        )

        outcome = await service.migrate_with_password(stale, "Known-pass1")

        assert outcome.status == "skipped"
        assert outcome.reason == SKIP_ALREADY_MIGRATED
        assert fake_identity.created == []


class TestBulkMigrate:
    @staticmethod
    def _seed(fake_store, make_local_user, count):
        # Oldest user has the highest id, so order is not id order
        base = datetime(2021, 1, 1)
        for user_id in range(1, count + 1):
            fake_store.users[user_id] = make_local_user(
                user_id, created_at=base - timedelta(minutes=user_id)
            )
        return list(range(count, 0, -1))

    @pytest.mark.asyncio
    async def test_120_users_run_in_three_chunks_with_two_delays(
        self, service, fake_store, fake_identity, make_local_user
    ):
        ordered_ids = self._seed(fake_store, make_local_user, 120)
        snapshots = []
        control = _recording_control(fake_identity, snapshots)

        result = await service.bulk_migrate(BulkMigrationOptions(), control)

        assert len(snapshots) == 2
        assert snapshots[0][0] == set(ordered_ids[:50])
        assert snapshots[1][0] == set(ordered_ids[:100])
        assert all(seconds == 2.0 for _, seconds in snapshots)
        assert result.total_processed == 120
        assert result.successful == 120
        assert [o.user_id for o in result.results] == ordered_ids
        assert result.cancelled is False

    @pytest.mark.asyncio
    async def test_chunk_membership_follows_candidate_positions(
        self, service, fake_store, fake_identity, make_local_user
    ):
        ordered_ids = self._seed(fake_store, make_local_user, 10)
        snapshots = []
        control = _recording_control(fake_identity, snapshots)

        await service.bulk_migrate(
            BulkMigrationOptions(batch_size=3, delay_between_batches_ms=1000), control
        )

        # Chunks [0,3), [3,6), [6,9), [9,10); waits after the first three
        assert [s for s, _ in snapshots] == [
            set(ordered_ids[:3]),
            set(ordered_ids[:6]),
            set(ordered_ids[:9]),
        ]
        assert all(seconds == 1.0 for _, seconds in snapshots)

    @pytest.mark.asyncio
    async def test_chunk_members_run_concurrently(
        self, service, fake_store, fake_identity, make_local_user
    ):
        self._seed(fake_store, make_local_user, 12)
        fake_identity.create_delay = 0.01
        control = _recording_control(fake_identity, [])

        await service.bulk_migrate(
            BulkMigrationOptions(batch_size=4, delay_between_batches_ms=1000), control
        )

        assert fake_identity.max_in_flight == 4

    @pytest.mark.asyncio
    async def test_failures_are_isolated_and_counted(
        self, service, fake_store, fake_identity, make_local_user, unavailable_error
    ):
        for user_id in (1, 2, 3, 4):
            fake_store.users[user_id] = make_local_user(user_id)
        fake_identity.create_errors["user2@example.com"] = RemoteValidationError(
            "Password does not meet complexity", 400
        )
        fake_identity.exists_errors["user3@example.com"] = unavailable_error
        fake_identity.existing_emails.add("user4@example.com")
        control = _recording_control(fake_identity, [])

        result = await service.bulk_migrate(BulkMigrationOptions(), control)

        statuses = {o.user_id: o for o in result.results}
        assert statuses[1].status == "migrated"
        assert statuses[2].status == "failed"
        assert statuses[2].error_kind == "remote_create_failed"
        assert statuses[3].status == "failed"
        assert statuses[3].error_kind == "remote_unavailable"
        assert statuses[4].status == "skipped"
        assert statuses[4].reason == SKIP_EXISTS_REMOTELY
        assert result.total_processed == (
            result.successful + result.failed + result.skipped
        )
        assert result.total_processed == len(result.results) == 4
        assert fake_store.users[2].migrated_to_entra is False
        assert fake_store.users[2].entra_user_id is None

    @pytest.mark.asyncio
    async def test_rerun_never_recreates_migrated_users(
        self, service, fake_store, fake_identity, make_local_user
    ):
        self._seed(fake_store, make_local_user, 5)
        control = _recording_control(fake_identity, [])
        await service.bulk_migrate(BulkMigrationOptions(), control)
        assert len(fake_identity.created) == 5

        second = await service.bulk_migrate(
            BulkMigrationOptions(), _recording_control(fake_identity, [])
        )

        assert len(fake_identity.created) == 5
        assert second.total_processed == 0

    @pytest.mark.asyncio
    async def test_limit_takes_oldest_users(
        self, service, fake_store, fake_identity, make_local_user
    ):
        ordered_ids = self._seed(fake_store, make_local_user, 6)
        control = _recording_control(fake_identity, [])

        result = await service.bulk_migrate(BulkMigrationOptions(limit=2), control)

        assert [o.user_id for o in result.results] == ordered_ids[:2]

    @pytest.mark.asyncio
    async def test_inactive_users_are_not_candidates(
        self, service, fake_store, fake_identity, make_local_user
    ):
        fake_store.users[1] = make_local_user(1)
        fake_store.users[2] = make_local_user(2, is_active=False)

        result = await service.bulk_migrate(
            BulkMigrationOptions(), _recording_control(fake_identity, [])
        )

        assert [o.user_id for o in result.results] == [1]

    @pytest.mark.asyncio
    async def test_vanished_user_is_skipped(
        self, service, fake_store, fake_identity, make_local_user
    ):
        fake_store.list_unmigrated = AsyncMock(return_value=[make_local_user(42)])

        result = await service.bulk_migrate(
            BulkMigrationOptions(), _recording_control(fake_identity, [])
        )

        assert result.skipped == 1
        assert result.results[0].reason == SKIP_USER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_candidate_fetch_failure_aborts_before_any_user(
        self, service, fake_store, fake_identity, make_local_user
    ):
        fake_store.users[1] = make_local_user(1)
        fake_store.fail_list = True

        with pytest.raises(StoreUnavailableError):
            await service.bulk_migrate(
                BulkMigrationOptions(), _recording_control(fake_identity, [])
            )

        assert fake_identity.exists_calls == []
        assert fake_identity.created == []
        assert service.active_runs == []

    @pytest.mark.asyncio
    async def test_send_emails_only_for_migrated_users(
        self, service, fake_store, fake_identity, fake_notifier, make_local_user
    ):
        fake_store.users[1] = make_local_user(1)
        fake_store.users[2] = make_local_user(2)
        fake_identity.existing_emails.add("user2@example.com")

        await service.bulk_migrate(
            BulkMigrationOptions(send_emails=True),
            _recording_control(fake_identity, []),
        )

        assert [s[2] for s in fake_notifier.submitted] == [1]

    @pytest.mark.asyncio
    async def test_cancel_during_delay_stops_after_current_chunk(
        self, service, fake_store, fake_identity, make_local_user
    ):
        self._seed(fake_store, make_local_user, 9)
        snapshots = []
        control = _recording_control(fake_identity, snapshots, stop_after=1)

        result = await service.bulk_migrate(
            BulkMigrationOptions(batch_size=3, delay_between_batches_ms=1000), control
        )

        assert result.cancelled is True
        assert result.total_processed == 3
        assert len(fake_identity.created) == 3
        assert result.total_processed == (
            result.successful + result.failed + result.skipped
        )

    @pytest.mark.asyncio
    async def test_cancel_runs_interrupts_a_real_delay(
        self, service, fake_store, fake_identity, make_local_user
    ):
        self._seed(fake_store, make_local_user, 6)
        control = MigrationRunControl()
        task = asyncio.create_task(
            service.bulk_migrate(
                BulkMigrationOptions(batch_size=2, delay_between_batches_ms=10_000),
                control,
            )
        )

        for _ in range(200):
            if len(fake_identity.created) >= 2:
                break
            await asyncio.sleep(0.01)
        assert service.active_runs == [control.run_id]

        assert service.cancel_runs() == [control.run_id]
        result = await asyncio.wait_for(task, timeout=2)

        assert result.cancelled is True
        assert result.total_processed == 2
        assert service.active_runs == []

    @pytest.mark.asyncio
    async def test_expired_deadline_processes_nothing(
        self, service, fake_store, fake_identity, make_local_user
    ):
        self._seed(fake_store, make_local_user, 3)
        control = MigrationRunControl(timeout_seconds=1)
        control.deadline = time.monotonic() - 1

        result = await service.bulk_migrate(BulkMigrationOptions(), control)

        assert result.cancelled is True
        assert result.total_processed == 0
        assert fake_identity.created == []


    @pytest.mark.asyncio
    async def test_deadline_interrupts_in_flight_creates(
        self, service, fake_store, fake_identity, make_local_user
    ):
        ordered_ids = self._seed(fake_store, make_local_user, 4)
        fake_identity.create_delay = 0.5
        control = MigrationRunControl(timeout_seconds=0.05)

        started = time.monotonic()
        result = await service.bulk_migrate(
            BulkMigrationOptions(batch_size=2, delay_between_batches_ms=0), control
        )

        assert time.monotonic() - started < 0.4
        assert result.cancelled is True
        assert result.total_processed == result.failed == 2
        assert {o.error_kind for o in result.results} == {"cancelled"}
        assert len(service._locks) == 2

        # Creates already sent still finish and are marked locally
        await asyncio.sleep(0.7)
        assert {c["user_id"] for c in fake_identity.created} == set(ordered_ids[:2])
        for user_id in ordered_ids[:2]:
            assert fake_store.users[user_id].migrated_to_entra is True
            assert fake_store.users[user_id].entra_user_id == f"entra-{user_id}"
        for user_id in ordered_ids[2:]:
            assert fake_store.users[user_id].migrated_to_entra is False
        assert len(service._locks) == 0

    @pytest.mark.asyncio
    async def test_cancel_runs_interrupts_in_flight_creates(
        self, service, fake_store, fake_identity, make_local_user
    ):
        self._seed(fake_store, make_local_user, 4)
        fake_identity.create_delay = 1.0
        control = MigrationRunControl()
        task = asyncio.create_task(
            service.bulk_migrate(BulkMigrationOptions(batch_size=2), control)
        )

        for _ in range(100):
            if fake_identity.in_flight == 2:
                break
            await asyncio.sleep(0.01)
        service.cancel_runs(control.run_id)
        result = await asyncio.wait_for(task, timeout=0.5)

        assert result.cancelled is True
        assert result.total_processed == 2
        assert {o.error_kind for o in result.results} == {"cancelled"}

        await asyncio.sleep(1.2)
        assert len(fake_identity.created) == 2
        assert len(service._locks) == 0

    @pytest.mark.asyncio
    async def test_cancel_interrupts_slow_existence_checks(
        self, service, fake_store, fake_identity, make_local_user
    ):
        self._seed(fake_store, make_local_user, 3)

        async def backing_off(email):
            await asyncio.sleep(30)
            return False

        fake_identity.user_exists = backing_off
        control = MigrationRunControl(timeout_seconds=0.05)

        result = await asyncio.wait_for(
            service.bulk_migrate(BulkMigrationOptions(), control), timeout=1
        )

        assert result.cancelled is True
        assert result.failed == 3
        assert fake_identity.created == []
        assert len(service._locks) == 0
    @pytest.mark.asyncio
    async def test_temporary_passwords_meet_policy(
        self, service, fake_store, fake_identity, make_local_user
    ):
        self._seed(fake_store, make_local_user, 5)

        result = await service.bulk_migrate(
            BulkMigrationOptions(), _recording_control(fake_identity, [])
        )

        for outcome in result.results:
            password = outcome.temporary_password
            assert len(password) == 16
            assert any(c in LOWERCASE for c in password)
            assert any(c in UPPERCASE for c in password)
            assert any(c in DIGITS for c in password)
            assert any(c in SYMBOLS for c in password)


class TestMigrationRunControl:
    @pytest.mark.asyncio
    async def test_wait_returns_false_when_not_cancelled(self):
        control = MigrationRunControl()
        assert await control.wait(0.01) is False

    @pytest.mark.asyncio
    async def test_cancel_wakes_wait_early(self):
        control = MigrationRunControl()
        asyncio.get_running_loop().call_later(0.05, control.cancel)

        started = time.monotonic()
        stopped = await control.wait(5)

        assert stopped is True
        assert time.monotonic() - started < 1

    @pytest.mark.asyncio
    async def test_wait_is_capped_by_deadline(self):
        control = MigrationRunControl(timeout_seconds=0.05)

        started = time.monotonic()
        stopped = await control.wait(5)

        assert stopped is True
        assert time.monotonic() - started < 1

    @pytest.mark.asyncio
    async def test_stopped_returns_on_cancel(self):
        control = MigrationRunControl()
        asyncio.get_running_loop().call_later(0.05, control.cancel)

        await asyncio.wait_for(control.stopped(), timeout=1)

        assert control.cancelled is True

    @pytest.mark.asyncio
    async def test_stopped_returns_at_deadline(self):
        control = MigrationRunControl(timeout_seconds=0.05)

        await asyncio.wait_for(control.stopped(), timeout=1)

        assert control.expired is True


class TestKeyedLocks:
    @pytest.mark.asyncio
    async def test_lock_kept_until_detached_task_finishes(self):
        locks = KeyedLocks()
        detached = asyncio.ensure_future(asyncio.sleep(0.05))

        async with locks.hold(1) as hold:
            hold.keep_until(detached)

        assert len(locks) == 1
        await detached
        await asyncio.sleep(0)
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_waiter_acquires_after_detached_task(self):
        locks = KeyedLocks()
        order = []
        detached = asyncio.ensure_future(asyncio.sleep(0.05))

        async with locks.hold(1) as hold:
            hold.keep_until(detached)

        async with locks.hold(1):
            order.append(detached.done())

        assert order == [True]
        assert len(locks) == 0
