import asyncio
import unittest
from decimal import Decimal

from models import LogKind, RoundStatus
from schemas import ChangeEvent
from core.change_feed import ChangeFilter
from core.exceptions import EmptyPoolError, InvalidTransitionError
from core.state_machine import RoundStateMachine
from core.sync_coordinator import CloseOutcome, SyncCoordinator

from fakes import FixedClock, InMemoryRoundStore, SequenceRng, identity, stake


class SyncCoordinatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FixedClock()
        self.machine = RoundStateMachine()
        self.store = InMemoryRoundStore(self.machine, self.clock)
        self.coordinators = []

    async def asyncTearDown(self) -> None:
        for coordinator in self.coordinators:
            await coordinator.stop()

    async def started(self, rng=None) -> SyncCoordinator:
        coordinator = SyncCoordinator(self.store, self.machine, clock=self.clock, rng=rng or SequenceRng(0.5))
        self.coordinators.append(coordinator)
        await coordinator.start()
        return coordinator

    async def ready_to_close(self, coordinator: SyncCoordinator) -> None:
        await coordinator.join(identity("alice"), stake("10"))
        await coordinator.join(identity("bob"), stake("90"))
        self.clock.advance(61)

    async def test_start_creates_first_round_and_second_client_adopts_it(self) -> None:
        first = await self.started()
        second = await self.started()

        self.assertEqual(first.mirror.sequence_number, 1)
        self.assertEqual(second.mirror.id, first.mirror.id)
        self.assertEqual(len(self.store.rounds), 1)
        self.assertFalse(first.degraded_mode)

    async def test_start_continues_numbering_after_settled_round(self) -> None:
        coordinator = await self.started()
        await self.ready_to_close(coordinator)
        await coordinator.close_round()

        newcomer = await self.started()

        self.assertEqual(newcomer.mirror.sequence_number, 2)

    async def test_join_confirms_against_store(self) -> None:
        coordinator = await self.started()

        result = await coordinator.join(identity("alice"), stake("10"))

        self.assertTrue(result.success)
        self.assertFalse(result.degraded)
        self.assertEqual(result.participant.id, "alice")
        remote = self.store.rounds[coordinator.mirror.id]
        self.assertEqual(coordinator.mirror, remote)
        self.assertEqual(remote.version, 1)

    async def test_local_validation_failure_never_reaches_store(self) -> None:
        coordinator = await self.started()

        result = await coordinator.join(identity("alice"), stake("-5"))

        self.assertFalse(result.success)
        self.assertIn("negative", result.error)
        self.assertNotIn("join_round", self.store.calls)
        self.assertEqual(coordinator.mirror.participants, [])

    async def test_remote_rejection_reconciles_to_remote_round(self) -> None:
        coordinator = await self.started()
        await coordinator.join(identity("alice"), stake("10"))
        await coordinator.join(identity("bob"), stake("10"))
        round_id = coordinator.mirror.id
        # another client locked the round; this mirror has not heard about it yet
        await self.store.compare_and_set_round_status(round_id, RoundStatus.OPEN, RoundStatus.LOCKED)

        result = await coordinator.join(identity("carol"), stake("10"))

        self.assertFalse(result.success)
        self.assertIn("not open", result.error)
        self.assertEqual(coordinator.mirror.status, RoundStatus.LOCKED)
        self.assertIsNone(coordinator.mirror.participant("carol"))

    async def test_transport_failure_keeps_playing_locally(self) -> None:
        coordinator = await self.started()
        self.store.offline = True

        result = await coordinator.join(identity("alice"), stake("10"))
        calls_after_failure = len(self.store.calls)
        second = await coordinator.join(identity("bob"), stake("20"))

        self.assertTrue(result.success)
        self.assertTrue(result.degraded)
        self.assertTrue(second.success)
        self.assertTrue(coordinator.degraded_mode)
        self.assertEqual(len(self.store.calls), calls_after_failure)
        self.assertEqual([p.id for p in coordinator.mirror.participants], ["alice", "bob"])
        self.assertIsNotNone(coordinator.mirror.countdown_deadline)

    async def test_store_unreachable_at_startup_runs_locally(self) -> None:
        self.store.offline = True

        coordinator = await self.started()

        self.assertTrue(coordinator.degraded_mode)
        self.assertEqual(coordinator.mirror.sequence_number, 1)
        self.assertEqual(coordinator.mirror.status, RoundStatus.OPEN)

    async def test_stale_notification_is_discarded(self) -> None:
        coordinator = SyncCoordinator(self.store, self.machine, clock=self.clock)
        current = self.machine.new_round(5, self.clock())
        coordinator.reconcile(current)
        stale = ChangeEvent(
            event_type="update",
            table="rounds",
            row={"id": "older", "sequence_number": 4, "status": "SETTLED"},
        )

        changed = await coordinator.handle_change(stale)

        self.assertFalse(changed)
        self.assertEqual(self.store.calls, [])
        self.assertEqual(coordinator.mirror, current)

    async def test_unparsable_row_is_dropped(self) -> None:
        coordinator = await self.started()
        calls = len(self.store.calls)

        changed = await coordinator.handle_change(
            ChangeEvent(event_type="update", table="rounds", row={"id": coordinator.mirror.id})
        )

        self.assertFalse(changed)
        self.assertEqual(len(self.store.calls), calls)

    async def test_same_notification_twice_is_idempotent(self) -> None:
        observer = SyncCoordinator(self.store, self.machine, clock=self.clock)
        player = await self.started()
        observer.reconcile(await self.store.fetch_round(player.mirror.id))
        subscription = self.store.subscribe(ChangeFilter.field_equals("rounds", "id", player.mirror.id))

        await player.join(identity("alice"), stake("10"))
        event = subscription.get_nowait()

        self.assertTrue(await observer.handle_change(event))
        once = observer.mirror.model_copy(deep=True)
        self.assertFalse(await observer.handle_change(event))
        self.assertEqual(observer.mirror, once)
        self.assertEqual([p.id for p in once.participants], ["alice"])

    async def test_status_never_moves_backward(self) -> None:
        coordinator = SyncCoordinator(self.store, self.machine, clock=self.clock)
        opened = self.machine.new_round(1, self.clock())
        locked = opened.model_copy(update={"status": RoundStatus.LOCKED, "version": 3})

        coordinator.reconcile(locked)
        changed = coordinator.reconcile(opened.model_copy(update={"version": 2}))

        self.assertFalse(changed)
        self.assertEqual(coordinator.mirror.status, RoundStatus.LOCKED)

    async def test_close_round_settles_and_writes_history(self) -> None:
        coordinator = await self.started(rng=SequenceRng(0.05))
        await self.ready_to_close(coordinator)
        round_id = coordinator.mirror.id

        outcome = await coordinator.close_round()

        self.assertEqual(outcome, CloseOutcome.SETTLED)
        remote = self.store.rounds[round_id]
        self.assertEqual(remote.status, RoundStatus.SETTLED)
        self.assertEqual(remote.winner_id, "alice")
        self.assertEqual(remote.winner_probability, Decimal("10.00"))
        self.assertEqual(coordinator.mirror, remote)
        self.assertEqual(self.store.history[round_id].winner_id, "alice")
        kinds = self.store.kinds(round_id)
        self.assertEqual(kinds.count(LogKind.LOCK), 1)
        self.assertEqual(kinds.count(LogKind.DRAW), 1)
        self.assertEqual(kinds.count(LogKind.SETTLE), 1)

    async def test_close_before_deadline_does_nothing(self) -> None:
        coordinator = await self.started()
        await coordinator.join(identity("alice"), stake("10"))
        await coordinator.join(identity("bob"), stake("90"))

        outcome = await coordinator.close_round()

        self.assertEqual(outcome, CloseOutcome.NOT_READY)
        self.assertEqual(self.store.rounds[coordinator.mirror.id].status, RoundStatus.OPEN)

    async def test_expired_countdown_with_one_participant_is_cleared(self) -> None:
        coordinator = await self.started()
        await coordinator.join(identity("alice"), stake("10"))
        round_id = coordinator.mirror.id
        await self.store.compare_and_set_round_status(
            round_id, RoundStatus.OPEN, RoundStatus.OPEN, {"countdown_deadline": self.clock()}
        )
        await coordinator.refresh()

        outcome = await coordinator.close_round()

        self.assertEqual(outcome, CloseOutcome.COUNTDOWN_CLEARED)
        self.assertEqual(self.store.rounds[round_id].status, RoundStatus.OPEN)
        self.assertIsNone(self.store.rounds[round_id].countdown_deadline)
        self.assertIsNone(coordinator.mirror.countdown_deadline)

    async def test_two_clients_race_and_only_one_draws(self) -> None:
        first_rng = SequenceRng(0.05)
        second_rng = SequenceRng(0.5)
        first = await self.started(rng=first_rng)
        second = await self.started(rng=second_rng)
        await self.ready_to_close(first)
        await second.refresh()
        round_id = first.mirror.id

        outcomes = await asyncio.gather(first.close_round(), second.close_round())

        self.assertEqual(sorted(o.value for o in outcomes), ["LOST_RACE", "SETTLED"])
        self.assertEqual(first_rng.calls + second_rng.calls, 1)
        kinds = self.store.kinds(round_id)
        self.assertEqual(kinds.count(LogKind.LOCK), 1)
        self.assertEqual(kinds.count(LogKind.DRAW), 1)
        self.assertEqual(len(self.store.history), 1)

        await first.refresh()
        await second.refresh()
        remote = self.store.rounds[round_id]
        self.assertEqual(first.mirror, remote)
        self.assertEqual(second.mirror, remote)
        self.assertEqual(remote.status, RoundStatus.SETTLED)

    async def test_failed_draw_is_force_settled_remotely(self) -> None:
        def empty_draw(weights, rng):
            raise EmptyPoolError("empty")

        self.machine = RoundStateMachine(draw_fn=empty_draw)
        self.store.machine = self.machine
        coordinator = await self.started()
        await self.ready_to_close(coordinator)
        round_id = coordinator.mirror.id

        outcome = await coordinator.close_round()

        self.assertEqual(outcome, CloseOutcome.FORCE_SETTLED)
        remote = self.store.rounds[round_id]
        self.assertEqual(remote.status, RoundStatus.SETTLED)
        self.assertIsNone(remote.winner_id)
        self.assertTrue(remote.needs_inspection)
        self.assertIn(LogKind.INFO, self.store.kinds(round_id))
        self.assertNotIn(LogKind.DRAW, self.store.kinds(round_id))
        self.assertIsNone(self.store.history[round_id].winner_id)

    async def test_store_failure_mid_close_settles_locally(self) -> None:
        coordinator = await self.started(rng=SequenceRng(0.5))
        await self.ready_to_close(coordinator)
        self.store.offline = True

        outcome = await coordinator.close_round()

        self.assertEqual(outcome, CloseOutcome.SETTLED)
        self.assertTrue(coordinator.degraded_mode)
        self.assertEqual(coordinator.mirror.status, RoundStatus.SETTLED)
        self.assertEqual(coordinator.mirror.winner_id, "bob")
        self.assertEqual(len(coordinator.local_history), 1)

    async def test_advance_requires_settled_round(self) -> None:
        coordinator = await self.started()

        with self.assertRaises(InvalidTransitionError):
            await coordinator.advance_to_next_round()

    async def test_advance_opens_next_sequence(self) -> None:
        coordinator = await self.started()
        await self.ready_to_close(coordinator)
        await coordinator.close_round()

        following = await coordinator.advance_to_next_round()

        self.assertEqual(following.sequence_number, 2)
        self.assertEqual(following.status, RoundStatus.OPEN)
        self.assertIn(following.id, self.store.rounds)

    async def test_next_round_reconnects_after_degraded_round(self) -> None:
        coordinator = await self.started()
        await self.ready_to_close(coordinator)
        self.store.offline = True
        await coordinator.close_round()
        settled_locally = coordinator.mirror
        self.clock.advance(3)

        self.store.offline = False
        following = await coordinator.advance_to_next_round()

        self.assertFalse(coordinator.degraded_mode)
        self.assertIn(following.id, self.store.rounds)
        self.assertNotEqual(following.id, settled_locally.id)
        self.assertEqual(following.sequence_number, settled_locally.sequence_number + 1)
        self.assertEqual(following.status, RoundStatus.OPEN)
        # the round left open in the store was closed on behalf of its participants
        self.assertEqual(self.store.rounds[settled_locally.id].status, RoundStatus.SETTLED)
        self.assertEqual(list(self.store.history), [settled_locally.id])

    async def test_locally_settled_round_is_not_adopted_again(self) -> None:
        coordinator = await self.started(rng=SequenceRng(0.05))
        round_id = coordinator.mirror.id
        self.store.offline = True
        await self.ready_to_close(coordinator)
        await coordinator.close_round()
        local_winner = coordinator.mirror.winner_id
        self.store.offline = False

        # the store never saw the joins, so the round is still open and empty there
        waiting = await coordinator.advance_to_next_round()

        self.assertEqual(waiting.id, round_id)
        self.assertEqual(waiting.status, RoundStatus.SETTLED)
        self.assertFalse(coordinator.degraded_mode)
        self.assertEqual(self.store.rounds[round_id].status, RoundStatus.OPEN)

        other = await self.started(rng=SequenceRng(0.95))
        await other.join(identity("carol"), stake("10"))
        await other.join(identity("dave"), stake("10"))
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertFalse(await coordinator.handle_change(
            ChangeEvent(event_type="update", table="rounds", row={"id": round_id, "sequence_number": 1, "status": "OPEN"})
        ))
        await coordinator.refresh()
        self.assertEqual(coordinator.mirror.status, RoundStatus.SETTLED)
        self.assertEqual(coordinator.mirror.winner_id, local_winner)

        self.clock.advance(61)
        self.assertEqual(await other.close_round(), CloseOutcome.SETTLED)
        self.assertEqual(coordinator.mirror.winner_id, local_winner)

        following = await coordinator.advance_to_next_round()

        self.assertNotEqual(following.id, round_id)
        self.assertEqual(following.sequence_number, 2)
        self.assertEqual(following.status, RoundStatus.OPEN)

    async def test_abandoned_lock_is_force_settled_after_timeout(self) -> None:
        observer = await self.started()
        await self.ready_to_close(observer)
        round_id = observer.mirror.id
        # another client won the lock and disappeared before drawing
        await self.store.compare_and_set_round_status(
            round_id, RoundStatus.OPEN, RoundStatus.LOCKED, {"locked_at": self.clock()}
        )
        await observer.refresh()
        latecomer = SyncCoordinator(self.store, self.machine, clock=self.clock)
        latecomer.reconcile(await self.store.fetch_round(round_id))

        self.clock.advance(29)
        self.assertEqual(await observer.recover_stalled_round(), CloseOutcome.NOT_READY)
        self.assertEqual(self.store.rounds[round_id].status, RoundStatus.LOCKED)

        self.clock.advance(1)
        outcome = await observer.recover_stalled_round()

        self.assertEqual(outcome, CloseOutcome.FORCE_SETTLED)
        remote = self.store.rounds[round_id]
        self.assertEqual(remote.status, RoundStatus.SETTLED)
        self.assertIsNone(remote.winner_id)
        self.assertTrue(remote.needs_inspection)
        self.assertEqual(observer.mirror, remote)
        self.assertIn(LogKind.INFO, self.store.kinds(round_id))
        self.assertIsNone(self.store.history[round_id].winner_id)

        # a second client reaching the same conclusion only syncs
        self.assertEqual(await latecomer.recover_stalled_round(), CloseOutcome.LOST_RACE)
        self.assertEqual(latecomer.mirror, remote)
        self.assertEqual(len(self.store.history), 1)

        following = await observer.advance_to_next_round()
        self.assertEqual(following.sequence_number, 2)


if __name__ == "__main__":
    unittest.main()
