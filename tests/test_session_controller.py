import unittest
from decimal import Decimal
from unittest.mock import AsyncMock

from models import RoundStatus
from core.change_feed import ChangeFilter
from core.exceptions import ConflictError
from core.session_controller import (
    AcknowledgeWinner,
    ClientPhase,
    RemoteChange,
    SessionController,
    Tick,
)
from core.state_machine import RoundStateMachine
from core.sync_coordinator import CloseOutcome, SyncCoordinator

from fakes import FixedClock, InMemoryRoundStore, SequenceRng, identity, stake


class SessionControllerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.clock = FixedClock()
        self.machine = RoundStateMachine()
        self.store = InMemoryRoundStore(self.machine, self.clock)
        self.announced = []
        self.controllers = []

    async def asyncTearDown(self) -> None:
        for controller in self.controllers:
            await controller.stop()

    async def connected(self, player_id="alice", rng=None) -> SessionController:
        coordinator = SyncCoordinator(self.store, self.machine, clock=self.clock, rng=rng or SequenceRng(0.5))
        controller = SessionController(
            coordinator,
            identity=identity(player_id, avatar_ref=f"https://avatars.example/{player_id}.png"),
            cooldown_seconds=3,
            clock=self.clock,
            on_winner=self.announced.append,
        )
        self.controllers.append(controller)
        await controller.connect()
        return controller

    async def test_phases_follow_joins(self) -> None:
        controller = await self.connected()
        self.assertEqual(controller.phase, ClientPhase.IDLE)

        await controller.join(stake("10"))
        self.assertEqual(controller.phase, ClientPhase.WAITING_FOR_PLAYERS)

        await controller.join(stake("30"), identity=identity("bob"))
        self.assertEqual(controller.phase, ClientPhase.COUNTDOWN)

        projection = controller.projection()
        self.assertEqual(projection.sequence_number, 1)
        self.assertEqual(projection.countdown_remaining, 60.0)
        self.assertEqual([p.weight_share for p in projection.participants], [Decimal("0.25"), Decimal("0.75")])
        self.assertEqual(projection.participants[0].avatar_ref, "https://avatars.example/alice.png")
        self.assertFalse(projection.offline)

    async def test_join_error_is_shown_inline(self) -> None:
        controller = await self.connected()

        result = await controller.join(stake("0"))

        self.assertFalse(result.success)
        self.assertIsNotNone(controller.projection().join_error)
        self.assertEqual(controller.phase, ClientPhase.IDLE)

    async def test_full_cycle_announces_winner_once(self) -> None:
        controller = await self.connected(rng=SequenceRng(0.5))
        await controller.join(stake("10"))
        await controller.join(stake("90"), identity=identity("bob"))
        subscription = self.store.subscribe(ChangeFilter.field_equals("rounds", "id", controller.coordinator.mirror.id))

        self.clock.advance(60)
        await controller.handle_event(Tick())

        self.assertEqual(controller.phase, ClientPhase.WINNER_SHOWN)
        self.assertEqual(len(self.announced), 1)
        self.assertEqual(self.announced[0].winner_id, "bob")
        self.assertEqual(self.announced[0].winner_probability, Decimal("90.00"))

        # replaying the settlement notifications does not announce again
        event = subscription.get_nowait()
        while event is not None:
            await controller.handle_event(RemoteChange(event))
            event = subscription.get_nowait()
        await controller.handle_event(Tick())
        self.assertEqual(len(self.announced), 1)

        self.clock.advance(3)
        await controller.handle_event(Tick())

        self.assertEqual(controller.phase, ClientPhase.IDLE)
        self.assertEqual(controller.coordinator.mirror.sequence_number, 2)
        self.assertEqual(controller.coordinator.mirror.status, RoundStatus.OPEN)

    async def test_draw_is_triggered_once_per_round(self) -> None:
        controller = await self.connected()
        await controller.join(stake("10"))
        await controller.join(stake("90"), identity=identity("bob"))
        controller.coordinator.close_round = AsyncMock(return_value=CloseOutcome.LOST_RACE)

        self.clock.advance(61)
        await controller.handle_event(Tick())
        self.clock.advance(1)
        await controller.handle_event(Tick())

        controller.coordinator.close_round.assert_awaited_once()
        self.assertEqual(controller.phase, ClientPhase.SPINNING)

    async def test_remote_lock_moves_observer_to_spinning(self) -> None:
        player = await self.connected("alice")
        observer = await self.connected("carol")
        await player.join(stake("10"))
        await player.join(stake("90"), identity=identity("bob"))
        await observer.coordinator.refresh()
        round_id = player.coordinator.mirror.id
        subscription = self.store.subscribe(ChangeFilter.field_equals("rounds", "id", round_id))

        await self.store.compare_and_set_round_status(round_id, RoundStatus.OPEN, RoundStatus.LOCKED)
        await observer.handle_event(RemoteChange(subscription.get_nowait()))

        self.assertEqual(observer.phase, ClientPhase.SPINNING)

    async def test_acknowledge_winner_ends_display_early(self) -> None:
        controller = await self.connected()
        await controller.join(stake("10"))
        await controller.join(stake("90"), identity=identity("bob"))
        self.clock.advance(60)
        await controller.handle_event(Tick())
        self.assertEqual(controller.phase, ClientPhase.WINNER_SHOWN)

        await controller.handle_event(AcknowledgeWinner())

        self.assertEqual(controller.phase, ClientPhase.IDLE)
        self.assertEqual(controller.coordinator.mirror.sequence_number, 2)

    async def test_store_outage_still_completes_a_round(self) -> None:
        controller = await self.connected(rng=SequenceRng(0.05))
        self.store.offline = True

        first = await controller.join(stake("10"))
        second = await controller.join(stake("90"), identity=identity("bob"))

        self.assertTrue(first.success)
        self.assertTrue(second.success)
        self.assertTrue(controller.projection().offline)
        self.assertEqual(controller.phase, ClientPhase.COUNTDOWN)

        self.clock.advance(60)
        await controller.handle_event(Tick())

        self.assertEqual(controller.phase, ClientPhase.WINNER_SHOWN)
        self.assertEqual(len(self.announced), 1)
        self.assertEqual(self.announced[0].winner_id, "alice")
        self.assertEqual(self.announced[0].status, RoundStatus.SETTLED)

        self.clock.advance(3)
        await controller.handle_event(Tick())

        self.assertEqual(controller.phase, ClientPhase.IDLE)
        self.assertEqual(controller.coordinator.mirror.sequence_number, 2)
        self.assertTrue(controller.projection().offline)

    async def test_user_actions_go_through_the_queue(self) -> None:
        controller = await self.connected()
        await controller.join(stake("10"))

        controller.request_manual_refresh()
        controller.request_new_round()
        await controller.drain()

        self.assertTrue(controller.queue.empty())
        self.assertEqual(controller.coordinator.mirror.sequence_number, 1)
        self.assertEqual(controller.phase, ClientPhase.WAITING_FOR_PLAYERS)

    async def test_reconnecting_after_offline_settlement_moves_to_a_new_round(self) -> None:
        controller = await self.connected()
        await controller.join(stake("10"))
        await controller.join(stake("90"), identity=identity("bob"))
        self.store.offline = True

        self.clock.advance(60)
        await controller.handle_event(Tick())
        settled = controller.coordinator.mirror
        self.assertEqual(settled.status, RoundStatus.SETTLED)
        self.assertEqual(controller.phase, ClientPhase.WINNER_SHOWN)

        self.store.offline = False
        self.clock.advance(3)
        await controller.handle_event(Tick())
        seen = [(controller.coordinator.mirror.id, controller.coordinator.mirror.status)]
        while not controller.queue.empty():
            await controller.handle_event(controller.queue.get_nowait())
            seen.append((controller.coordinator.mirror.id, controller.coordinator.mirror.status))

        current = controller.coordinator.mirror
        self.assertNotEqual(current.id, settled.id)
        self.assertGreater(current.sequence_number, settled.sequence_number)
        self.assertEqual(current.status, RoundStatus.OPEN)
        self.assertEqual(controller.phase, ClientPhase.IDLE)
        self.assertNotIn(settled.id, [round_id for round_id, _ in seen])
        self.assertEqual([r.id for r in self.announced], [settled.id])

    async def test_waits_on_winner_while_settled_round_is_still_open_remotely(self) -> None:
        controller = await self.connected()
        round_id = controller.coordinator.mirror.id
        self.store.offline = True
        await controller.join(stake("10"))
        await controller.join(stake("90"), identity=identity("bob"))
        self.clock.advance(60)
        await controller.handle_event(Tick())
        self.store.offline = False

        self.clock.advance(3)
        await controller.handle_event(Tick())
        attempts = self.store.calls.count("fetch_current_open_round")

        self.assertEqual(controller.phase, ClientPhase.WINNER_SHOWN)
        self.assertEqual(controller.coordinator.mirror.id, round_id)
        self.assertEqual(controller.coordinator.mirror.status, RoundStatus.SETTLED)
        self.assertEqual(len(self.announced), 1)

        self.clock.advance(1)
        await controller.handle_event(Tick())
        self.assertEqual(self.store.calls.count("fetch_current_open_round"), attempts)

        self.clock.advance(2)
        await controller.handle_event(Tick())
        self.assertGreater(self.store.calls.count("fetch_current_open_round"), attempts)
        self.assertEqual(controller.phase, ClientPhase.WINNER_SHOWN)
        self.assertEqual(len(self.announced), 1)

    async def test_failed_advance_is_retried_after_cooldown(self) -> None:
        controller = await self.connected()
        await controller.join(stake("10"))
        await controller.join(stake("90"), identity=identity("bob"))
        self.clock.advance(60)
        await controller.handle_event(Tick())

        coordinator = controller.coordinator
        original = coordinator.fetch_or_create
        attempts = []

        async def flaky_fetch_or_create():
            attempts.append(self.clock())
            if len(attempts) == 1:
                raise ConflictError("round creation raced and no open round was found")
            return await original()

        coordinator.fetch_or_create = flaky_fetch_or_create

        self.clock.advance(3)
        await controller.handle_event(Tick())
        self.assertEqual(controller.phase, ClientPhase.WINNER_SHOWN)
        self.assertEqual(coordinator.mirror.sequence_number, 1)

        self.clock.advance(1)
        await controller.handle_event(Tick())
        self.assertEqual(len(attempts), 1)

        self.clock.advance(2)
        await controller.handle_event(Tick())

        self.assertEqual(len(attempts), 2)
        self.assertEqual(controller.phase, ClientPhase.IDLE)
        self.assertEqual(coordinator.mirror.sequence_number, 2)
        self.assertEqual(len(self.announced), 1)

    async def test_abandoned_lock_does_not_leave_observers_spinning(self) -> None:
        controller = await self.connected()
        await controller.join(stake("10"))
        await controller.join(stake("90"), identity=identity("bob"))
        round_id = controller.coordinator.mirror.id
        self.clock.advance(60)
        # another client wins the lock, then goes away before drawing
        await self.store.compare_and_set_round_status(
            round_id, RoundStatus.OPEN, RoundStatus.LOCKED, {"locked_at": self.clock()}
        )
        await controller.drain()
        self.assertEqual(controller.phase, ClientPhase.SPINNING)

        self.clock.advance(29)
        await controller.handle_event(Tick())
        self.assertEqual(controller.phase, ClientPhase.SPINNING)

        self.clock.advance(1)
        await controller.handle_event(Tick())

        self.assertEqual(controller.phase, ClientPhase.WINNER_SHOWN)
        self.assertEqual(len(self.announced), 1)
        self.assertIsNone(self.announced[0].winner_id)
        self.assertTrue(self.store.rounds[round_id].needs_inspection)

        self.clock.advance(3)
        await controller.handle_event(Tick())

        self.assertEqual(controller.phase, ClientPhase.IDLE)
        self.assertEqual(controller.coordinator.mirror.sequence_number, 2)

    async def test_status_is_monotonic_and_each_round_has_one_winner(self) -> None:
        controller = await self.connected()
        seen = {}

        async def step(event) -> None:
            await controller.handle_event(event)
            while not controller.queue.empty():
                await controller.handle_event(controller.queue.get_nowait())
            mirror = controller.coordinator.mirror
            seen.setdefault(mirror.id, []).append(mirror.status.rank)

        for _ in range(3):
            await controller.join(stake("10"))
            await controller.join(stake("90"), identity=identity("bob"))
            self.clock.advance(60)
            await step(Tick())
            self.clock.advance(3)
            await step(Tick())

        for ranks in seen.values():
            self.assertEqual(ranks, sorted(ranks))
        announced_ids = [r.id for r in self.announced]
        self.assertEqual(len(announced_ids), 3)
        self.assertEqual(len(set(announced_ids)), 3)
        self.assertEqual(len(self.store.history), 3)

    async def test_tracking_sets_keep_only_recent_rounds(self) -> None:
        controller = await self.connected()

        for _ in range(4):
            await controller.join(stake("10"))
            await controller.join(stake("90"), identity=identity("bob"))
            self.clock.advance(60)
            await controller.handle_event(Tick())
            self.clock.advance(3)
            await controller.handle_event(Tick())

        context = controller.context
        recent = {context.current_round_id, context.previous_round_id}
        self.assertEqual(len(self.announced), 4)
        self.assertEqual(context.current_round_id, controller.coordinator.mirror.id)
        self.assertLessEqual(len(context.draw_triggered), 2)
        self.assertLessEqual(len(context.announced), 2)
        self.assertTrue(context.draw_triggered <= recent)
        self.assertTrue({round_id for round_id, _ in context.announced} <= recent)


if __name__ == "__main__":
    unittest.main()
