import asyncio
import json
import unittest

from api.events import RoundEventStreamer
from core.state_machine import RoundStateMachine

from fakes import FixedClock, InMemoryRoundStore, identity, stake


def parse(message: str):
    lines = message.strip().split("\n")
    return lines[0][len("event: "):], json.loads(lines[1][len("data: "):])


class RoundEventStreamerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = InMemoryRoundStore(RoundStateMachine(), FixedClock())
        self.round = await self.store.create_round(1)

    async def test_snapshot_then_changes(self) -> None:
        stream = RoundEventStreamer(self.store, self.round.id).event_generator()

        name, payload = parse(await stream.__anext__())
        self.assertEqual(name, "round_snapshot")
        self.assertEqual(payload["id"], self.round.id)

        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        await self.store.join_round(self.round.id, identity("alice"), stake("10"))

        messages = [await asyncio.wait_for(pending, 1)]
        for _ in range(2):
            messages.append(await asyncio.wait_for(stream.__anext__(), 1))
        events = dict(parse(m) for m in messages)

        self.assertEqual(set(events), {"participant_update", "round_update", "log_entry"})
        self.assertEqual(events["participant_update"]["id"], "alice")
        self.assertEqual(events["round_update"]["version"], 1)
        self.assertEqual(events["log_entry"]["kind"], "JOIN")

        await stream.aclose()
        self.assertEqual(self.store.feed.subscription_count, 0)

    async def test_unknown_round_reports_error(self) -> None:
        messages = [m async for m in RoundEventStreamer(self.store, "missing").event_generator()]

        self.assertEqual(len(messages), 1)
        self.assertEqual(parse(messages[0]), ("error", {"detail": "Round not found"}))

    async def test_store_outage_reports_error(self) -> None:
        self.store.offline = True

        messages = [m async for m in RoundEventStreamer(self.store, self.round.id).event_generator()]

        self.assertEqual(parse(messages[0])[0], "error")


if __name__ == "__main__":
    unittest.main()
