import asyncio
import os
import tempfile
import unittest

from messaging.conversations import conversation_id
from messaging.errors import Forbidden, NotFound, ValidationError
from messaging.log import InMemoryMessageLog
from messaging.models import ReactionType
from messaging.reactions import InMemoryReactionStore, ReactionLedger, SQLiteReactionStore
from messaging.sqlite_backend import SQLiteBackend
from messaging.sqlite_log import SQLiteMessageLog

from tests.messaging_util import FakeClock, make_store, text_draft


class ReactionLedgerTests(unittest.IsolatedAsyncioTestCase):
    def make_backends(self):
        return InMemoryMessageLog(), InMemoryReactionStore()

    async def asyncSetUp(self) -> None:
        self.clock = FakeClock()
        log, reaction_store = self.make_backends()
        self.store = make_store(self.clock, log)
        self.ledger = ReactionLedger(reaction_store, log, now_func=self.clock.now)
        self.message_id = await self.store.append(
            text_draft(conversation_id("alice", "bob"), "alice", "bob", "I passed the exam!")
        )

    async def test_toggle_same_type_twice_removes_it(self):
        first = await self.ledger.toggle(self.message_id, "bob", "love")
        second = await self.ledger.toggle(self.message_id, "bob", ReactionType.LOVE)

        self.assertEqual(first.type, ReactionType.LOVE)
        self.assertIsNone(second)
        self.assertEqual(await self.ledger.get_counts(self.message_id), {})
        self.assertIsNone(await self.ledger.get_mine(self.message_id, "bob"))

    async def test_other_type_replaces_existing_reaction(self):
        await self.ledger.toggle(self.message_id, "bob", "like")
        self.clock.advance(1)
        replaced = await self.ledger.toggle(self.message_id, "bob", "support")

        self.assertEqual(replaced.type, ReactionType.SUPPORT)
        self.assertEqual(await self.ledger.get_counts(self.message_id), {ReactionType.SUPPORT: 1})
        self.assertEqual(len(await self.ledger.list_reactions(self.message_id)), 1)

    async def test_counts_aggregate_across_participants(self):
        await self.ledger.toggle(self.message_id, "bob", "care")
        await self.ledger.toggle(self.message_id, "alice", "care")

        self.assertEqual(await self.ledger.get_counts(self.message_id), {ReactionType.CARE: 2})

    async def test_subscribers_receive_counts(self):
        updates = []
        subscription = await self.ledger.subscribe(self.message_id, updates.append)

        await self.ledger.toggle(self.message_id, "bob", "sad")
        subscription.cancel()
        await self.ledger.toggle(self.message_id, "bob", "sad")

        self.assertEqual(updates, [{}, {ReactionType.SAD: 1}])

    async def test_rapid_repeated_toggles_leave_one_reaction(self):
        updates = []
        await self.ledger.subscribe(self.message_id, updates.append)

        await asyncio.gather(*[self.ledger.toggle(self.message_id, "bob", "love") for _ in range(11)])

        self.assertEqual(await self.ledger.get_counts(self.message_id), {ReactionType.LOVE: 1})
        self.assertEqual(len(await self.ledger.list_reactions(self.message_id)), 1)
        self.assertEqual(updates, [{}] + [{ReactionType.LOVE: 1}, {}] * 5 + [{ReactionType.LOVE: 1}])

    async def test_rejects_unknown_type_message_and_outsiders(self):
        with self.assertRaises(ValidationError):
            await self.ledger.toggle(self.message_id, "bob", "wow")
        with self.assertRaises(NotFound):
            await self.ledger.toggle("msg_missing", "bob", "like")
        with self.assertRaises(Forbidden):
            await self.ledger.toggle(self.message_id, "mallory", "like")


class SQLiteReactionLedgerTests(ReactionLedgerTests):
    def make_backends(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.backend = SQLiteBackend(os.path.join(self.tmpdir.name, "messaging.db"))
        return SQLiteMessageLog(self.backend), SQLiteReactionStore(self.backend)

    async def asyncTearDown(self) -> None:
        self.backend.close()
        self.tmpdir.cleanup()

    async def test_reactions_survive_restart(self):
        await self.ledger.toggle(self.message_id, "bob", "love")
        self.backend.close()

        self.backend = SQLiteBackend(os.path.join(self.tmpdir.name, "messaging.db"))
        reopened = SQLiteReactionStore(self.backend)

        self.assertEqual(reopened.get(self.message_id, "bob").type, ReactionType.LOVE)


if __name__ == "__main__":
    unittest.main()
