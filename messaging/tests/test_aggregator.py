import unittest

from dm_sync.aggregator import aggregate, load_conversations
from dm_sync.keys import conversation_key
from dm_sync.models import Message, MessageDraft, Profile
from dm_sync.store import InMemoryMessageStore

from .fakes import TickingClock


def message(message_id: str, other: str, created_at: int, content: str = "hi", sender: str | None = None) -> Message:
    return Message(
        id=message_id,
        conversation_key=conversation_key("alice", other),
        sender_id=sender or other,
        content=content,
        created_at=created_at,
    )


class AggregateTests(unittest.TestCase):
    def test_one_summary_per_partner_with_latest_message(self):
        recent = [
            message("m6", "bob", 600, "latest bob"),
            message("m5", "carol", 500, "latest carol"),
            message("m4", "bob", 400),
            message("m3", "dave", 300, "only dave"),
            message("m2", "carol", 200),
            message("m1", "bob", 100),
        ]

        summaries = aggregate(recent, "alice")

        self.assertEqual([s.partner_id for s in summaries], ["bob", "carol", "dave"])
        self.assertEqual(
            [s.last_message.content for s in summaries],
            ["latest bob", "latest carol", "only dave"],
        )
        self.assertEqual([s.last_message_at for s in summaries], [600, 500, 300])

    def test_partner_resolved_for_own_messages(self):
        summaries = aggregate([message("m1", "bob", 100, sender="alice")], "alice")
        self.assertEqual(summaries[0].partner_id, "bob")

    def test_profiles_attached_when_known(self):
        profiles = {"bob": Profile(id="bob", username="bobby", is_verified=True)}

        summaries = aggregate([message("m2", "carol", 200), message("m1", "bob", 100)], "alice", profiles)

        self.assertIsNone(summaries[0].partner_profile)
        self.assertEqual(summaries[1].partner_profile.username, "bobby")

    def test_foreign_messages_skipped(self):
        stray = Message(
            id="x",
            conversation_key=conversation_key("bob", "carol"),
            sender_id="bob",
            content="not for alice",
            created_at=50,
        )
        self.assertEqual(aggregate([stray], "alice"), [])

    def test_preview_truncates_long_content(self):
        long_text = "a" * 40
        summary = aggregate([message("m1", "bob", 100, long_text)], "alice")[0]

        self.assertEqual(summary.preview(), "a" * 30 + "...")
        self.assertEqual(summary.preview(length=50), long_text)


class LoadConversationsTests(unittest.IsolatedAsyncioTestCase):
    async def test_loads_from_store_most_recent_first(self):
        store = InMemoryMessageStore(now_func=TickingClock())
        for other, content in [("bob", "b1"), ("carol", "c1"), ("bob", "b2"), ("dave", "d1")]:
            await store.create_message(
                MessageDraft(conversation_key=conversation_key("alice", other), sender_id=other, content=content)
            )
        await store.create_message(
            MessageDraft(conversation_key=conversation_key("bob", "carol"), sender_id="bob", content="elsewhere")
        )

        summaries = await load_conversations(store, "alice")

        self.assertEqual([(s.partner_id, s.last_message.content) for s in summaries], [
            ("dave", "d1"),
            ("bob", "b2"),
            ("carol", "c1"),
        ])

    async def test_limit_bounds_scanned_messages(self):
        store = InMemoryMessageStore(now_func=TickingClock())
        for other in ["bob", "carol", "dave"]:
            await store.create_message(
                MessageDraft(conversation_key=conversation_key("alice", other), sender_id="alice", content="yo")
            )

        summaries = await load_conversations(store, "alice", limit=2)

        self.assertEqual([s.partner_id for s in summaries], ["dave", "carol"])


if __name__ == "__main__":
    unittest.main()
