import asyncio
import random
import unittest

from dm_sync.channel import BroadcastChannel
from dm_sync.errors import FetchUnavailable
from dm_sync.keys import conversation_key
from dm_sync.models import Message, MessageDraft
from dm_sync.timeline import Timeline, TimelineReconciler
from dm_sync.store import InMemoryMessageStore

from .fakes import FailingStore, GatedStore, TickingClock

KEY = conversation_key("alice", "bob")


def make_message(message_id: str, created_at: int, *, sender: str = "bob", content: str = "hi", **extra) -> Message:
    return Message(
        id=message_id,
        conversation_key=KEY,
        sender_id=sender,
        content=content,
        created_at=created_at,
        **extra,
    )


class TimelineTests(unittest.TestCase):
    def test_sorted_by_created_at_then_insertion(self):
        timeline = Timeline()
        timeline.insert(make_message("m3", 300))
        timeline.insert(make_message("m1", 100))
        timeline.insert(make_message("m2a", 200))
        timeline.insert(make_message("m2b", 200))

        self.assertEqual([m.id for m in timeline.messages()], ["m1", "m2a", "m2b", "m3"])

    def test_insert_is_unique_by_id(self):
        timeline = Timeline()
        self.assertTrue(timeline.insert(make_message("m1", 100)))
        self.assertFalse(timeline.insert(make_message("m1", 50, content="other")))

        self.assertEqual(len(timeline), 1)
        self.assertEqual(timeline.get("m1").content, "hi")

    def test_remove_returns_entry(self):
        timeline = Timeline()
        timeline.insert(make_message("m1", 100))
        removed = timeline.remove("m1")

        self.assertEqual(removed.id, "m1")
        self.assertIsNone(timeline.remove("m1"))
        self.assertNotIn("m1", timeline)

    def test_history_merge_orders_ties_by_store(self):
        timeline = Timeline()
        pushed = make_message("m_pushed", 200)
        timeline.insert(make_message("local_1", 200, sender="alice"))
        timeline.insert(pushed)

        changed = timeline.merge_history([make_message("m_old", 200), make_message("m_pushed", 200, content="copy")])

        self.assertTrue(changed)
        self.assertEqual([m.id for m in timeline.messages()], ["m_old", "m_pushed", "local_1"])
        self.assertIs(timeline.get("m_pushed"), pushed)

    def test_history_merge_without_changes_reports_false(self):
        timeline = Timeline()
        timeline.insert(make_message("m1", 100))

        self.assertFalse(timeline.merge_history([make_message("m1", 100)]))


class TimelineReconcilerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = TickingClock()
        self.channel = BroadcastChannel()
        self.store = InMemoryMessageStore(self.channel, now_func=self.clock)
        self.reconciler = TimelineReconciler(self.store, self.channel)

    async def _seed(self, *contents: str, sender: str = "bob") -> list:
        created = []
        for content in contents:
            created.append(
                await self.store.create_message(MessageDraft(conversation_key=KEY, sender_id=sender, content=content))
            )
        return created

    async def test_initialize_fetches_history_and_subscribes(self):
        await self._seed("one", "two", "three")

        messages = await self.reconciler.initialize(KEY)

        self.assertEqual([m.content for m in messages], ["one", "two", "three"])
        self.assertEqual(self.channel.subscriber_count(KEY), 1)
        self.assertEqual(self.reconciler.timeline.value, messages)

    async def test_reinitialize_replaces_subscription(self):
        await self.reconciler.initialize(KEY)
        await self.reconciler.initialize(KEY)
        self.assertEqual(self.channel.subscriber_count(KEY), 1)

        await self._seed("late")

        self.assertEqual([m.content for m in self.reconciler.messages()], ["late"])

    async def test_remote_message_is_idempotent(self):
        await self.reconciler.initialize(KEY)
        payload = make_message("m1", 100).to_dict()

        self.assertTrue(self.reconciler.on_remote_message(payload))
        self.assertFalse(self.reconciler.on_remote_message(payload))
        self.assertEqual(len(self.reconciler.messages()), 1)

    async def test_remote_message_positioned_by_timestamp(self):
        await self.reconciler.initialize(KEY)
        self.reconciler.on_remote_message(make_message("m2", 200).to_dict())
        self.reconciler.on_remote_message(make_message("m3", 300).to_dict())
        self.reconciler.on_remote_message(make_message("m1", 100).to_dict())

        self.assertEqual([m.id for m in self.reconciler.messages()], ["m1", "m2", "m3"])

    async def test_malformed_event_dropped_and_logged(self):
        await self.reconciler.initialize(KEY)

        with self.assertLogs("dm_sync.timeline", level="WARNING") as logs:
            changed = self.reconciler.on_remote_message({"id": "m1", "conversation_key": KEY})
            self.channel.publish_message_payload(KEY, {"content": "no id"})

        self.assertFalse(changed)
        self.assertEqual(self.reconciler.messages(), [])
        self.assertEqual(len(logs.records), 2)

    async def test_message_for_other_conversation_dropped(self):
        await self.reconciler.initialize(KEY)
        other = Message(
            id="m1",
            conversation_key=conversation_key("alice", "carol"),
            sender_id="carol",
            content="psst",
            created_at=1,
        )

        with self.assertLogs("dm_sync.timeline", level="WARNING"):
            self.assertFalse(self.reconciler.on_remote_message(other.to_dict()))

    async def test_close_unsubscribes_and_ignores_late_events(self):
        await self.reconciler.initialize(KEY)
        self.reconciler.close()

        self.assertEqual(self.channel.subscriber_count(KEY), 0)
        self.assertFalse(self.reconciler.on_remote_message(make_message("m1", 100).to_dict()))
        self.assertEqual(self.reconciler.messages(), [])

    async def test_stale_callback_after_close_is_noop(self):
        captured = []
        original_subscribe = self.channel.subscribe

        def capture(key, on_message, on_typing):
            captured.append(on_message)
            return original_subscribe(key, on_message, on_typing)

        self.channel.subscribe = capture
        await self.reconciler.initialize(KEY)
        self.reconciler.close()

        captured[0](make_message("m1", 100).to_dict())

        self.assertEqual(self.reconciler.messages(), [])

    async def test_fetch_failure_raises_unavailable(self):
        store = FailingStore(self.channel)
        reconciler = TimelineReconciler(store, self.channel)

        with self.assertLogs("dm_sync.timeline", level="WARNING"):
            with self.assertRaises(FetchUnavailable):
                await reconciler.initialize(KEY)

        store.fail_reads = False
        self.assertEqual(await reconciler.initialize(KEY), [])

    async def test_close_during_fetch_discards_result(self):
        store = GatedStore(self.channel, now_func=self.clock)
        store.gate.set()
        await store.create_message(MessageDraft(conversation_key=KEY, sender_id="bob", content="old"))
        store.gate.clear()
        store.gate_reads = True
        reconciler = TimelineReconciler(store, self.channel)

        task = asyncio.create_task(reconciler.initialize(KEY))
        await asyncio.sleep(0)
        reconciler.close()
        store.gate.set()
        result = await task

        self.assertEqual(result, [])
        self.assertEqual(reconciler.messages(), [])
        self.assertEqual(self.channel.subscriber_count(KEY), 0)

    async def test_push_during_fetch_with_equal_timestamp_follows_store_order(self):
        store = GatedStore(self.channel, now_func=lambda: 5_000)
        store.gate.set()
        stored = await store.create_message(MessageDraft(conversation_key=KEY, sender_id="bob", content="first"))
        store.gate.clear()
        store.gate_reads = True
        reconciler = TimelineReconciler(store, self.channel)

        task = asyncio.create_task(reconciler.initialize(KEY))
        await asyncio.sleep(0)
        self.channel.publish_message(make_message("m_live", stored.created_at, content="second"))
        store.gate.set()
        result = await task

        self.assertEqual([m.content for m in result], ["first", "second"])

    async def test_authoritative_entry_lands_at_its_own_timestamp(self):
        await self.reconciler.initialize(KEY)
        self.reconciler.add_optimistic(make_message("local_1", 100, sender="alice", content="mine"))
        self.reconciler.on_remote_message(make_message("m_remote", 300).to_dict())

        accepted = make_message("m_mine", 200, sender="alice", content="mine")
        self.reconciler.on_local_message_accepted("local_1", accepted)

        self.assertEqual([m.id for m in self.reconciler.messages()], ["m_mine", "m_remote"])

    async def test_ack_after_remote_echo_keeps_pushed_copy(self):
        await self.reconciler.initialize(KEY)
        self.reconciler.add_optimistic(make_message("local_1", 100, sender="alice", content="mine"))
        pushed = make_message("m_mine", 110, sender="alice", content="mine", reactions={"❤️": ("bob",)})
        self.reconciler.on_remote_message(pushed.to_dict())

        kept = self.reconciler.on_local_message_accepted(
            "local_1", make_message("m_mine", 110, sender="alice", content="mine")
        )

        self.assertEqual([m.id for m in self.reconciler.messages()], ["m_mine"])
        self.assertEqual(kept.reactions, {"❤️": ("bob",)})

    async def test_rollback_removes_optimistic_entry(self):
        await self.reconciler.initialize(KEY)
        self.reconciler.add_optimistic(make_message("local_1", 100, sender="alice", content="hello"))

        removed = self.reconciler.rollback("local_1")

        self.assertEqual(removed.content, "hello")
        self.assertEqual(self.reconciler.messages(), [])

    async def test_observers_see_every_mutation(self):
        snapshots = []
        self.reconciler.timeline.subscribe(lambda messages: snapshots.append([m.id for m in messages]))
        await self.reconciler.initialize(KEY)

        self.reconciler.on_remote_message(make_message("m1", 100).to_dict())
        self.reconciler.on_remote_message(make_message("m1", 100).to_dict())
        self.reconciler.on_remote_message(make_message("m0", 50).to_dict())

        self.assertEqual(snapshots[-2:], [["m1"], ["m0", "m1"]])

    async def test_random_interleavings_keep_timeline_unique_and_sorted(self):
        for seed in range(15):
            rng = random.Random(seed)
            channel = BroadcastChannel()
            store = InMemoryMessageStore(channel, now_func=TickingClock(step_ms=rng.randint(1, 5)))
            reconciler = TimelineReconciler(store, channel)
            await reconciler.initialize(KEY)
            delivered = []

            for _ in range(40):
                op = rng.choice(["remote", "duplicate", "stale", "optimistic", "ack"])
                if op == "remote":
                    delivered.append(
                        await store.create_message(
                            MessageDraft(conversation_key=KEY, sender_id="bob", content="x")
                        )
                    )
                elif op == "duplicate" and delivered:
                    channel.publish_message(rng.choice(delivered))
                elif op == "stale":
                    reconciler.on_remote_message(make_message(f"old_{rng.randint(0, 5)}", rng.randint(0, 10)).to_dict())
                elif op == "optimistic":
                    temp = make_message(f"local_{rng.randint(0, 1000)}", rng.randint(0, 2_000_000), sender="alice")
                    reconciler.add_optimistic(temp)
                    if rng.random() < 0.5:
                        stored = await store.create_message(
                            MessageDraft(conversation_key=KEY, sender_id="alice", content="y")
                        )
                        reconciler.on_local_message_accepted(temp.id, stored)
                elif op == "ack" and delivered:
                    reconciler.on_local_message_accepted("local_missing", rng.choice(delivered))

                messages = reconciler.messages()
                ids = [m.id for m in messages]
                self.assertEqual(len(ids), len(set(ids)), f"seed {seed}")
                stamps = [m.created_at for m in messages]
                self.assertEqual(stamps, sorted(stamps), f"seed {seed}")


if __name__ == "__main__":
    unittest.main()
