import unittest

from dm_sync.keys import conversation_key, key_participants, partner_of


class ConversationKeyTests(unittest.TestCase):
    def test_key_is_symmetric(self):
        self.assertEqual(conversation_key("alice", "bob"), conversation_key("bob", "alice"))

    def test_distinct_pairs_get_distinct_keys(self):
        keys = {
            conversation_key("alice", "bob"),
            conversation_key("alice", "carol"),
            conversation_key("bob", "carol"),
        }
        self.assertEqual(len(keys), 3)

    def test_participants_roundtrip(self):
        key = conversation_key("zed", "amy")
        self.assertEqual(key, "dm:amy:zed")
        self.assertEqual(key_participants(key), ("amy", "zed"))

    def test_partner_of(self):
        key = conversation_key("alice", "bob")
        self.assertEqual(partner_of(key, "alice"), "bob")
        self.assertEqual(partner_of(key, "bob"), "alice")
        with self.assertRaises(ValueError):
            partner_of(key, "carol")

    def test_self_conversation_partner_is_self(self):
        key = conversation_key("alice", "alice")
        self.assertEqual(partner_of(key, "alice"), "alice")

    def test_rejects_invalid_ids(self):
        with self.assertRaises(ValueError):
            conversation_key("", "bob")
        with self.assertRaises(ValueError):
            conversation_key("a:b", "bob")
        with self.assertRaises(ValueError):
            key_participants("room:alice:bob")
        with self.assertRaises(ValueError):
            key_participants("dm:alice")


if __name__ == "__main__":
    unittest.main()
