"""Unit tests for per-sender message grouping."""
import random

from chatsync.sync.grouper import merge_message, message_count
from chatsync.sync.models import Message, MessageBlock

from conftest import shape


def _msg(message_id: str, content: str = "") -> Message:
    return Message(messageId=message_id, content=content or message_id)


def _fold(sequence):
    blocks = []
    for index, (sender_id, content) in enumerate(sequence):
        blocks = merge_message(blocks, sender_id, _msg(f"m{index}", content))
    return blocks


class TestMergeMessage:
    """Tests for merge_message()."""

    def test_first_message_opens_a_block(self):
        blocks = merge_message([], "u1", _msg("m1", "hi"))
        assert shape(blocks) == [("u1", ["hi"])]

    def test_same_sender_extends_last_block(self):
        blocks = _fold([("u1", "hi"), ("u2", "yo"), ("u2", "sup")])
        assert shape(blocks) == [("u1", ["hi"]), ("u2", ["yo", "sup"])]

    def test_new_sender_appends_block(self):
        blocks = _fold([("u1", "hi"), ("u2", "yo"), ("u2", "sup"), ("u2", "newMsg")])
        assert shape(blocks) == [("u1", ["hi"]), ("u2", ["yo", "sup", "newMsg"])]

        blocks = merge_message(blocks, "u1", _msg("m9", "back"))
        assert shape(blocks) == [
            ("u1", ["hi"]),
            ("u2", ["yo", "sup", "newMsg"]),
            ("u1", ["back"]),
        ]

    def test_interleaved_senders_never_merge(self):
        blocks = _fold([("a", "1"), ("b", "2"), ("a", "3")])
        assert shape(blocks) == [("a", ["1"]), ("b", ["2"]), ("a", ["3"])]

    def test_input_is_not_mutated(self):
        before = _fold([("u1", "hi"), ("u2", "yo")])
        snapshot = shape(before)

        merge_message(before, "u2", _msg("x", "sup"))
        merge_message(before, "u3", _msg("y", "hey"))

        assert shape(before) == snapshot

    def test_untouched_blocks_are_shared(self):
        before = _fold([("u1", "hi"), ("u2", "yo")])
        after = merge_message(before, "u2", _msg("x", "sup"))

        assert after is not before
        assert after[0] is before[0]
        assert after[1] is not before[1]

    def test_message_count(self):
        blocks = _fold([("u1", "a"), ("u1", "b"), ("u2", "c")])
        assert message_count(blocks) == 3
        assert message_count([]) == 0


class TestGroupingInvariant:
    """Flattening the blocks must reproduce the input sequence exactly."""

    def test_random_sequences(self):
        rng = random.Random(1234)
        for _ in range(50):
            sequence = [
                (rng.choice(["a", "b", "c"]), f"t{i}")
                for i in range(rng.randint(0, 40))
            ]
            blocks = _fold(sequence)

            flattened = [
                (block.senderId, message.content)
                for block in blocks
                for message in block.messages
            ]
            assert flattened == sequence

            for block in blocks:
                assert block.messages
            for left, right in zip(blocks, blocks[1:]):
                assert left.senderId != right.senderId

    def test_block_model_defaults(self):
        block = MessageBlock(senderId="u1")
        assert block.messages == []
