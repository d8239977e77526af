"""Per-sender grouping of a room's timeline.

Blocks are treated as copy-on-write: ``merge_message`` never mutates its
input, it returns a new list that shares every untouched block with the old
one. Callers must feed messages in arrival order.
"""
from typing import List

from .models import Message, MessageBlock


def merge_message(
    blocks: List[MessageBlock], sender_id: str, message: Message
) -> List[MessageBlock]:
    """Fold one message into a room's blocks.

    If the last block belongs to ``sender_id`` the message extends it,
    otherwise a new single-message block is appended. Two messages from the
    same sender separated by another sender's message never merge.

    Args:
        blocks: Current blocks, oldest first.
        sender_id: uid of the message's sender.
        message: The message to fold in.

    Returns:
        New block list. ``blocks`` itself is left unchanged.
    """
    if blocks and blocks[-1].senderId == sender_id:
        last = blocks[-1]
        extended = last.model_copy(update={"messages": last.messages + [message]})
        return blocks[:-1] + [extended]
    return blocks + [MessageBlock(senderId=sender_id, messages=[message])]


def message_count(blocks: List[MessageBlock]) -> int:
    return sum(len(block.messages) for block in blocks)
