"""Reaction merging by message identity.

The store is the source of truth for reaction sets: every add or remove is a
round trip that re-emits the full map, so merging is a wholesale replace of
the target message's map. ``MessageIndex`` keeps an id -> (block, position)
mapping so the target is found without scanning the whole room.
"""
from typing import Dict, Iterator, List, Optional, Tuple

from .models import MessageBlock, ReactionMap, normalize_reactions

Location = Tuple[int, int]


class MessageIndex:
    """Incremental message id -> (block index, message index) lookup.

    Blocks only ever grow at the end, so a recorded location stays valid for
    the life of the room.
    """

    def __init__(self) -> None:
        self._locations: Dict[str, Location] = {}

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._locations

    def __len__(self) -> int:
        return len(self._locations)

    def record_last(self, blocks: List[MessageBlock]) -> None:
        """Record the location of the newest message after a merge."""
        if not blocks or not blocks[-1].messages:
            return
        block_index = len(blocks) - 1
        message_index = len(blocks[-1].messages) - 1
        message_id = blocks[-1].messages[-1].messageId
        self._locations[message_id] = (block_index, message_index)

    def locate(self, message_id: str) -> Optional[Location]:
        return self._locations.get(message_id)

    def clear(self) -> None:
        self._locations.clear()


def _scan(blocks: List[MessageBlock], message_id: str) -> Iterator[Location]:
    for block_index, block in enumerate(blocks):
        for message_index, message in enumerate(block.messages):
            if message.messageId == message_id:
                yield block_index, message_index


def find_message(
    blocks: List[MessageBlock],
    message_id: str,
    index: Optional[MessageIndex] = None,
) -> Optional[Location]:
    """Locate a message by id, via ``index`` when given, else a linear scan."""
    if index is not None:
        location = index.locate(message_id)
        if location is None:
            return None
        block_index, message_index = location
        # Guard against an index that drifted from the blocks it describes
        if (
            block_index < len(blocks)
            and message_index < len(blocks[block_index].messages)
            and blocks[block_index].messages[message_index].messageId == message_id
        ):
            return location
    return next(_scan(blocks, message_id), None)


def apply_reaction(
    blocks: List[MessageBlock],
    message_id: str,
    reacts: ReactionMap,
    index: Optional[MessageIndex] = None,
) -> List[MessageBlock]:
    """Replace one message's reaction map.

    Args:
        blocks: Current blocks of the room.
        message_id: Target message id.
        reacts: Full reaction map as re-emitted by the store.
        index: Optional id index for O(1) lookup.

    Returns:
        A new block list with the target message patched, or ``blocks``
        itself when the id is unknown or the map is already current.
    """
    location = find_message(blocks, message_id, index)
    if location is None:
        return blocks

    block_index, message_index = location
    block = blocks[block_index]
    message = block.messages[message_index]
    normalized = normalize_reactions(reacts)
    if message.reacts == normalized:
        return blocks

    patched_message = message.model_copy(update={"reacts": normalized})
    patched_messages = list(block.messages)
    patched_messages[message_index] = patched_message
    patched_blocks = list(blocks)
    patched_blocks[block_index] = block.model_copy(update={"messages": patched_messages})
    return patched_blocks


def has_reacted(reacts: ReactionMap, emoji: str, sender_id: str) -> bool:
    return sender_id in reacts.get(emoji, [])
