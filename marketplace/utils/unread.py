from typing import Iterable
from marketplace.models.chat import ConversationPointer


def total_unread(pointers: Iterable[ConversationPointer]) -> int:
    return sum(pointer.unread_count for pointer in pointers)
