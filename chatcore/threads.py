from typing import Optional, Tuple

THREAD_PREFIX = 'thread_'


def thread_key(user_a, user_b) -> str:
    """Canonical thread id for a pair of users, independent of argument order"""
    low, high = sorted([str(user_a), str(user_b)])
    return f"{THREAD_PREFIX}{low}_{high}"


def thread_participants(thread_id: str) -> Optional[Tuple[str, str]]:
    """Inverse of thread_key; None when thread_id is not a thread key"""
    if not isinstance(thread_id, str) or not thread_id.startswith(THREAD_PREFIX):
        return None
    parts = thread_id[len(THREAD_PREFIX):].split('_')
    if len(parts) != 2 or not all(parts):
        return None
    low, high = parts
    if thread_key(low, high) != thread_id:
        return None
    return low, high


def is_participant(thread_id: str, user_id) -> bool:
    participants = thread_participants(thread_id)
    return participants is not None and str(user_id) in participants
