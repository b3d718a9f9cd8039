"""Topic-exchange routing: dot-separated keys matched against bound patterns."""

from __future__ import annotations

from functools import lru_cache
from typing import Iterable


@lru_cache(maxsize=1024)
def _split(value: str) -> tuple[str, ...]:
    return tuple(value.split('.')) if value else ()


def topic_matches(pattern: str, routing_key: str) -> bool:
    """
    True when ``routing_key`` matches ``pattern``.

    ``*`` matches exactly one word and ``#`` matches zero or more words.
    """
    words = _split(routing_key)
    parts = _split(pattern)

    # (pattern index, word index) states still alive
    states = {(0, 0)}
    seen: set[tuple[int, int]] = set()
    while states:
        p, w = states.pop()
        if (p, w) in seen:
            continue
        seen.add((p, w))
        if p == len(parts):
            if w == len(words):
                return True
            continue
        part = parts[p]
        if part == '#':
            states.add((p + 1, w))
            if w < len(words):
                states.add((p, w + 1))
        elif w < len(words) and (part == '*' or part == words[w]):
            states.add((p + 1, w + 1))
    return False


def route(bindings: Iterable[tuple[str, str]], routing_key: str) -> list[str]:
    """Queue names whose binding pattern matches, each listed once in binding order."""
    queues: list[str] = []
    for queue_name, pattern in bindings:
        if queue_name not in queues and topic_matches(pattern, routing_key):
            queues.append(queue_name)
    return queues
