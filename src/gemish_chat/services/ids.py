"""Identifier generation for assistant-authored messages."""

import secrets
import time
from typing import Callable, Tuple

# Ordered so that lexicographic order of encoded values matches numeric order.
ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"


def encode_base62(value: int, width: int) -> str:
    """Encode a non-negative integer as fixed-width base62."""
    if value < 0:
        raise ValueError("value must be non-negative")
    chars = []
    for _ in range(width):
        value, rem = divmod(value, len(ALPHABET))
        chars.append(ALPHABET[rem])
    if value:
        raise ValueError("value does not fit in the requested width")
    return "".join(reversed(chars))


class IdGenerator:
    """Creates ids of the form ``{prefix}{separator}{time}{random}``.

    The time component is milliseconds since the epoch. Within one
    millisecond the random component is incremented instead of redrawn, so
    ids from one generator always sort in creation order and never repeat.
    """

    TIME_WIDTH = 8
    RANDOM_WIDTH = 8

    def __init__(
        self,
        prefix: str = "msgs",
        separator: str = "_",
        clock: Callable[[], float] = time.time,
    ):
        if separator in ALPHABET:
            raise ValueError(f"separator {separator!r} must not be part of the id alphabet")
        self.prefix = prefix
        self.separator = separator
        self._clock = clock
        self._random_limit = len(ALPHABET) ** self.RANDOM_WIDTH
        self._last_millis = -1
        self._last_random = 0

    def _next(self) -> Tuple[int, int]:
        millis = int(self._clock() * 1000)
        if millis > self._last_millis:
            return millis, secrets.randbelow(self._random_limit)
        # Same millisecond or clock went backwards: continue from the last id.
        millis, rand = self._last_millis, self._last_random + 1
        if rand >= self._random_limit:
            millis, rand = millis + 1, 0
        return millis, rand

    def __call__(self) -> str:
        millis, rand = self._next()
        self._last_millis, self._last_random = millis, rand
        suffix = encode_base62(millis, self.TIME_WIDTH) + encode_base62(rand, self.RANDOM_WIDTH)
        return f"{self.prefix}{self.separator}{suffix}"
