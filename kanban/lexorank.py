from __future__ import annotations

from typing import Optional

from .errors import OrderingExhausted

ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
A2I = {ch: i for i, ch in enumerate(ALPHABET)}
I2A = {i: ch for i, ch in enumerate(ALPHABET)}
MIN = 0
MAX = len(ALPHABET) - 1
ZERO = I2A[MIN]

# Matches the width of the persisted ``position`` columns.
MAX_KEY_LENGTH = 128

DEFAULT_KEY = "a" + ZERO
SMALLEST_INTEGER = "A" + ZERO * 26


def key_between(lower: Optional[str], upper: Optional[str]) -> str:
    """Return an order key strictly between ``lower`` and ``upper``.

    ``None`` on either side means unbounded, so ``key_between(None, None)`` is
    the key for the first item of an empty list.

    A key is an integer part (a head letter giving its length, then base-36
    digits) followed by a base-36 fraction that never ends in ``0``. Appending
    at the tail bumps the integer part, which keeps keys short; inserting
    between two neighbours extends the fraction. Raises ``OrderingExhausted``
    when the bounds are out of order or malformed, or when the result would
    not fit in ``MAX_KEY_LENGTH`` characters.
    """
    if lower is not None:
        _validate(lower)
    if upper is not None:
        _validate(upper)
    if lower is not None and upper is not None and lower >= upper:
        raise OrderingExhausted(f"{lower!r} is not below {upper!r}")

    key = _key_between(lower, upper)
    if len(key) > MAX_KEY_LENGTH:
        raise OrderingExhausted(
            f"no key of at most {MAX_KEY_LENGTH} characters between {lower!r} and {upper!r}"
        )
    return key


def _key_between(lower: Optional[str], upper: Optional[str]) -> str:
    if lower is None:
        if upper is None:
            return DEFAULT_KEY
        int_upper = _integer_part(upper)
        if int_upper == SMALLEST_INTEGER:
            return int_upper + midpoint("", upper[len(int_upper):])
        if int_upper < upper:
            return int_upper
        decremented = _decrement(int_upper)
        if decremented is None:
            raise OrderingExhausted(f"no key below {upper!r}")
        return decremented

    int_lower = _integer_part(lower)
    frac_lower = lower[len(int_lower):]
    if upper is None:
        incremented = _increment(int_lower)
        if incremented is None:
            return int_lower + midpoint(frac_lower, None)
        return incremented

    int_upper = _integer_part(upper)
    if int_lower == int_upper:
        return int_lower + midpoint(frac_lower, upper[len(int_upper):])
    incremented = _increment(int_lower)
    if incremented is None:
        raise OrderingExhausted(f"no key above {lower!r}")
    if incremented < upper:
        return incremented
    return int_lower + midpoint(frac_lower, None)


def midpoint(left: str, right: Optional[str]) -> str:
    """Return a fraction strictly between ``left`` and ``right``.

    ``left`` may be empty (zero) and ``right`` may be ``None`` (one). Neither
    may end in ``0``.
    """
    if right is not None and left >= right:
        raise OrderingExhausted(f"{left!r} is not below {right!r}")
    if left.endswith(ZERO) or (right and right.endswith(ZERO)):
        raise OrderingExhausted("fraction ends in a zero digit")

    if right:
        # Skip the shared prefix, padding ``left`` with zeros.
        n = 0
        while (left[n] if n < len(left) else ZERO) == right[n]:
            n += 1
        if n > 0:
            return right[:n] + midpoint(left[n:], right[n:])

    l = A2I[left[0]] if left else MIN
    r = A2I[right[0]] if right is not None else MAX + 1
    if r - l > 1:
        return I2A[(l + r + 1) // 2]
    if right and len(right) > 1:
        return right[:1]
    return I2A[l] + midpoint(left[1:], None)


def _integer_length(head: str) -> int:
    if "a" <= head <= "z":
        return ord(head) - ord("a") + 2
    if "A" <= head <= "Z":
        return ord("Z") - ord(head) + 2
    raise OrderingExhausted(f"invalid order key head {head!r}")


def _integer_part(key: str) -> str:
    length = _integer_length(key[0])
    if length > len(key):
        raise OrderingExhausted(f"invalid order key {key!r}")
    return key[:length]


def _validate(key: str) -> None:
    if not key or key == SMALLEST_INTEGER:
        raise OrderingExhausted(f"invalid order key {key!r}")
    integer = _integer_part(key)
    fraction = key[len(integer):]
    if any(ch not in A2I for ch in integer[1:] + fraction):
        raise OrderingExhausted(f"invalid order key {key!r}")
    if fraction.endswith(ZERO):
        raise OrderingExhausted(f"invalid order key {key!r}")


def _increment(integer: str) -> Optional[str]:
    head, digits = integer[0], list(integer[1:])
    for i in range(len(digits) - 1, -1, -1):
        d = A2I[digits[i]] + 1
        if d <= MAX:
            digits[i] = I2A[d]
            return head + "".join(digits)
        digits[i] = ZERO
    # Carried past the most significant digit: widen the integer part.
    if head == "Z":
        return "a" + ZERO
    if head == "z":
        return None
    new_head = chr(ord(head) + 1)
    if new_head > "a":
        digits.append(ZERO)
    else:
        digits.pop()
    return new_head + "".join(digits)


def _decrement(integer: str) -> Optional[str]:
    head, digits = integer[0], list(integer[1:])
    for i in range(len(digits) - 1, -1, -1):
        d = A2I[digits[i]] - 1
        if d >= MIN:
            digits[i] = I2A[d]
            return head + "".join(digits)
        digits[i] = I2A[MAX]
    if head == "a":
        return "Z" + I2A[MAX]
    if head == "A":
        return None
    new_head = chr(ord(head) - 1)
    if new_head < "Z":
        digits.append(I2A[MAX])
    else:
        digits.pop()
    return new_head + "".join(digits)
