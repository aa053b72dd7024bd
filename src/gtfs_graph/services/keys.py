"""Synthetic node keys derived from GTFS natural keys.

Keys are a pure function of (feed id, natural key, direction): they never
depend on insertion order or database sequences, so importing the same
feed twice addresses the same nodes.

    gtfs.stop.<feed>.<stop slug>.<digest>
    gtfs.line.<feed>.<route slug>.<digest>-<direction>

The slug keeps keys readable; the digest of the raw natural key keeps ids
that slugify alike (``A-1`` and ``A.1``) apart.
"""

import hashlib
import re
import string

BASE62_ALPHABET = string.digits + string.ascii_lowercase + string.ascii_uppercase
DIGEST_LENGTH = 8

_NON_WORD = re.compile(r"\W+")


def base62_encode(number: int) -> str:
    """Encode a non-negative integer in base 62."""
    if number < 0:
        raise ValueError("base62_encode needs a non-negative integer")
    if number == 0:
        return BASE62_ALPHABET[0]
    digits: list[str] = []
    while number:
        number, remainder = divmod(number, 62)
        digits.append(BASE62_ALPHABET[remainder])
    return "".join(reversed(digits))


def slugify(value: str) -> str:
    """Lowercase and collapse non-word runs to dots: 'Berri-UQAM 1' -> 'berri.uqam.1'."""
    return _NON_WORD.sub(".", value.strip().lower()).strip(".") or "_"


def digest(*parts: str) -> str:
    """Short, stable base62 digest of the given parts."""
    payload = "\x1f".join(parts).encode("utf-8")
    return base62_encode(int(hashlib.md5(payload).hexdigest(), 16))[:DIGEST_LENGTH]


def stop_key(feed_id: str, stop_id: str) -> str:
    """Synthetic key of the Stop node for a feed's stop."""
    return f"gtfs.stop.{slugify(feed_id)}.{slugify(stop_id)}.{digest(feed_id, stop_id)}"


def line_key(feed_id: str, route_id: str, direction_id: int) -> str:
    """Synthetic key of the Line node for one direction of a feed's route."""
    if direction_id not in (0, 1):
        raise ValueError(f"direction_id must be 0 or 1, got {direction_id}")
    return (
        f"gtfs.line.{slugify(feed_id)}.{slugify(route_id)}."
        f"{digest(feed_id, route_id)}-{direction_id}"
    )
