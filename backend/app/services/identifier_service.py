"""
Identifier classification for project assignments.

Callers hand us threat model references in whatever shape the frontend had
at hand: integers, numeric strings, UUID strings, or subject IDs carrying the
``subj-`` marker. Every reference is classified exactly once, here, into a
``RelationalId`` (PostgreSQL threat model) or an ``EphemeralId`` (Redis
subject). Nothing in this module performs I/O.
"""

import re
from typing import Any, Iterable, List, Tuple

from config import SUBJECT_ID_PREFIX
from models.assignment import ClassifiedId, EphemeralId, RelationalId

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_PATTERN.match(value))


def is_integer_like(value: Any) -> bool:
    """True for numbers and for strings that parse entirely as an integer."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return value.is_integer()
    return isinstance(value, str) and bool(INTEGER_PATTERN.match(value.strip()))


def strip_prefix(value: Any, prefix: str = SUBJECT_ID_PREFIX) -> Any:
    if prefix and isinstance(value, str) and value.startswith(prefix):
        return value[len(prefix) :]
    return value


def classify_id(
    raw_id: Any, project_id: Any, prefix: str = SUBJECT_ID_PREFIX
) -> ClassifiedId:
    """
    Classify a caller-supplied reference for the given project.

    Args:
        raw_id: The reference as received (int, numeric string, UUID, prefixed subject ID)
        project_id: The owning project's identifier
        prefix: Subject marker stripped before classification

    Returns:
        RelationalId or EphemeralId holding the normalized value

    A prefixed reference is always a subject, numeric or not, unless what
    follows the prefix is a UUID. Unprefixed integers are relational only
    when the project itself is numerically keyed; threat models of a
    UUID-keyed project share its UUID style, so an integer there can only
    be a subject. Everything else, non-integer floats and dashless
    alphanumeric strings included, is a subject. A truncated or malformed
    threat model UUID therefore lands in Redis.
    """
    value = strip_prefix(raw_id, prefix)
    prefixed = value != raw_id

    if is_uuid(value):
        return RelationalId(value)

    if prefixed:
        return EphemeralId(str(value))

    if is_integer_like(value):
        if is_uuid(str(project_id)):
            return EphemeralId(str(value).strip())
        return RelationalId(int(value))

    return EphemeralId(str(value))


def split_ids(
    raw_ids: Iterable[Any], project_id: Any, prefix: str = SUBJECT_ID_PREFIX
) -> Tuple[List[Any], List[str]]:
    """
    Partition references into relational and ephemeral buckets.

    Order of first appearance is kept and repeated references are dropped.
    """
    relational = []
    ephemeral = []
    seen = set()

    for raw_id in raw_ids:
        classified = classify_id(raw_id, project_id, prefix)
        if classified in seen:
            continue
        seen.add(classified)

        if isinstance(classified, RelationalId):
            relational.append(classified.value)
        else:
            ephemeral.append(classified.value)

    return relational, ephemeral
