# services/partitioner.py
import math
from typing import List, Optional

from models.upload_models import PartSizePolicy, PartSpec
from services.errors import InvalidPolicy


def partition(payload_length: int, policy: PartSizePolicy) -> List[PartSpec]:
    """Split a payload into contiguous fixed-size parts.

    The last part carries the remainder. A zero-length payload yields no
    parts. Raises InvalidPolicy when the part size is not positive, when the
    part count would exceed ``max_parts``, or when a multi-part split would
    use parts smaller than ``min_part_size``.
    """
    if payload_length < 0:
        raise InvalidPolicy(f"Payload length must be >= 0, got {payload_length}")
    if policy.fixed_part_size <= 0:
        raise InvalidPolicy(f"fixed_part_size must be > 0, got {policy.fixed_part_size}")
    if policy.max_parts < 1:
        raise InvalidPolicy(f"max_parts must be >= 1, got {policy.max_parts}")

    if payload_length == 0:
        return []

    part_count = math.ceil(payload_length / policy.fixed_part_size)
    if part_count > policy.max_parts:
        raise InvalidPolicy(
            f"{payload_length} bytes at {policy.fixed_part_size} bytes per part needs "
            f"{part_count} parts, more than max_parts={policy.max_parts}; use a larger part size"
        )
    # a single part may be smaller than the minimum
    if part_count > 1 and policy.fixed_part_size < policy.min_part_size:
        raise InvalidPolicy(
            f"fixed_part_size {policy.fixed_part_size} is below min_part_size {policy.min_part_size}"
        )

    parts = []
    offset = 0
    for number in range(1, part_count + 1):
        length = min(policy.fixed_part_size, payload_length - offset)
        parts.append(PartSpec(part_number=number, offset=offset, length=length))
        offset += length
    return parts


def partition_by_count(
    payload_length: int, part_count: int, policy: Optional[PartSizePolicy] = None
) -> List[PartSpec]:
    """Split into (at most) ``part_count`` parts of ceil(N / part_count) bytes."""
    return partition(payload_length, policy_for_count(payload_length, part_count, policy))


def policy_for_count(payload_length: int, part_count: int, policy: Optional[PartSizePolicy] = None) -> PartSizePolicy:
    """Policy whose fixed part size splits ``payload_length`` into ``part_count`` parts."""
    if part_count <= 0:
        raise InvalidPolicy(f"part_count must be > 0, got {part_count}")
    policy = policy or PartSizePolicy()
    part_size = max(1, math.ceil(payload_length / part_count))
    return policy.model_copy(update={"fixed_part_size": part_size})
