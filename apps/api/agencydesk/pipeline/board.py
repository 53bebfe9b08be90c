from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Generic, TypeVar

from agencydesk.pipeline.stages import STAGE_ORDER


T = TypeVar("T")

_ZERO = Decimal("0")


@dataclass
class StageBucket(Generic[T]):
    stage: str
    items: list[T] = field(default_factory=list)
    total_value: Decimal = _ZERO

    @property
    def count(self) -> int:
        return len(self.items)


def _money(value: Any) -> Decimal:
    if value is None:
        return _ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def group_by_stage(
    items: Iterable[T],
    stages: Iterable[str] = STAGE_ORDER,
    *,
    stage_of: Callable[[T], str] = lambda item: getattr(item, "stage"),
    value_of: Callable[[T], Any] = lambda item: getattr(item, "value", None),
) -> dict[str, StageBucket[T]]:
    """Bucket ``items`` per stage, in ``stages`` order, summing their value.

    Every stage gets a bucket even when empty. Items whose stage is not listed
    are left out of the board. A missing value counts as zero.
    """
    buckets: dict[str, StageBucket[T]] = {stage: StageBucket(stage=stage) for stage in stages}
    for item in items:
        bucket = buckets.get(stage_of(item))
        if bucket is None:
            continue
        bucket.items.append(item)
        bucket.total_value += _money(value_of(item))
    return buckets


def board_total(buckets: dict[str, StageBucket[Any]]) -> Decimal:
    return sum((bucket.total_value for bucket in buckets.values()), _ZERO)
