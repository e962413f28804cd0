"""Row-range partition planning for distributed reads."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List

logger = logging.getLogger("kinetica_spark.partition_planner")


@dataclass(frozen=True)
class Partition:
    """A contiguous row range ``[start, start + count)`` of a table."""

    start: int
    count: int
    index: int

    @property
    def end(self) -> int:
        return self.start + self.count

    def to_dict(self) -> Dict[str, Any]:
        return {"partition_id": self.index, "start": self.start, "count": self.count}

    @classmethod
    def from_dict(cls, spec: Dict[str, Any]) -> "Partition":
        return cls(start=int(spec["start"]), count=int(spec["count"]), index=int(spec["partition_id"]))


def plan_partitions(total_rows: int, num_partitions: int) -> List[Partition]:
    """
    Split ``total_rows`` into disjoint, contiguous row ranges.

    Each partition gets ``total_rows // num_partitions`` rows and the last one
    also takes the remainder. The partition count is clamped to
    ``[1, total_rows]``; an empty table yields one empty partition.

    Args:
        total_rows: Current row count of the table (after filters)
        num_partitions: Requested number of partitions

    Returns:
        Partitions ordered by start offset
    """
    if total_rows < 0:
        raise ValueError(f"total_rows must be >= 0, got: {total_rows}")

    requested = num_partitions
    num_partitions = max(1, num_partitions)

    if total_rows == 0:
        logger.info("Table is empty, planning a single empty partition")
        return [Partition(start=0, count=0, index=0)]

    if num_partitions > total_rows:
        logger.warning(
            f"Adjusted numPartitions from {requested} to {total_rows} "
            f"because the table only has {total_rows} rows"
        )
        num_partitions = total_rows

    stride = total_rows // num_partitions
    partitions = []
    for i in range(num_partitions):
        start = i * stride
        if i == num_partitions - 1:
            count = total_rows - start
        else:
            count = stride
        partitions.append(Partition(start=start, count=count, index=i))

    logger.info(
        f"Planned {len(partitions)} partitions over {total_rows} rows (stride={stride})"
    )
    return partitions
