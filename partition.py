"""
Static work partitioning of the output image among participants.

The image is split along the X axis only: every participant owns one
contiguous vertical strip spanning the full image height.
"""
import logging
from dataclasses import dataclass
from typing import List, Tuple

logger = logging.getLogger(__name__)


class PartitionError(ValueError):
    """Raised when the image cannot be split under the chosen policy."""


@dataclass(frozen=True)
class Region:
    """Pixel rectangle [x0, x1) x [y0, y1) of the full image."""
    x0: int
    x1: int
    y0: int
    y1: int

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0

    @property
    def num_pixels(self) -> int:
        return self.width * self.height

    @property
    def num_samples(self) -> int:
        """Number of colour channel values (3 per pixel)."""
        return self.num_pixels * 3

    def contains(self, x: int, y: int) -> bool:
        return self.x0 <= x < self.x1 and self.y0 <= y < self.y1

    def as_slices(self) -> Tuple[slice, slice]:
        """Return (row_slice, column_slice) for indexing a (H, W, 3) image."""
        return (slice(self.y0, self.y1), slice(self.x0, self.x1))


def plan(index: int, count: int, width: int, height: int,
         policy: str = "last") -> Region:
    """
    Calculate the region owned by one participant.

    Every participant gets a strip of width W // N at offset index * (W // N).
    The trailing W % N columns are handled by `policy`:

      - "last":   participant N-1 also owns the remainder columns
      - "spread": the first W % N participants get one extra column each
      - "strict": a non-zero remainder raises PartitionError

    Args:
        index: Participant index in [0, count)
        count: Total number of participants
        width, height: Full image dimensions
        policy: Remainder policy

    Returns:
        Region for this participant
    """
    if count < 1:
        raise PartitionError(f"Participant count must be >= 1, got {count}")
    if not 0 <= index < count:
        raise PartitionError(f"Participant index {index} outside [0, {count})")
    if width < count:
        raise PartitionError(
            f"Image width {width} is smaller than participant count {count}"
        )
    if height < 1:
        raise PartitionError(f"Image height must be >= 1, got {height}")

    strip = width // count
    remainder = width % count

    if policy == "last":
        x0 = index * strip
        x1 = x0 + strip
        if index == count - 1:
            x1 = width
    elif policy == "spread":
        x0 = index * strip + min(index, remainder)
        x1 = x0 + strip + (1 if index < remainder else 0)
    elif policy == "strict":
        if remainder:
            raise PartitionError(
                f"Image width {width} is not divisible by {count} participants "
                f"({remainder} columns left over)"
            )
        x0 = index * strip
        x1 = x0 + strip
    else:
        raise PartitionError(f"Unknown remainder policy {policy!r}")

    return Region(x0, x1, 0, height)


def plan_all(count: int, width: int, height: int, policy: str = "last") -> List[Region]:
    """Plan every participant's region, in index order."""
    regions = [plan(i, count, width, height, policy) for i in range(count)]
    logger.debug(f"Partitioned {width}x{height} into {count} strips: "
                 f"{[(r.x0, r.x1) for r in regions]}")
    return regions
