"""Choosing the size of the parts of an S3 multipart upload."""

from __future__ import annotations


class PartSizeError(ValueError):
    """No part size within the allowed maximum can hold the upload."""

    def __init__(self, size: int, optimal_part_size: int, max_part_size: int) -> None:
        super().__init__(
            f"calcOptimalPartSize: to upload {size} bytes optimalPartSize "
            f"{optimal_part_size} must exceed MaxPartSize {max_part_size}"
        )
        self.size = size
        self.optimal_part_size = optimal_part_size
        self.max_part_size = max_part_size


def calc_optimal_part_size(
    size: int, preferred_part_size: int, max_multipart_parts: int, max_part_size: int
) -> int:
    """Return the part size to use so that an upload of `size` bytes fits in the part limit."""
    if size <= preferred_part_size * max_multipart_parts:
        optimal = preferred_part_size
    else:
        # Round up so the upload fits into max_multipart_parts parts.
        quotient, remainder = divmod(size, max_multipart_parts)
        optimal = quotient if remainder == 0 else quotient + 1

    if optimal > max_part_size:
        raise PartSizeError(size, optimal, max_part_size)
    return optimal