from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class ChunkDescriptor:
    """1-based chunk index and its half-open byte range [start, end)."""

    index: int
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


def total_chunks(file_size: int, chunk_size: int) -> int:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be a positive number")
    if file_size < 0:
        raise ValueError("file_size can't be negative")
    # An empty file still goes out as one (empty) single-shot request
    return max(1, -(-file_size // chunk_size))


def plan_chunks(file_size: int, chunk_size: int) -> List[ChunkDescriptor]:
    count = total_chunks(file_size, chunk_size)
    return [
        ChunkDescriptor(
            index=i + 1,
            start=i * chunk_size,
            end=min((i + 1) * chunk_size, file_size),
        )
        for i in range(count)
    ]
