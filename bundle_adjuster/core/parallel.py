import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple, TypeVar

T = TypeVar("T")


class ParallelConfig:
    """
    Worker configuration for data-parallel passes.

    Work over a range of indices is split into contiguous chunks, one per
    thread. A pass only writes the output slice of its own chunk, so the
    partitioning never changes results. The thread count is fixed at
    construction; a value of 1 runs every pass inline.
    """

    def __init__(self, thread_num: Optional[int] = None) -> None:
        if thread_num is None:
            thread_num = os.cpu_count() or 1
        if thread_num < 1:
            raise ValueError(f"Thread number must be at least 1, got {thread_num}")
        self.thread_num = int(thread_num)

    def partition(self, size: int) -> List[Tuple[int, int]]:
        """Split [0, size) into at most thread_num non-empty contiguous ranges."""
        if size <= 0:
            return []
        chunks = min(self.thread_num, size)
        bounds = [size * k // chunks for k in range(chunks + 1)]
        return [(bounds[k], bounds[k + 1]) for k in range(chunks)]

    def run(self, work: Callable[[int, int], T], size: int) -> List[T]:
        """
        Apply work(start, stop) over every chunk of [0, size).

        Returns the chunk results in index order. Exceptions raised by a
        worker propagate to the caller.
        """
        ranges = self.partition(size)
        if len(ranges) <= 1:
            return [work(start, stop) for start, stop in ranges]

        with ThreadPoolExecutor(max_workers=len(ranges)) as executor:
            futures = [executor.submit(work, start, stop) for start, stop in ranges]
            return [future.result() for future in futures]

    def __repr__(self) -> str:
        return f"ParallelConfig(thread_num={self.thread_num})"
