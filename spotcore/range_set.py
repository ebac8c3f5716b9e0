"""Sets of half-open integer ranges, kept sorted and merged."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator


@dataclass(frozen=True)
class Range:
    """A half-open interval ``[start, start + length)``."""

    start: int
    length: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.length < 0:
            raise ValueError(f"invalid range start={self.start} length={self.length}")

    def end(self) -> int:
        """The first position after the range."""
        return self.start + self.length

    def __str__(self) -> str:
        return f"[{self.start}, {self.start + self.length - 1}]"


class RangeSet:
    """An ordered collection of disjoint, non-touching ranges."""

    def __init__(self, ranges: Iterable[Range] | None = None) -> None:
        self._ranges: list[Range] = []
        for rng in ranges or ():
            self.add_range(rng)

    def __len__(self) -> int:
        """Total number of positions covered."""
        return sum(rng.length for rng in self._ranges)

    def __bool__(self) -> bool:
        return bool(self._ranges)

    def __iter__(self) -> Iterator[Range]:
        return iter(list(self._ranges))

    def __getitem__(self, index: int) -> Range:
        return self._ranges[index]

    def __contains__(self, value: int) -> bool:
        for rng in self._ranges:
            if value < rng.start:
                return False
            if value < rng.end():
                return True
        return False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RangeSet):
            return NotImplemented
        return self._ranges == other._ranges

    def __repr__(self) -> str:
        return f"RangeSet({self._ranges!r})"

    def __str__(self) -> str:
        return "(" + "".join(str(rng) for rng in self._ranges) + ")"

    def copy(self) -> RangeSet:
        result = RangeSet()
        result._ranges = list(self._ranges)
        return result

    def contained_length_from_value(self, value: int) -> int:
        """How many consecutive positions from ``value`` on are covered."""
        for rng in self._ranges:
            if value < rng.start:
                return 0
            if value < rng.end():
                return rng.end() - value
        return 0

    def contains_range_set(self, other: RangeSet) -> bool:
        return all(
            self.contained_length_from_value(rng.start) >= rng.length for rng in other
        )

    def add_range(self, range: Range) -> None:
        if range.length == 0:
            return
        for index, existing in enumerate(self._ranges):
            if range.end() < existing.start:
                self._ranges.insert(index, range)
                return
            if range.start <= existing.end() and existing.start <= range.end():
                start, end = range.start, range.end()
                while index < len(self._ranges) and self._ranges[index].start <= end:
                    merged = self._ranges.pop(index)
                    start = min(start, merged.start)
                    end = max(end, merged.end())
                self._ranges.insert(index, Range(start, end - start))
                return
        self._ranges.append(range)

    def add_range_set(self, other: RangeSet) -> None:
        for rng in other:
            self.add_range(rng)

    def union(self, other: RangeSet) -> RangeSet:
        result = self.copy()
        result.add_range_set(other)
        return result

    def subtract_range(self, range: Range) -> None:
        if range.length == 0:
            return
        cut_end = range.end()
        for index, existing in enumerate(self._ranges):
            if cut_end <= existing.start:
                return
            if range.start <= existing.start < cut_end:
                while index < len(self._ranges) and self._ranges[index].end() <= cut_end:
                    del self._ranges[index]
                if index < len(self._ranges) and self._ranges[index].start < cut_end:
                    current = self._ranges[index]
                    self._ranges[index] = Range(cut_end, current.end() - cut_end)
                return
            if cut_end < existing.end():
                head = Range(existing.start, range.start - existing.start)
                self._ranges[index] = Range(cut_end, existing.end() - cut_end)
                self._ranges.insert(index, head)
                return
            if range.start < existing.end():
                self._ranges[index] = Range(existing.start, range.start - existing.start)

    def subtract_range_set(self, other: RangeSet) -> None:
        for rng in other:
            self.subtract_range(rng)

    def minus(self, other: RangeSet) -> RangeSet:
        result = self.copy()
        result.subtract_range_set(other)
        return result

    def intersection(self, other: RangeSet) -> RangeSet:
        result = RangeSet()
        mine, theirs = self._ranges, other._ranges
        i = j = 0
        while i < len(mine) and j < len(theirs):
            a, b = mine[i], theirs[j]
            if a.end() <= b.start:
                i += 1
            elif b.end() <= a.start:
                j += 1
            else:
                start = max(a.start, b.start)
                end = min(a.end(), b.end())
                result.add_range(Range(start, end - start))
                if a.end() <= b.end():
                    i += 1
                else:
                    j += 1
        return result