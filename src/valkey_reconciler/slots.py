import bisect
from operator import attrgetter
from typing import Iterable, Iterator, List, NamedTuple, Sequence

from valkey_reconciler.errors import InvalidSlotRangeError, SlotOverlapError


__all__ = (
    "TOTAL_SLOTS",
    "SlotRange",
    "SlotRangeTracker",
    "SlotBitset",
    "desired_slot_ranges",
)


TOTAL_SLOTS = 16384
_WORD_BITS = 64


class _SlotRange(NamedTuple):
    start: int
    end: int


class SlotRange(_SlotRange):
    """Inclusive [start, end] range of hash slots.

    Raises InvalidSlotRangeError outside of ``0 <= start <= end < TOTAL_SLOTS``.
    """

    __slots__ = ()

    def __new__(cls, start: int, end: int) -> "SlotRange":
        if start < 0 or end >= TOTAL_SLOTS or start > end:
            raise InvalidSlotRangeError(start, end)
        return super().__new__(cls, start, end)

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"

    def size(self) -> int:
        return self.end - self.start + 1

    def __contains__(self, slot: object) -> bool:
        return isinstance(slot, int) and self.start <= slot <= self.end

    def overlaps(self, other: "SlotRange") -> bool:
        return self.start <= other.end and self.end >= other.start

    def slots(self) -> range:
        return range(self.start, self.end + 1)


class SlotRangeTracker:
    """Sorted, merged, non-overlapping set of slot ranges of one owner.

    Ranges that touch (``[a, b]`` and ``[b + 1, c]``) are merged on insert.
    Rejected ranges never mutate the tracker.
    """

    __slots__ = ("_ranges",)

    def __init__(self, *ranges: SlotRange) -> None:
        self._ranges: List[SlotRange] = []
        if ranges:
            self.add(*ranges)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self}>"

    def __str__(self) -> str:
        return " ".join(str(r) for r in self._ranges)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SlotRangeTracker):
            return NotImplemented
        return self._ranges == other._ranges

    def __len__(self) -> int:
        return len(self._ranges)

    def __bool__(self) -> bool:
        return bool(self._ranges)

    def __iter__(self) -> Iterator[SlotRange]:
        return iter(list(self._ranges))

    def add(self, *slot_ranges: SlotRange) -> None:
        for slot_range in slot_ranges:
            start, end = slot_range
            if start < 0 or end >= TOTAL_SLOTS or start > end:
                raise InvalidSlotRangeError(start, end)

            for existing in self._ranges:
                if start <= existing.end and end >= existing.start:
                    raise SlotOverlapError(start, end, existing.start, existing.end)

            ranges = self._ranges + [SlotRange(start, end)]
            ranges.sort(key=attrgetter("start"))

            merged: List[SlotRange] = []
            current = ranges[0]
            for nxt in ranges[1:]:
                if current.end + 1 == nxt.start:
                    current = SlotRange(current.start, nxt.end)
                else:
                    merged.append(current)
                    current = nxt
            merged.append(current)
            self._ranges = merged

    def add_slot(self, slot: int) -> None:
        self.add(SlotRange(slot, slot))

    def slot_ranges(self) -> List[SlotRange]:
        return list(self._ranges)

    def slots_count(self) -> int:
        return sum(r.size() for r in self._ranges)

    def is_fully_covered(self) -> bool:
        return len(self._ranges) == 1 and self._ranges[0] == (0, TOTAL_SLOTS - 1)

    def has_slot(self, slot: int) -> bool:
        # binary search by range start
        pos = bisect.bisect_right([r.start for r in self._ranges], slot) - 1
        return pos >= 0 and slot <= self._ranges[pos].end

    def slots(self) -> List[int]:
        result: List[int] = []
        for slot_range in self._ranges:
            result.extend(slot_range.slots())
        return result


class SlotBitset:
    """Dense membership set over the whole slot space.

    Bit ``i % 64`` of word ``i // 64`` represents slot ``i``.
    """

    __slots__ = ("_words",)

    WORDS = TOTAL_SLOTS // _WORD_BITS

    def __init__(self) -> None:
        self._words = [0] * self.WORDS

    @classmethod
    def from_ranges(cls, ranges: Iterable[Sequence[int]]) -> "SlotBitset":
        bitset = cls()
        for start, end in ranges:
            bitset.set_range(start, end)
        return bitset

    def __repr__(self) -> str:
        return f"<{type(self).__name__} count:{self.count()}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SlotBitset):
            return NotImplemented
        return self._words == other._words

    def __contains__(self, slot: object) -> bool:
        return isinstance(slot, int) and 0 <= slot < TOTAL_SLOTS and self.test(slot)

    def __len__(self) -> int:
        return self.count()

    @staticmethod
    def _check(slot: int) -> None:
        if slot < 0 or slot >= TOTAL_SLOTS:
            raise InvalidSlotRangeError(slot, slot)

    def set(self, slot: int) -> None:
        self._check(slot)
        self._words[slot // _WORD_BITS] |= 1 << (slot % _WORD_BITS)

    def test(self, slot: int) -> bool:
        self._check(slot)
        return bool(self._words[slot // _WORD_BITS] >> (slot % _WORD_BITS) & 1)

    def set_range(self, start: int, end: int) -> None:
        if start < 0 or end >= TOTAL_SLOTS or start > end:
            raise InvalidSlotRangeError(start, end)
        for slot in range(start, end + 1):
            self._words[slot // _WORD_BITS] |= 1 << (slot % _WORD_BITS)

    def count(self) -> int:
        return sum(bin(word).count("1") for word in self._words)


def desired_slot_ranges(num_masters: int) -> List[SlotRange]:
    """Split the slot space into ``num_masters`` contiguous ranges.

    The first ``TOTAL_SLOTS % num_masters`` ranges receive one extra slot.
    """

    if num_masters < 1:
        raise ValueError("num_masters must be one at least")

    per_master, remainder = divmod(TOTAL_SLOTS, num_masters)
    ranges: List[SlotRange] = []
    current = 0
    for i in range(num_masters):
        size = per_master + 1 if i < remainder else per_master
        ranges.append(SlotRange(current, current + size - 1))
        current += size
    return ranges
