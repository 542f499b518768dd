"""
Data-Cache Directory Model
===========================
Hit/miss/write-back statistics for a write-back, write-allocate data cache.

Only the directory is simulated: per-line valid, dirty and tag bits plus
per-set replacement state.  Line contents are never stored; the addresses
and access kinds reported by the CPU are enough to count hits, misses and
write-backs.

Geometry:

  2 ways x 64 sets, 8-byte lines
  32-bit byte address partitioned into
      23-bit tag          address >> 9
       6-bit set index    (address >> 3) & 0x3F
       3-bit offset

With two ways a single last-used bit per set is exact LRU: on a miss with
both ways valid, the way that was not used last is the victim.
"""

from __future__ import annotations
from typing import Optional

# ---------------------------------------------------------------------------
#  Geometry
# ---------------------------------------------------------------------------

NUM_SETS    = 64
NUM_WAYS    = 2
INDEX_SHIFT = 3
INDEX_MASK  = NUM_SETS - 1
TAG_SHIFT   = 9

# Access kinds
READ  = 0
WRITE = 1

# Access results
HIT            = "hit"
MISS           = "miss"
MISS_WRITEBACK = "miss+wb"

# ---------------------------------------------------------------------------
#  Directory state
# ---------------------------------------------------------------------------

class CacheWay:
    __slots__ = ("valid", "dirty", "tag")

    def __init__(self):
        self.valid = False
        self.dirty = False
        self.tag = 0

    def __repr__(self):
        return f"CacheWay(v={int(self.valid)} d={int(self.dirty)} tag={self.tag:#x})"


class CacheSet:
    __slots__ = ("ways", "last_used")

    def __init__(self):
        self.ways = [CacheWay() for _ in range(NUM_WAYS)]
        self.last_used = 0

    def find(self, tag: int) -> Optional[int]:
        """Way holding *tag*, probing way 0 first."""
        for w, way in enumerate(self.ways):
            if way.valid and way.tag == tag:
                return w
        return None

    def victim(self) -> int:
        """Replacement choice: an invalid way first, else the LRU way."""
        for w, way in enumerate(self.ways):
            if not way.valid:
                return w
        return 1 - self.last_used


class CacheDirectory:
    """2-way set-associative directory consuming (address, kind) events."""

    def __init__(self):
        self.sets = [CacheSet() for _ in range(NUM_SETS)]

        # Counters
        self.reads: int = 0
        self.writes: int = 0
        self.hits: int = 0
        self.misses: int = 0
        self.write_backs: int = 0

    @property
    def accesses(self) -> int:
        return self.reads + self.writes

    @staticmethod
    def split(address: int) -> tuple[int, int]:
        """Return (set_index, tag) for a byte address."""
        address &= 0xFFFF_FFFF
        return (address >> INDEX_SHIFT) & INDEX_MASK, address >> TAG_SHIFT

    def lookup(self, address: int) -> Optional[int]:
        """Way currently holding *address*, without touching any state."""
        index, tag = self.split(address)
        return self.sets[index].find(tag)

    def access(self, address: int, kind: int) -> str:
        """Record one data access; returns HIT, MISS or MISS_WRITEBACK."""
        if kind == WRITE:
            self.writes += 1
        else:
            self.reads += 1

        index, tag = self.split(address)
        cset = self.sets[index]

        way = cset.find(tag)
        if way is not None:
            self.hits += 1
            result = HIT
        else:
            self.misses += 1
            result = MISS
            way = cset.victim()
            line = cset.ways[way]
            if line.valid and line.dirty:
                self.write_backs += 1
                result = MISS_WRITEBACK
            line.valid = True
            line.dirty = False
            line.tag = tag

        cset.last_used = way

        if kind == WRITE:
            cset.ways[way].dirty = True
        return result

    def dump_set(self, index: int) -> str:
        cset = self.sets[index]
        parts = [f"set {index:2d} lru->{1 - cset.last_used}"]
        for w, way in enumerate(cset.ways):
            parts.append(f"w{w}: v={int(way.valid)} d={int(way.dirty)} "
                         f"tag={way.tag:06x}")
        return "  ".join(parts)
