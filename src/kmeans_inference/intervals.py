"""Ordered interval sets on the real line.

An :class:`IntervalSet` is a finite union of closed intervals
``[lo, hi]`` stored as an ``(m, 2)`` float array that is always kept in
canonical form: rows sorted by ``lo``, pairwise disjoint, touching or
overlapping rows merged.  Endpoints may be ``±inf`` (half-lines, the
whole line) and zero-width rows ``[x, x]`` are legal.

Complements are returned as their closure, so ``S | S.complement()`` is
the whole line and the two share only boundary points.  Truncated-normal
probabilities are insensitive to that measure-zero difference.

Usage
-----
>>> a = IntervalSet([(0.0, 1.0), (2.0, 3.0)])
>>> b = IntervalSet([(0.5, 2.5)])
>>> a & b
IntervalSet([0.5, 1], [2, 2.5])
>>> a.reflect()
IntervalSet([-3, -2], [-1, 0])
"""

from __future__ import annotations

from typing import Iterable, Iterator, List, Sequence, Tuple

import numpy as np

__all__ = [
    "IntervalSet",
]


def _canonical(bounds: np.ndarray) -> np.ndarray:
    """Sort rows, drop inverted rows and merge overlapping/touching ones."""
    if bounds.size == 0:
        return np.empty((0, 2), dtype=float)
    bounds = bounds[bounds[:, 0] <= bounds[:, 1]]
    if len(bounds) == 0:
        return np.empty((0, 2), dtype=float)
    bounds = bounds[np.argsort(bounds[:, 0], kind="stable")]
    lo, hi = bounds[:, 0], bounds[:, 1]

    # A row starts a new run when it begins after every earlier row ends.
    reach = np.maximum.accumulate(hi)
    starts = np.ones(len(lo), dtype=bool)
    starts[1:] = lo[1:] > reach[:-1]
    first = np.flatnonzero(starts)
    return np.column_stack([lo[first], np.maximum.reduceat(hi, first)])


class IntervalSet:
    """Canonical union of disjoint closed intervals.

    Parameters
    ----------
    intervals : iterable of (lo, hi) pairs or (m, 2) array
        Intervals in any order; they may overlap.  Rows with
        ``lo > hi`` are treated as empty and dropped.
    """

    __slots__ = ("_bounds",)

    def __init__(self, intervals: Iterable[Sequence[float]] | np.ndarray = ()):
        arr = np.asarray(
            list(intervals) if not isinstance(intervals, np.ndarray)
            else intervals,
            dtype=float,
        )
        if arr.size == 0:
            arr = np.empty((0, 2), dtype=float)
        arr = arr.reshape(-1, 2)
        if np.isnan(arr).any():
            raise ValueError("Interval endpoints must not be NaN")
        self._bounds = _canonical(arr)
        self._bounds.setflags(write=False)

    # ── constructors ────────────────────────────────────────────

    @classmethod
    def empty(cls) -> "IntervalSet":
        return cls()

    @classmethod
    def real_line(cls) -> "IntervalSet":
        return cls([(-np.inf, np.inf)])

    @classmethod
    def around(cls, x: float, halfwidth: float) -> "IntervalSet":
        """The micro-interval ``[x - halfwidth, x + halfwidth]``."""
        if halfwidth < 0:
            raise ValueError(f"halfwidth must be non-negative, got {halfwidth}")
        return cls([(x - halfwidth, x + halfwidth)])

    # ── read ────────────────────────────────────────────────────

    @property
    def bounds(self) -> np.ndarray:
        """Read-only ``(m, 2)`` array of interval endpoints."""
        return self._bounds

    @property
    def is_empty(self) -> bool:
        return len(self._bounds) == 0

    @property
    def lower(self) -> float:
        """Smallest point of the set (``inf`` if empty)."""
        return float(self._bounds[0, 0]) if len(self._bounds) else np.inf

    @property
    def upper(self) -> float:
        """Largest point of the set (``-inf`` if empty)."""
        return float(self._bounds[-1, 1]) if len(self._bounds) else -np.inf

    def measure(self) -> float:
        """Total Lebesgue measure (may be ``inf``)."""
        if self.is_empty:
            return 0.0
        return float(np.sum(self._bounds[:, 1] - self._bounds[:, 0]))

    def contains(self, x: float) -> bool:
        """True if *x* lies in one of the closed intervals."""
        if self.is_empty:
            return False
        idx = np.searchsorted(self._bounds[:, 0], x, side="right") - 1
        return bool(idx >= 0 and x <= self._bounds[idx, 1])

    def __contains__(self, x: float) -> bool:
        return self.contains(x)

    def __len__(self) -> int:
        return len(self._bounds)

    def __iter__(self) -> Iterator[Tuple[float, float]]:
        for lo, hi in self._bounds:
            yield float(lo), float(hi)

    def to_list(self) -> List[Tuple[float, float]]:
        return list(self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IntervalSet):
            return NotImplemented
        return np.array_equal(self._bounds, other._bounds)

    def __hash__(self) -> int:
        return hash(self._bounds.tobytes())

    def __repr__(self) -> str:
        if self.is_empty:
            return "IntervalSet(∅)"
        body = ", ".join(f"[{lo:g}, {hi:g}]" for lo, hi in self)
        return f"IntervalSet({body})"

    # ── algebra ─────────────────────────────────────────────────

    def union(self, other: "IntervalSet") -> "IntervalSet":
        return IntervalSet(np.vstack([self._bounds, other._bounds]))

    def intersect(self, other: "IntervalSet") -> "IntervalSet":
        """Intersection by a merge sweep over both sorted lists."""
        a, b = self._bounds, other._bounds
        i = j = 0
        out: List[Tuple[float, float]] = []
        while i < len(a) and j < len(b):
            lo = max(a[i, 0], b[j, 0])
            hi = min(a[i, 1], b[j, 1])
            if lo <= hi:
                out.append((lo, hi))
            if a[i, 1] < b[j, 1]:
                i += 1
            else:
                j += 1
        return IntervalSet(out)

    def complement(self) -> "IntervalSet":
        """Closure of the complement on the extended real line."""
        if self.is_empty:
            return IntervalSet.real_line()
        edges = np.concatenate([[-np.inf], self._bounds.ravel(), [np.inf]])
        gaps = edges.reshape(-1, 2)
        # Drop degenerate gaps at ±inf where the set itself is unbounded.
        keep = ~((gaps[:, 0] == gaps[:, 1]) & np.isinf(gaps[:, 0]))
        return IntervalSet(gaps[keep])

    def difference(self, other: "IntervalSet") -> "IntervalSet":
        return self.intersect(other.complement())

    def reflect(self) -> "IntervalSet":
        """Point reflection ``{-x : x in self}``."""
        # Adding 0.0 turns -0.0 endpoints into 0.0.
        return IntervalSet(-self._bounds[::-1, ::-1] + 0.0)

    __or__ = union
    __and__ = intersect

    def __neg__(self) -> "IntervalSet":
        return self.reflect()

    # ── bulk constructors ───────────────────────────────────────

    @classmethod
    def intersect_all(cls, sets: Iterable["IntervalSet"]) -> "IntervalSet":
        """Intersection of many sets; the whole line if *sets* is empty."""
        result = cls.real_line()
        for s in sets:
            result = result.intersect(s)
            if result.is_empty:
                break
        return result
