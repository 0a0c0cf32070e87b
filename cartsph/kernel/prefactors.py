"""Degree/order prefactor table for the harmonics recurrence.

The table is one flat float64 array of length ``(L+1)(L+2)``. The first half
(``pk``) holds the normalization constants, the second half (``qlmk``) holds
the coefficients of the descending-m Legendre recurrence. Degree ``l`` owns
entries ``k_l .. k_l + l`` of each half, with ``k_l = l(l+1)/2``.

    pk[k_l + m]   = (-1)^m sqrt((2l+1)/(2 pi) * (l-m)!/(l+m)!)     (m=0: / sqrt 2)
    qlmk[k_l + l] = Q_l^l = -(2l-1) Q_{l-1}^{l-1},  Q_0^0 = 1
    qlmk[k_l + m] = -1 / ((l+m+1)(l-m))                              (m < l)

Factorial ratios are built up multiplicatively so that large degrees do not
overflow.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from functools import lru_cache
from typing import List

import numpy as np

from .config import validate_l_max


def degree_offset(l: int) -> int:
    """Start of degree ``l`` inside either half of the table."""
    return l * (l + 1) // 2


def table_half_size(l_max: int) -> int:
    return (l_max + 1) * (l_max + 2) // 2


def _fill_prefactors(l_max: int) -> np.ndarray:
    size_q = table_half_size(l_max)
    buf = np.zeros(2 * size_q, dtype=np.float64)
    pk = buf[:size_q]
    qlmk = buf[size_q:]

    for l in range(l_max + 1):
        k = degree_offset(l)

        factor = (2.0 * l + 1.0) / (2.0 * math.pi)
        pk[k] = math.sqrt(factor) / math.sqrt(2.0)
        sign = 1.0
        for m in range(1, l + 1):
            # (l-m)!/(l+m)! from (l-m+1)!/(l+m-1)!
            factor /= float(l * (l + 1) + m * (1 - m))
            sign = -sign
            pk[k + m] = sign * math.sqrt(factor)

        if l == 0:
            qlmk[k] = 1.0
        else:
            qlmk[k + l] = -(2.0 * l - 1.0) * qlmk[degree_offset(l - 1) + l - 1]
            for m in range(l):
                qlmk[k + m] = -1.0 / float((l + m + 1) * (l - m))

    return buf


@dataclass(frozen=True)
class PrefactorTable:
    """Immutable prefactor table for degrees ``0..l_max``."""

    l_max: int
    data: np.ndarray

    @property
    def size_q(self) -> int:
        return table_half_size(self.l_max)

    @property
    def pk(self) -> np.ndarray:
        return self.data[: self.size_q]

    @property
    def qlmk(self) -> np.ndarray:
        return self.data[self.size_q :]

    def pk_block(self, l: int) -> List[float]:
        """``pk[k_l + m]`` for ``m = 0..l`` as Python floats."""
        self._check_degree(l)
        k = degree_offset(l)
        return [float(v) for v in self.pk[k : k + l + 1]]

    def qlmk_block(self, l: int) -> List[float]:
        """``qlmk[k_l + m]`` for ``m = 0..l`` as Python floats."""
        self._check_degree(l)
        k = degree_offset(l)
        return [float(v) for v in self.qlmk[k : k + l + 1]]

    def _check_degree(self, l: int) -> None:
        if l < 0 or l > self.l_max:
            raise ValueError(f"degree {l} outside table range 0..{self.l_max}")


@lru_cache(maxsize=32)
def _cached_prefactors(l_max: int) -> PrefactorTable:
    data = _fill_prefactors(l_max)
    data.setflags(write=False)
    return PrefactorTable(l_max=l_max, data=data)


def compute_prefactors(l_max: int) -> PrefactorTable:
    """Build (or fetch the cached) prefactor table up to ``l_max``."""
    return _cached_prefactors(validate_l_max(l_max))


__all__ = [
    "PrefactorTable",
    "compute_prefactors",
    "degree_offset",
    "table_half_size",
]
