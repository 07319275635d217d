"""
Exact rational arithmetic for tick and space accumulation.

Alternate time regions advance the playback position by fractions such as
3/2 or 2/3 of a space. Accumulating those as floats drifts far enough over a
few hundred spaces to change which way round(tick) goes, so every position
the converter carries is a Rational.
"""

import sys
from math import gcd
from typing import Union


class Rational:
    """Exact ratio n/d, always simplified, with d >= 1 and the sign in n."""

    __slots__ = ('n', 'd')

    def __init__(self, n: int = 0, d: int = 1):
        if d == 0:
            raise ZeroDivisionError(f"Rational with zero denominator: {n}/0")
        if d < 0:
            n, d = -n, -d

        if d == 1:
            pass
        elif d in (2, 3):
            # gcd is either 1 or d
            if n % d == 0:
                n, d = n // d, 1
        else:
            g = gcd(n, d)
            if g > 1:
                n, d = n // g, d // g

        self.n = n
        self.d = d

    @staticmethod
    def _coerce(other: Union['Rational', int]) -> 'Rational':
        if isinstance(other, Rational):
            return other
        if isinstance(other, int):
            return Rational(other)
        return NotImplemented

    # Arithmetic

    def __add__(self, other):
        other = self._coerce(other)
        if other is NotImplemented:
            return other
        if self.d == other.d:
            return Rational(self.n + other.n, self.d)
        return Rational(self.n * other.d + other.n * self.d, self.d * other.d)

    __radd__ = __add__

    def __sub__(self, other):
        other = self._coerce(other)
        if other is NotImplemented:
            return other
        if self.d == other.d:
            return Rational(self.n - other.n, self.d)
        return Rational(self.n * other.d - other.n * self.d, self.d * other.d)

    def __rsub__(self, other):
        other = self._coerce(other)
        if other is NotImplemented:
            return other
        return other - self

    def __mul__(self, other):
        other = self._coerce(other)
        if other is NotImplemented:
            return other
        return Rational(self.n * other.n, self.d * other.d)

    __rmul__ = __mul__

    def __truediv__(self, other):
        other = self._coerce(other)
        if other is NotImplemented:
            return other
        if other.n == 0:
            raise ZeroDivisionError(f"division of {self} by zero")
        return Rational(self.n * other.d, self.d * other.n)

    def __rtruediv__(self, other):
        other = self._coerce(other)
        if other is NotImplemented:
            return other
        return other / self

    def __neg__(self):
        return Rational(-self.n, self.d)

    # Comparison (cross-multiplication, denominators are positive)

    def __eq__(self, other):
        other = self._coerce(other)
        if other is NotImplemented:
            return other
        return self.n == other.n and self.d == other.d

    def __hash__(self):
        if self.d == 1:
            return hash(self.n)
        return hash((self.n, self.d))

    def __lt__(self, other):
        other = self._coerce(other)
        if other is NotImplemented:
            return other
        return self.n * other.d < other.n * self.d

    def __le__(self, other):
        other = self._coerce(other)
        if other is NotImplemented:
            return other
        return self.n * other.d <= other.n * self.d

    def __gt__(self, other):
        other = self._coerce(other)
        if other is NotImplemented:
            return other
        return self.n * other.d > other.n * self.d

    def __ge__(self, other):
        other = self._coerce(other)
        if other is NotImplemented:
            return other
        return self.n * other.d >= other.n * self.d

    # Conversions

    def floor(self) -> int:
        """Largest integer <= self."""
        return self.n // self.d

    def round(self) -> int:
        """Nearest integer, halves rounded away from zero."""
        q, r = divmod(abs(self.n), self.d)
        if 2 * r >= self.d:
            q += 1
        return q if self.n >= 0 else -q

    def to_double(self) -> float:
        return self.n / self.d

    def to_int32(self) -> int:
        """Integer value of an integral Rational.

        Warns (and returns the floor) when the value is not integral.
        """
        if self.d != 1:
            print(f"WARNING: to_int32 of non-integral value {self}", file=sys.stderr)
        value = self.floor()
        if not -0x80000000 <= value <= 0x7fffffff:
            raise OverflowError(f"{self} does not fit in 32 bits")
        return value

    def is_integer(self) -> bool:
        return self.d == 1

    def __repr__(self) -> str:
        return f"Rational({self.n}, {self.d})"

    def __str__(self) -> str:
        if self.d == 1:
            return str(self.n)
        return f"{self.n}/{self.d}"
