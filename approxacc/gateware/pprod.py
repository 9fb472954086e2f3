import operator

from amaranth import *

from .signature import Signature


__all__ = ["correction_constant", "PartialProductLayout"]


def correction_constant(a_width, b_width, *, signed=False, count=1):
    """Sign-extension constant of ``count`` simultaneously summed ``a_width`` by ``b_width``
    radix-2 products.

    For a signed product this is :math:`-2^{upper} + 2^{mid_lo} + 2^{mid_hi}`, which turns the
    sum of the partially inverted partial products into the two's complement product. The
    constants of several products are summed arithmetically; the result is negative, and its
    (infinite) two's complement representation decides which columns receive a constant one.
    """
    if not signed:
        return 0
    mid_lo = min(a_width, b_width) - 1
    mid_hi = max(a_width, b_width) - 1
    upper  = a_width + b_width - 1
    return count * (-(1 << upper) + (1 << mid_lo) + (1 << mid_hi))


class PartialProductLayout:
    """Bit matrix layout of ``count`` radix-2 products of an ``a_width`` bit and a ``b_width``
    bit operand, summed into a single matrix.

    Row ``r`` of a product holds :py:`a[r] & b[k]` in column :py:`r + k`. Column ``c`` of
    a product is occupied from row :meth:`ls_row` to row :py:`ls_row(c) + dot_count(c) - 1`.

    Signed (two's complement) layouts invert every bit with :py:`k == b_width - 1` and every bit
    in row :py:`a_width - 1`; the bit where the two meet is inverted twice and stays unchanged.
    The summed :attr:`correction` constant contributes a literal one to each of its set columns.

    The layout spans ``max(upper, acc_width)`` columns; bits of higher weight cannot affect an
    ``acc_width`` bit total.
    """
    def __init__(self, a_width, b_width, *, count=1, signed=False, acc_width=0):
        self._a_width   = operator.index(a_width)
        self._b_width   = operator.index(b_width)
        self._count     = operator.index(count)
        self._signed    = bool(signed)
        self._acc_width = operator.index(acc_width)
        if self._a_width < 1 or self._b_width < 1:
            raise ValueError(f"Operand widths must be positive, not {self._a_width} and "
                             f"{self._b_width}")
        if self._count < 1:
            raise ValueError(f"Product count must be positive, not {self._count}")
        if self._acc_width < 0:
            raise ValueError(f"Accumulator width must not be negative, not {self._acc_width}")

        self._correction = correction_constant(self._a_width, self._b_width,
                                               signed=self._signed, count=self._count)
        self._signature = Signature(
            self._count * self.dot_count(column) + self.correction_bit(column)
            for column in range(max(self.upper, self._acc_width)))

    @property
    def a_width(self):
        return self._a_width

    @property
    def b_width(self):
        return self._b_width

    @property
    def count(self):
        return self._count

    @property
    def signed(self):
        return self._signed

    @property
    def mid_lo(self):
        return min(self._a_width, self._b_width) - 1

    @property
    def mid_hi(self):
        return max(self._a_width, self._b_width) - 1

    @property
    def upper(self):
        return self._a_width + self._b_width - 1

    @property
    def correction(self):
        return self._correction

    @property
    def signature(self):
        return self._signature

    def dot_count(self, column):
        """Number of partial product bits of a single product in ``column``."""
        if column < self.mid_lo:
            return column + 1
        elif column <= self.mid_hi:
            return min(self._a_width, self._b_width)
        elif column < self.upper:
            return self.upper - column
        else:
            return 0

    def ls_row(self, column):
        """Least significant row (``a`` bit) occupying ``column``."""
        if column < self._b_width:
            return 0
        return column - self._b_width + 1

    def correction_bit(self, column):
        return (self._correction >> column) & 1

    def cells(self):
        """Iterate over the bit matrix in assembly order.

        Yields ``(column, pair, row)`` for every partial product bit, and ``(column, None, None)``
        for the constant one of a set correction bit, which comes last in its column.
        """
        for column in range(len(self._signature)):
            low = self.ls_row(column)
            for pair in range(self._count):
                for row in range(low, low + self.dot_count(column)):
                    yield column, pair, row
            if self.correction_bit(column):
                yield column, None, None

    def _is_inverted(self, row, index):
        if not self._signed:
            return False
        return (row == self._a_width - 1) != (index == self._b_width - 1)

    def assemble(self, a, b):
        """Build the flat bit vector of the layout from ``count`` pairs of operands.

        Returns a list of single-bit values of length :py:`self.signature.count`.
        """
        if len(a) != self._count or len(b) != self._count:
            raise ValueError(f"Layout needs {self._count} operand pairs, got {len(a)} and "
                             f"{len(b)} operands")
        bits = []
        for column, pair, row in self.cells():
            if pair is None:
                bits.append(C(1, 1))
                continue
            index = column - row
            dot = Value.cast(a[pair])[row] & Value.cast(b[pair])[index]
            bits.append(~dot if self._is_inverted(row, index) else dot)
        return bits

    def evaluate(self, a, b):
        """Compute the column-weighted sum of the layout for integer operands.

        Operands are taken modulo their width, so negative values may be used for signed
        layouts. The result is congruent to the sum of products modulo
        :py:`2 ** len(self.signature)`.
        """
        if len(a) != self._count or len(b) != self._count:
            raise ValueError(f"Layout needs {self._count} operand pairs, got {len(a)} and "
                             f"{len(b)} operands")
        total = 0
        for column, pair, row in self.cells():
            if pair is None:
                total += 1 << column
                continue
            index = column - row
            dot = (a[pair] >> row) & (b[pair] >> index) & 1
            if self._is_inverted(row, index):
                dot ^= 1
            total += dot << column
        return total
