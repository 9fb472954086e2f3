import operator

from amaranth import *


__all__ = ["Signature", "extend", "extended_order", "assemble_extended"]


class Signature:
    """Per-column bit counts of a weighted bit matrix.

    Entry ``c`` is the number of independent bits of weight :math:`2^c`. Columns past the end
    of the signature hold no bits; reading them returns 0.

    The bits described by a signature are carried by a flat bit vector ordered by ascending
    column; the order of bits within a column is defined by whoever builds the vector.
    """
    def __init__(self, counts):
        counts = tuple(operator.index(count) for count in counts)
        for column, count in enumerate(counts):
            if count < 0:
                raise ValueError(f"Signature column {column} has a negative bit count {count}")
        self._counts = counts

    @classmethod
    def parse(cls, text):
        """Parse a comma-separated signature, e.g. ``"1,2,3,2,1"``."""
        text = text.strip()
        if not text:
            return cls([])
        try:
            return cls(int(item) for item in text.split(","))
        except ValueError as e:
            raise ValueError(f"invalid signature {text!r}: {e}") from None

    @property
    def count(self):
        return sum(self._counts)

    @property
    def out_width(self):
        """Width needed to hold the largest column-weighted sum of this signature."""
        return sum(count << column for column, count in enumerate(self._counts)).bit_length()

    def __len__(self):
        return len(self._counts)

    def __getitem__(self, column):
        column = operator.index(column)
        if column < 0:
            raise IndexError(f"Signature column {column} is negative")
        if column >= len(self._counts):
            return 0
        return self._counts[column]

    def __iter__(self):
        return iter(self._counts)

    def __eq__(self, other):
        if not isinstance(other, Signature):
            return NotImplemented
        return self._counts == other._counts

    def __hash__(self):
        return hash(self._counts)

    def __str__(self):
        return ",".join(map(str, self._counts))

    def __repr__(self):
        return f"Signature([{self}])"


def extend(base, acc_width):
    """Add the feedback column of an ``acc_width`` wide accumulator to ``base``.

    The result has ``max(acc_width, len(base))`` columns, and every column below ``acc_width``
    gains exactly one bit, so that ``extend(base, acc_width).count == base.count + acc_width``.
    """
    acc_width = operator.index(acc_width)
    if acc_width < 1:
        raise ValueError(f"Accumulator width must be positive, not {acc_width}")
    return Signature(base[column] + (1 if column < acc_width else 0)
                     for column in range(max(acc_width, len(base))))


def extended_order(base, acc_width):
    """Compute the bit order of the vector matching :func:`extend`.

    Returns a list of ``("bits", index)`` and ``("acc", column)`` tokens. Within each column,
    the bits of ``base`` come first in their original order, followed by the feedback bit.
    """
    order = []
    index = 0
    for column in range(max(acc_width, len(base))):
        for _ in range(base[column]):
            order.append(("bits", index))
            index += 1
        if column < acc_width:
            order.append(("acc", column))
    return order


def assemble_extended(base, bits, acc, zero, acc_width):
    """Build the bit vector for the signature returned by :func:`extend`.

    ``bits`` must be exactly ``base.count`` bits wide. The feedback bit of column ``c`` is
    ``acc[c]`` gated by ``~zero``, so that asserting ``zero`` removes the previous total from
    the sum without affecting the incoming bits.
    """
    bits = Value.cast(bits)
    if len(bits) != base.count:
        raise ValueError(f"Bit vector is {len(bits)} bits wide, but signature {base} "
                         f"describes {base.count} bits")
    feedback = Mux(zero, 0, acc)
    return [bits[index] if kind == "bits" else feedback[index]
            for kind, index in extended_order(base, acc_width)]
