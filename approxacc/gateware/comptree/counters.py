from dataclasses import dataclass

from amaranth import *


__all__ = ["Counter", "Library", "LIBRARIES", "library_for"]


@dataclass(frozen=True)
class Counter:
    """A generalized parallel counter.

    ``in_sig[c]`` bits of weight :math:`2^c` enter the counter, and ``out_sig[c]`` bits of weight
    :math:`2^c` leave it. Exact counters output the weighted population count of their inputs;
    approximate counters saturate at the largest value their outputs can represent.
    """
    name:    str
    in_sig:  tuple[int, ...]
    out_sig: tuple[int, ...]
    cost:    int
    exact:   bool = True

    @property
    def inputs(self):
        return sum(self.in_sig)

    @property
    def outputs(self):
        return sum(self.out_sig)

    @property
    def strength(self):
        return self.inputs / self.outputs

    @property
    def efficiency(self):
        return (self.inputs - self.outputs) / self.cost

    @property
    def is_half_adder(self):
        return self.in_sig == (2,)

    @property
    def max_output(self):
        return sum(count << column for column, count in enumerate(self.out_sig))

    def construct(self, m, bits):
        """Instantiate the counter in ``m``.

        ``bits`` is a list of input bits grouped by column, in the order of ``in_sig``. Returns
        the output bits grouped by column, in the order of ``out_sig``.
        """
        assert [len(column) for column in bits] == list(self.in_sig)
        total = sum(sum(column_bits) << column
                    for column, column_bits in enumerate(bits) if column_bits)
        result = Signal(self.max_output.bit_length(), name=f"cntr_{self.name}")
        if self.exact:
            m.d.comb += result.eq(total)
        else:
            m.d.comb += result.eq(Mux(total > self.max_output, self.max_output, total))

        outputs = []
        index = 0
        for column, count in enumerate(self.out_sig):
            assert count in (0, 1)
            outputs.append([result[index]] if count else [])
            index += count
        return outputs


@dataclass(frozen=True)
class Library:
    """Counters available on a target device, and the number of rows it reduces to before the
    final carry-propagate addition."""
    goal:     int
    counters: tuple[Counter, ...]

    @property
    def exact_counters(self):
        return tuple(counter for counter in self.counters if counter.exact)

    @property
    def approx_counters(self):
        return self.counters


LIBRARIES = {
    "asic": Library(goal=2, counters=(
        Counter("2_11",  (2,), (1, 1),    cost=2),
        Counter("3_11",  (3,), (1, 1),    cost=3),
        Counter("5_111", (5,), (1, 1, 1), cost=8),
        Counter("7_111", (7,), (1, 1, 1), cost=12),
        Counter("8_111", (8,), (1, 1, 1), cost=11, exact=False),
    )),
    "7series": Library(goal=3, counters=(
        Counter("2_11",  (2,), (1, 1),    cost=1),
        Counter("3_11",  (3,), (1, 1),    cost=1),
        Counter("6_111", (6,), (1, 1, 1), cost=3),
        Counter("8_111", (8,), (1, 1, 1), cost=4, exact=False),
    )),
    "versal": Library(goal=2, counters=(
        Counter("2_11",  (2,), (1, 1),    cost=1),
        Counter("3_11",  (3,), (1, 1),    cost=1),
        Counter("7_111", (7,), (1, 1, 1), cost=3),
        Counter("8_111", (8,), (1, 1, 1), cost=3, exact=False),
    )),
    "intel": Library(goal=2, counters=(
        Counter("2_11",  (2,), (1, 1),    cost=1),
        Counter("3_11",  (3,), (1, 1),    cost=2),
        Counter("8_111", (8,), (1, 1, 1), cost=4, exact=False),
    )),
}
LIBRARIES["ultrascale"] = LIBRARIES["7series"]


def library_for(target_device):
    return LIBRARIES[target_device or "asic"]
