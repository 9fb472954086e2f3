from dataclasses import dataclass
import enum
import logging
import operator

from amaranth import *
from amaranth.lib import wiring
from amaranth.lib.wiring import In, Out

from ...support.logging import dump_seq, dump_signature
from .. import GatewareBuildError
from ..signature import Signature
from .counters import library_for, LIBRARIES


__all__ = [
    "FitnessMetric", "Approximation", "ColumnTruncation", "ORCompression", "Miscounting",
    "NetworkConfig", "CompressorTree",
]


class FitnessMetric(enum.Enum):
    Efficiency = "efficiency"
    Strength   = "strength"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unsupported fitness metric {value!r}, must be one of: "
                             f"{', '.join(metric.value for metric in cls)}") from None


@dataclass(frozen=True)
class Approximation:
    width: int

    def __init__(self, width):
        width = operator.index(width)
        if width < 1:
            raise ValueError(f"{type(self).__name__} width must be positive, not {width}")
        object.__setattr__(self, "width", width)


class ColumnTruncation(Approximation):
    """Discard every bit in the ``width`` least significant columns."""


class ORCompression(Approximation):
    """Replace the bits of each of the ``width`` least significant columns with their OR."""


class Miscounting(Approximation):
    """Allow approximate counters that only consume bits of the ``width`` least significant
    columns."""


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration of a reduction network.

    ``target_device`` selects the counter library (empty for ASIC), ``metric`` the order in
    which counters are tried, and ``approximations`` the approximation styles to apply; an empty
    set of approximations yields an exact network.
    """
    target_device:  str = ""
    metric:         FitnessMetric = FitnessMetric.Efficiency
    approximations: frozenset = frozenset()

    def __init__(self, target_device="", metric=FitnessMetric.Efficiency, approximations=()):
        target_device = str(target_device).lower()
        if target_device == "asic":
            target_device = ""
        if target_device and target_device not in LIBRARIES:
            raise ValueError(f"Unsupported target device {target_device!r}, must be one of: "
                             f"{', '.join(sorted(LIBRARIES))}")
        approximations = frozenset(approximations)
        for approximation in approximations:
            if not isinstance(approximation, Approximation):
                raise TypeError(f"Approximation style must be an Approximation, not "
                                f"{approximation!r}")
        object.__setattr__(self, "target_device", target_device)
        object.__setattr__(self, "metric", FitnessMetric.parse(metric))
        object.__setattr__(self, "approximations", approximations)

    @property
    def is_exact(self):
        return not self.approximations

    def approximation(self, kind):
        """Return the approximation of the given kind, or ``None``."""
        for approximation in self.approximations:
            if isinstance(approximation, kind):
                return approximation
        return None


class _BitMatrix:
    def __init__(self, width):
        self.width   = width
        self.columns = []

    def __len__(self):
        return len(self.columns)

    @property
    def count(self):
        return sum(len(column) for column in self.columns)

    def height(self, column):
        if column < len(self.columns):
            return len(self.columns[column])
        return 0

    def insert(self, bit, column):
        if column >= self.width:
            return
        while len(self.columns) <= column:
            self.columns.append([])
        self.columns[column].append(bit)

    def pop(self, column):
        return self.columns[column].pop()

    def meets_goal(self, goal):
        return all(len(column) <= goal for column in self.columns)


class CompressorTree(wiring.Component):
    """Multi-operand reduction network.

    Sums the bits of :py:`i`, whose layout is described by ``signature``, by placing generalized
    parallel counters stage by stage until each column holds no more bits than the target's
    compression goal, then adding the remaining rows with a carry-propagate adder.

    The network is exact unless ``config`` requests approximations, in which case the output
    is whatever those approximations produce.

    Members
    -------
    i : In(signature.count)
        Input bits, ordered by ascending column.
    o : Out(out_width)
        Column-weighted sum of the input bits, modulo :py:`2 ** out_width`.
    """
    def __init__(self, signature, config=NetworkConfig(), *, out_width=None, logger=None):
        if not isinstance(signature, Signature):
            signature = Signature(signature)
        if out_width is None:
            out_width = max(1, signature.out_width)
        self._signature = signature
        self._config    = config
        self._out_width = operator.index(out_width)
        if self._out_width < 1:
            raise ValueError(f"Output width must be positive, not {self._out_width}")
        self._library   = library_for(config.target_device)
        self._logger    = logger or logging.getLogger(__name__)

        super().__init__({
            "i": In(signature.count),
            "o": Out(self._out_width),
        })

    @property
    def bit_signature(self):
        return self._signature

    @property
    def config(self):
        return self._config

    def _counters(self):
        counters = (self._library.approx_counters
                    if self._config.approximation(Miscounting) is not None
                    else self._library.exact_counters)
        if self._config.metric == FitnessMetric.Efficiency:
            fitness = lambda counter: counter.efficiency
        else:
            fitness = lambda counter: counter.strength
        return sorted(counters, key=fitness, reverse=True)

    def _build_matrix(self):
        matrix = _BitMatrix(self._out_width)
        offsets = []
        index = 0
        for count in self._signature:
            offsets.append(index)
            index += count

        truncation = self._config.approximation(ColumnTruncation)
        or_compression = self._config.approximation(ORCompression)
        start = truncation.width if truncation is not None else 0
        for column, count in enumerate(self._signature):
            if column < start or column >= self._out_width or count == 0:
                continue
            bits = [self.i[offsets[column] + n] for n in range(count)]
            if or_compression is not None and column < or_compression.width:
                matrix.insert(Cat(*bits).any(), column)
            else:
                for bit in bits:
                    matrix.insert(bit, column)
        return matrix

    def _can_place(self, counter, in_bits, out_bits, column):
        goal = self._library.goal
        if counter.is_half_adder:
            in_count, out_count = in_bits.height(column), out_bits.height(column)
            return in_count >= 2 and in_count + out_count - 1 <= goal
        if not counter.exact:
            miscounting = self._config.approximation(Miscounting)
            if column + len(counter.in_sig) > miscounting.width:
                return False
        return all(in_bits.height(column + offset) >= count
                   for offset, count in enumerate(counter.in_sig))

    def _compress(self, m, in_bits, counters, stage, usage):
        goal = self._library.goal
        out_bits = _BitMatrix(self._out_width)
        while not in_bits.meets_goal(goal):
            column = next(column for column in range(len(in_bits))
                          if in_bits.height(column) > goal)
            for counter in counters:
                if self._can_place(counter, in_bits, out_bits, column):
                    break
            else:
                raise GatewareBuildError(
                    f"Cannot place a counter in column {column} of stage {stage} for "
                    f"signature {self._signature}")

            usage[counter.name] = usage.get(counter.name, 0) + 1
            inputs = [[in_bits.pop(column + offset) for _ in range(count)]
                      for offset, count in enumerate(counter.in_sig)]
            outputs = counter.construct(m, inputs)
            for offset, column_bits in enumerate(outputs):
                for bit in column_bits:
                    out_bits.insert(bit, column + offset)

        for column in range(len(in_bits)):
            while in_bits.height(column):
                out_bits.insert(in_bits.pop(column), column)
        assert in_bits.count == 0
        return out_bits

    def _final_summation(self, bits):
        goal = self._library.goal
        rows = []
        for _ in range(goal):
            row = []
            for column in range(self._out_width):
                row.append(bits.pop(column) if bits.height(column) else C(0, 1))
            rows.append(Cat(*row))
        return sum(rows)

    def elaborate(self, platform):
        m = Module()

        self._logger.trace("compressor tree for signature %s (%s)",
                           dump_signature(self._signature),
                           self._config.target_device or "asic")

        counters = self._counters()
        matrix = self._build_matrix()
        usage = {}
        stages = 0
        while not matrix.meets_goal(self._library.goal):
            stages += 1
            matrix = self._compress(m, matrix, counters, stages, usage)
            self._logger.trace("stage %d column heights %s", stages,
                               dump_seq(",", map(matrix.height, range(len(matrix)))))

        self._logger.debug("compressor tree: %d input bits, %d stages, counters %s",
                           self._signature.count, stages,
                           ", ".join(f"{name}={n}" for name, n in sorted(usage.items())) or "none")

        m.d.comb += self.o.eq(self._final_summation(matrix))

        return m
