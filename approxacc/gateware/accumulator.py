import logging
import operator

from amaranth import *
from amaranth.lib import data, wiring
from amaranth.lib.wiring import In, Out

from ..support.logging import dump_signature, dump_order
from . import GatewareBuildError
from .signature import Signature, extend, extended_order, assemble_extended
from .pprod import PartialProductLayout
from .delay import DelayLine
from .comptree import NetworkConfig, CompressorTree


__all__ = [
    "SimpleAccumulator", "MultiplyAccumulator", "BitMatrixAccumulator",
    "ParallelSimpleAccumulator", "ParallelMultiplyAccumulator",
]


def _positive(name, value):
    value = operator.index(value)
    if value < 1:
        raise ValueError(f"{name} must be positive, not {value}")
    return value


def _sum_tree(values):
    values = list(values)
    while len(values) > 1:
        values = [values[n] + values[n + 1] if n + 1 < len(values) else values[n]
                  for n in range(0, len(values), 2)]
    return values[0]


class _Accumulator(wiring.Component):
    """Common part of all accumulators.

    Every cycle, the shape computes a value from its inputs (:meth:`_stage`). That value,
    :py:`en` and :py:`zero` pass through delay lines of the same depth, after which the shape
    combines the delayed value with the stored total (:meth:`_update`). The stored total only
    changes on cycles where the delayed :py:`en` is asserted; the delayed :py:`zero` excludes the
    stored total from that single update.

    Shapes that reduce through a network stage the bit matrix instead of a computed value: the
    stored total is fed back into the network as one extra bit per column, so the network output
    is the new total, and the pipeline registers sit in front of the network.
    """
    def __init__(self, acc_width, members, *, pipes=0, logger=None):
        self._acc_width = _positive("Accumulator width", acc_width)
        self._pipes     = operator.index(pipes)
        if self._pipes < 0:
            raise ValueError(f"Pipeline depth must not be negative, not {self._pipes}")
        self._logger    = logger or logging.getLogger(__name__)
        self._signature = None
        self._extended  = None
        self._network   = None

        super().__init__({
            **members,
            "en":   In(1),
            "zero": In(1),
            "sum":  Out(self._acc_width),
        })

    def _use_network(self, signature, config, network):
        self._signature = signature
        self._extended  = extend(signature, self._acc_width)
        self._network   = network(self._extended, config)
        if len(self._network.i) != self._extended.count:
            raise GatewareBuildError(
                f"Reduction network accepts {len(self._network.i)} bits, but signature "
                f"{self._extended} describes {self._extended.count} bits")
        self._logger.debug("reducing signature %s extended to %s",
                           dump_signature(self._signature), dump_signature(self._extended))
        if self._logger.isEnabledFor(logging.TRACE):
            self._logger.trace("network bit order %s",
                               dump_order(extended_order(self._signature, self._acc_width)))

    @property
    def acc_width(self):
        return self._acc_width

    @property
    def pipes(self):
        return self._pipes

    @property
    def latency(self):
        """Cycles from presenting an input to observing it in :py:`sum`."""
        return self._pipes + 1

    @property
    def bit_signature(self):
        """Signature of the bit matrix summed by the reduction network."""
        if self._signature is None:
            raise AttributeError("Accumulator does not use a reduction network")
        return self._signature

    @property
    def extended_signature(self):
        """:attr:`bit_signature` with the feedback column of the total added."""
        if self._extended is None:
            raise AttributeError("Accumulator does not use a reduction network")
        return self._extended

    def _stage(self, m):
        raise NotImplementedError

    def _update(self, m, staged, zero, acc):
        if self._network is None:
            return staged + Mux(zero, 0, acc)

        m.submodules.network = self._network
        bits = assemble_extended(self._signature, staged, acc, zero, self._acc_width)
        m.d.comb += self._network.i.eq(Cat(*bits))
        return self._network.o

    def _extend(self, m, value, *, signed, name):
        extended = Signal(self._acc_width, name=name)
        m.d.comb += extended.eq(value.as_signed() if signed else value)
        return extended

    def elaborate(self, platform):
        m = Module()

        staged = Value.cast(self._stage(m))
        m.submodules.stage_delay = stage_delay = DelayLine(len(staged), self._pipes)
        m.submodules.en_delay    = en_delay    = DelayLine(1, self._pipes)
        m.submodules.zero_delay  = zero_delay  = DelayLine(1, self._pipes)
        m.d.comb += [
            stage_delay.i.eq(staged),
            en_delay.i.eq(self.en),
            zero_delay.i.eq(self.zero),
        ]

        acc = Signal(self._acc_width)
        total = self._update(m, stage_delay.o, zero_delay.o, acc)
        with m.If(en_delay.o):
            m.d.sync += acc.eq(total)
        m.d.comb += self.sum.eq(acc)

        return m


class SimpleAccumulator(_Accumulator):
    """Accumulator of a single operand.

    The operand is sign- or zero-extended (or truncated) to the accumulator width.

    Members
    -------
    value : In(in_width)
        Operand.
    en : In(1)
        Add the operand to the total.
    zero : In(1)
        Replace the total with the operand instead.
    sum : Out(acc_width)
        Accumulated total.
    """
    def __init__(self, in_width, acc_width, *, signed=False, pipes=0, logger=None):
        self._in_width = _positive("Operand width", in_width)
        self._signed   = bool(signed)
        super().__init__(acc_width, {
            "value": In(self._in_width),
        }, pipes=pipes, logger=logger)

    def _stage(self, m):
        return self._extend(m, self.value, signed=self._signed, name="value_ext")


class MultiplyAccumulator(_Accumulator):
    """Multiply-accumulator of a single operand pair.

    The product is extended by its true sign bit (or zeroes) or truncated to the accumulator
    width. Both operands share the same signedness.
    """
    def __init__(self, a_width, b_width, acc_width, *, signed=False, pipes=0, logger=None):
        self._a_width = _positive("Operand width", a_width)
        self._b_width = _positive("Operand width", b_width)
        self._signed  = bool(signed)
        super().__init__(acc_width, {
            "a": In(self._a_width),
            "b": In(self._b_width),
        }, pipes=pipes, logger=logger)

    def _stage(self, m):
        if self._signed:
            product = self.a.as_signed() * self.b.as_signed()
        else:
            product = self.a * self.b
        return self._extend(m, product, signed=self._signed, name="product_ext")


class BitMatrixAccumulator(_Accumulator):
    """Accumulator of an arbitrary weighted bit matrix.

    The matrix is described by ``signature``; :py:`bits` carries its bits ordered by ascending
    column. The matrix and the stored total are summed by the reduction network built by
    ``network(signature, config)``, which may be approximate.

    Members
    -------
    bits : In(signature.count)
        Bit matrix.
    en : In(1)
        Add the bit matrix to the total.
    zero : In(1)
        Replace the total with the sum of the bit matrix instead.
    sum : Out(acc_width)
        Accumulated total.
    """
    def __init__(self, signature, acc_width, *, config=NetworkConfig(), network=CompressorTree,
                 pipes=0, logger=None):
        if not isinstance(signature, Signature):
            signature = Signature(signature)
        super().__init__(acc_width, {
            "bits": In(signature.count),
        }, pipes=pipes, logger=logger)
        self._use_network(signature, config, network)

    def _stage(self, m):
        return self.bits


class ParallelSimpleAccumulator(_Accumulator):
    """Accumulator of ``count`` operands per cycle.

    With ``reduce=False`` the extended operands are summed by an adder tree. With
    ``reduce=True`` their bits form a matrix of ``count`` bits per column that is summed,
    together with the total, by a reduction network (see :class:`BitMatrixAccumulator`).
    Unsigned operands narrower than the accumulator are not extended into the matrix.
    """
    def __init__(self, count, in_width, acc_width, *, signed=False, reduce=False,
                 config=NetworkConfig(), network=CompressorTree, pipes=0, logger=None):
        self._count    = _positive("Operand count", count)
        self._in_width = _positive("Operand width", in_width)
        self._signed   = bool(signed)
        super().__init__(acc_width, {
            "values": In(data.ArrayLayout(self._in_width, self._count)),
        }, pipes=pipes, logger=logger)

        if self._signed and self._in_width < self._acc_width:
            self._ext_width = self._acc_width
        else:
            self._ext_width = min(self._in_width, self._acc_width)
        if reduce:
            self._use_network(Signature([self._count] * self._ext_width), config, network)

    def _stage(self, m):
        extended = [self._extend(m, self.values[n], signed=self._signed, name=f"value{n}_ext")
                    for n in range(self._count)]
        if self._network is None:
            return self._extend(m, _sum_tree(extended), signed=False, name="values_sum")
        return Cat(*(extended[n][column]
                     for column in range(self._ext_width)
                     for n in range(self._count)))


class ParallelMultiplyAccumulator(_Accumulator):
    """Multiply-accumulator of ``count`` operand pairs per cycle.

    With ``reduce=False`` each product is extended by its true sign bit (or zeroes) and the
    products are summed by an adder tree. With ``reduce=True`` the partial products of all pairs
    (see :class:`PartialProductLayout`) are summed, together with the total, by a reduction
    network.
    """
    def __init__(self, count, a_width, b_width, acc_width, *, signed=False, reduce=False,
                 config=NetworkConfig(), network=CompressorTree, pipes=0, logger=None):
        self._count   = _positive("Operand count", count)
        self._a_width = _positive("Operand width", a_width)
        self._b_width = _positive("Operand width", b_width)
        self._signed  = bool(signed)
        self._layout  = None
        super().__init__(acc_width, {
            "a": In(data.ArrayLayout(self._a_width, self._count)),
            "b": In(data.ArrayLayout(self._b_width, self._count)),
        }, pipes=pipes, logger=logger)

        if reduce:
            self._layout = PartialProductLayout(self._a_width, self._b_width,
                                                count=self._count, signed=self._signed,
                                                acc_width=self._acc_width)
            self._use_network(self._layout.signature, config, network)

    @property
    def layout(self):
        if self._layout is None:
            raise AttributeError("Accumulator does not use a reduction network")
        return self._layout

    def _stage(self, m):
        a = [self.a[n] for n in range(self._count)]
        b = [self.b[n] for n in range(self._count)]
        if self._layout is not None:
            return Cat(*self._layout.assemble(a, b))

        products = []
        for n in range(self._count):
            if self._signed:
                product = a[n].as_signed() * b[n].as_signed()
            else:
                product = a[n] * b[n]
            products.append(self._extend(m, product, signed=self._signed,
                                         name=f"product{n}_ext"))
        return self._extend(m, _sum_tree(products), signed=False, name="products_sum")
