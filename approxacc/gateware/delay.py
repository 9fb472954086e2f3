import operator

from amaranth import *
from amaranth.lib import wiring
from amaranth.lib.wiring import In, Out


__all__ = ["DelayLine"]


class DelayLine(wiring.Component):
    """Fixed-latency delay line.

    Presents :py:`i` at :py:`o` exactly ``pipes`` cycles later. With :py:`pipes == 0` the delay
    line is a wire. Signals that have to be consumed together must pass through delay lines with
    the same ``pipes``.

    Members
    -------
    i : In(shape)
        Delayed value.
    o : Out(shape)
        Value of :py:`i`, ``pipes`` cycles ago.
    """
    def __init__(self, shape, pipes):
        self._pipes = operator.index(pipes)
        if self._pipes < 0:
            raise ValueError(f"Pipeline depth must not be negative, not {self._pipes}")
        super().__init__({
            "i": In(shape),
            "o": Out(shape),
        })

    @property
    def latency(self):
        return self._pipes

    def elaborate(self, platform):
        m = Module()

        value = self.i
        for n in range(self._pipes):
            stage = Signal.like(self.o, name=f"stage{n}")
            m.d.sync += stage.eq(value)
            value = stage
        m.d.comb += self.o.eq(value)

        return m
