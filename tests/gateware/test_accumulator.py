import logging
import unittest
import unittest.mock
import random

from amaranth import *
from amaranth.sim import Simulator

from approxacc.gateware import GatewareBuildError
from approxacc.gateware.signature import Signature, extend
from approxacc.gateware.comptree import NetworkConfig, ColumnTruncation, CompressorTree
from approxacc.gateware.accumulator import *


def signed_range(rng, width):
    return rng.randrange(-(1 << (width - 1)), 1 << (width - 1))


class AccumulatorTestCase(unittest.TestCase):
    def run_scenario(self, dut, testbench, name="accumulator"):
        sim = Simulator(dut)
        sim.add_clock(1e-6)
        sim.add_testbench(testbench)
        with sim.write_vcd(f"{name}.vcd"):
            sim.run()

    def apply(self, ctx, dut, step):
        for name, value in step.items():
            if name == "contribution":
                continue
            port = getattr(dut, name)
            if isinstance(value, list):
                for n, element in enumerate(value):
                    ctx.set(port[n], element & ((1 << len(port[n])) - 1))
            else:
                ctx.set(port, value & ((1 << len(port)) - 1))

    def run_steps(self, dut, steps, name="accumulator"):
        """Feed ``steps`` to ``dut`` one per cycle and check :py:`sum` against a model.

        Each step holds the port values and the integer ``contribution`` of the operands.
        """
        modulus = 1 << dut.acc_width
        expected = []
        total = 0
        for step in steps:
            if step.get("en", 0):
                total = (step["contribution"] + (0 if step.get("zero", 0) else total)) % modulus
            expected.append(total)

        async def testbench(ctx):
            for cycle in range(len(steps) + dut.latency):
                if cycle < len(steps):
                    self.apply(ctx, dut, {"en": 0, "zero": 0, **steps[cycle]})
                else:
                    self.apply(ctx, dut, {"en": 0, "zero": 0})
                if cycle >= dut.latency:
                    self.assertEqual(ctx.get(dut.sum), expected[cycle - dut.latency],
                                     msg=f"cycle {cycle}")
                else:
                    self.assertEqual(ctx.get(dut.sum), 0, msg=f"cycle {cycle}")
                await ctx.tick()

        self.run_scenario(dut, testbench, name)
        return expected

    def random_control(self, rng, cycle):
        if cycle == 0:
            return {"en": 1, "zero": 0}
        return {"en": int(rng.random() < 0.8), "zero": int(rng.random() < 0.1)}


class SimpleAccumulatorTestCase(AccumulatorTestCase):
    def check(self, in_width, acc_width, *, signed, pipes=0, cycles=40):
        dut = SimpleAccumulator(in_width, acc_width, signed=signed, pipes=pipes)
        self.assertEqual(dut.latency, pipes + 1)
        rng = random.Random(in_width * 31 + acc_width)
        steps = []
        for cycle in range(cycles):
            value = signed_range(rng, in_width) if signed else rng.randrange(1 << in_width)
            steps.append({**self.random_control(rng, cycle), "value": value,
                          "contribution": value})
        self.run_steps(dut, steps, "simple_accumulator")

    def test_unsigned(self):
        self.check(4, 8, signed=False)
        self.check(8, 8, signed=False)
        self.check(12, 8, signed=False)

    def test_signed(self):
        self.check(4, 8, signed=True)
        self.check(12, 8, signed=True)

    def test_pipelined(self):
        self.check(4, 8, signed=True, pipes=1)
        self.check(4, 8, signed=False, pipes=3)

    def test_zero_and_hold(self):
        dut = SimpleAccumulator(4, 8)
        expected = self.run_steps(dut, [
            {"en": 1, "value": 5, "contribution": 5},
            {"en": 1, "value": 7, "contribution": 7},
            {"en": 0, "value": 9, "contribution": 9},
            {"en": 1, "zero": 1, "value": 3, "contribution": 3},
            {"en": 0, "zero": 1, "value": 15, "contribution": 15},
            {"en": 1, "value": 1, "contribution": 1},
        ])
        self.assertEqual(expected, [5, 12, 12, 3, 3, 4])

    def test_no_network(self):
        dut = SimpleAccumulator(4, 8)
        with self.assertRaisesRegex(AttributeError,
                r"^Accumulator does not use a reduction network$"):
            dut.bit_signature

    def test_wrong_widths(self):
        with self.assertRaisesRegex(ValueError, r"^Accumulator width must be positive, not 0$"):
            SimpleAccumulator(4, 0)
        with self.assertRaisesRegex(ValueError, r"^Operand width must be positive, not 0$"):
            SimpleAccumulator(0, 4)
        with self.assertRaisesRegex(ValueError,
                r"^Pipeline depth must not be negative, not -1$"):
            SimpleAccumulator(4, 4, pipes=-1)


class MultiplyAccumulatorTestCase(AccumulatorTestCase):
    def check(self, a_width, b_width, acc_width, *, signed, pipes=0, cycles=32):
        dut = MultiplyAccumulator(a_width, b_width, acc_width, signed=signed, pipes=pipes)
        rng = random.Random(a_width * 31 + b_width * 7 + acc_width)
        steps = []
        for cycle in range(cycles):
            if signed:
                a, b = signed_range(rng, a_width), signed_range(rng, b_width)
            else:
                a, b = rng.randrange(1 << a_width), rng.randrange(1 << b_width)
            steps.append({**self.random_control(rng, cycle), "a": a, "b": b,
                          "contribution": a * b})
        self.run_steps(dut, steps, "multiply_accumulator")

    def test_unsigned(self):
        self.check(8, 8, 20, signed=False)
        self.check(3, 5, 6, signed=False)

    def test_signed(self):
        self.check(8, 8, 20, signed=True)
        self.check(3, 5, 6, signed=True, pipes=2)


class BitMatrixAccumulatorTestCase(AccumulatorTestCase):
    def check(self, signature, acc_width, *, config=NetworkConfig(), pipes=0, cycles=32):
        signature = Signature(signature)
        dut = BitMatrixAccumulator(signature, acc_width, config=config, pipes=pipes)
        self.assertEqual(dut.bit_signature, signature)
        self.assertEqual(dut.extended_signature, extend(signature, acc_width))
        rng = random.Random(signature.count + acc_width)
        steps = []
        for cycle in range(cycles):
            bits = rng.getrandbits(signature.count)
            contribution = 0
            index = 0
            for column, count in enumerate(signature):
                for _ in range(count):
                    contribution += ((bits >> index) & 1) << column
                    index += 1
            steps.append({**self.random_control(rng, cycle), "bits": bits,
                          "contribution": contribution})
        self.run_steps(dut, steps, "bit_matrix_accumulator")

    def test_exact(self):
        self.check([1, 2, 3, 2, 1], 8)
        self.check([4, 4, 4, 4, 4, 4, 4, 4, 4, 4], 6)

    def test_devices(self):
        for device in ("7series", "versal", "intel"):
            with self.subTest(device=device):
                self.check([3, 0, 5, 1], 7, config=NetworkConfig(device))

    def test_pipelined(self):
        self.check([2, 2, 2], 10, pipes=2)

    def test_accepts_list(self):
        dut = BitMatrixAccumulator([1, 1], 4)
        self.assertEqual(dut.bit_signature, Signature([1, 1]))
        self.assertEqual(len(dut.bits), 2)

    def test_bit_order_logged_at_trace_only(self):
        logger = logging.getLogger("approxacc.test.bit_order")
        logger.setLevel(logging.DEBUG)
        with unittest.mock.patch("approxacc.gateware.accumulator.extended_order") as order:
            BitMatrixAccumulator([2, 1], 3, logger=logger)
        order.assert_not_called()

        logger.setLevel(logging.TRACE)
        with self.assertLogs(logger, level=logging.TRACE) as logs:
            BitMatrixAccumulator([2, 1], 3, logger=logger)
        self.assertIn("network bit order bits0 bits1 acc0 bits2 acc1 acc2", logs.output[-1])

    def test_network_mismatch(self):
        def network(signature, config):
            return CompressorTree(Signature([1]), config)
        with self.assertRaisesRegex(GatewareBuildError,
                r"^Reduction network accepts 1 bits, but signature 2,2,1,1 describes 6 bits$"):
            BitMatrixAccumulator([1, 1], 4, network=network)

    def test_truncation(self):
        dut = BitMatrixAccumulator([4, 4, 4], 6,
                                   config=NetworkConfig(approximations=[ColumnTruncation(2)]))

        async def testbench(ctx):
            rng = random.Random(0)
            ctx.set(dut.en, 1)
            for _ in range(16):
                ctx.set(dut.bits, rng.getrandbits(12))
                await ctx.tick()
                self.assertEqual(ctx.get(dut.sum) & 0b11, 0)

        self.run_scenario(dut, testbench, "bit_matrix_truncation")


class ParallelSimpleAccumulatorTestCase(AccumulatorTestCase):
    def check(self, count, in_width, acc_width, *, signed, reduce, pipes=0, cycles=32):
        dut = ParallelSimpleAccumulator(count, in_width, acc_width, signed=signed,
                                        reduce=reduce, pipes=pipes)
        rng = random.Random(count * 97 + in_width * 31 + acc_width)
        steps = []
        for cycle in range(cycles):
            if signed:
                values = [signed_range(rng, in_width) for _ in range(count)]
            else:
                values = [rng.randrange(1 << in_width) for _ in range(count)]
            steps.append({**self.random_control(rng, cycle), "values": values,
                          "contribution": sum(values)})
        self.run_steps(dut, steps, "parallel_simple_accumulator")

    def test_adder_tree(self):
        for signed in (False, True):
            with self.subTest(signed=signed):
                self.check(3, 4, 8, signed=signed, reduce=False)
                self.check(4, 10, 8, signed=signed, reduce=False, pipes=1)

    def test_reduce(self):
        for signed in (False, True):
            with self.subTest(signed=signed):
                self.check(3, 4, 8, signed=signed, reduce=True)
                self.check(5, 10, 8, signed=signed, reduce=True, pipes=2)

    def test_signature(self):
        dut = ParallelSimpleAccumulator(4, 3, 8, reduce=True)
        self.assertEqual(dut.bit_signature, Signature([4, 4, 4]))
        self.assertEqual(dut.extended_signature, Signature([5, 5, 5, 1, 1, 1, 1, 1]))
        dut = ParallelSimpleAccumulator(4, 3, 8, signed=True, reduce=True)
        self.assertEqual(dut.bit_signature, Signature([4] * 8))
        dut = ParallelSimpleAccumulator(2, 12, 8, reduce=True)
        self.assertEqual(dut.bit_signature, Signature([2] * 8))

    def test_wrong_count(self):
        with self.assertRaisesRegex(ValueError, r"^Operand count must be positive, not 0$"):
            ParallelSimpleAccumulator(0, 4, 8)


class ParallelMultiplyAccumulatorTestCase(AccumulatorTestCase):
    def check(self, count, a_width, b_width, acc_width, *, signed, reduce, pipes=0,
              config=NetworkConfig(), cycles=32):
        dut = ParallelMultiplyAccumulator(count, a_width, b_width, acc_width, signed=signed,
                                          reduce=reduce, config=config, pipes=pipes)
        rng = random.Random(count * 97 + a_width * 31 + b_width * 7 + acc_width)
        steps = []
        for cycle in range(cycles):
            if signed:
                a = [signed_range(rng, a_width) for _ in range(count)]
                b = [signed_range(rng, b_width) for _ in range(count)]
            else:
                a = [rng.randrange(1 << a_width) for _ in range(count)]
                b = [rng.randrange(1 << b_width) for _ in range(count)]
            steps.append({**self.random_control(rng, cycle), "a": a, "b": b,
                          "contribution": sum(x * y for x, y in zip(a, b))})
        self.run_steps(dut, steps, "parallel_multiply_accumulator")

    def test_adder_tree(self):
        for signed in (False, True):
            with self.subTest(signed=signed):
                self.check(2, 4, 4, 10, signed=signed, reduce=False)
                self.check(3, 3, 5, 6, signed=signed, reduce=False, pipes=1)

    def test_reduce(self):
        for signed in (False, True):
            with self.subTest(signed=signed):
                self.check(2, 4, 4, 10, signed=signed, reduce=True)
                self.check(3, 3, 5, 6, signed=signed, reduce=True, pipes=1)
                self.check(2, 5, 2, 16, signed=signed, reduce=True)

    def test_reduce_devices(self):
        for device in ("7series", "versal", "intel"):
            with self.subTest(device=device):
                self.check(2, 4, 4, 12, signed=True, reduce=True,
                           config=NetworkConfig(device, "strength"))

    def test_single_pair(self):
        for reduce in (False, True):
            with self.subTest(reduce=reduce):
                self.check(1, 8, 8, 20, signed=True, reduce=reduce)

    def test_dot_product(self):
        dut = ParallelMultiplyAccumulator(2, 4, 4, 8, signed=True, reduce=True)
        self.assertEqual(dut.layout.correction, -224)
        expected = self.run_steps(dut, [
            {"en": 1, "zero": 1, "a": [3, 4], "b": [2, 5], "contribution": 26},
            {"en": 1, "zero": 0, "a": [3, 4], "b": [2, 5], "contribution": 26},
            {"en": 1, "zero": 0, "a": [-3, 4], "b": [2, -5], "contribution": -26},
        ])
        self.assertEqual(expected, [26, 52, 26])

    def test_no_layout(self):
        dut = ParallelMultiplyAccumulator(2, 4, 4, 8)
        with self.assertRaises(AttributeError):
            dut.layout

    def test_end_to_end(self):
        for reduce in (False, True):
            with self.subTest(reduce=reduce):
                dut = ParallelMultiplyAccumulator(2, 4, 4, 12, reduce=reduce)
                expected = self.run_steps(dut, [
                    {"en": 1, "zero": 1, "a": [3, 5], "b": [2, 4], "contribution": 26},
                    {"en": 1, "zero": 0, "a": [3, 5], "b": [2, 4], "contribution": 26},
                ])
                self.assertEqual(expected, [26, 52])

    def test_mac_equivalence(self):
        rng = random.Random(32)
        a = [rng.randrange(256) for _ in range(32)]
        b = [rng.randrange(256) for _ in range(32)]
        for reduce in (False, True):
            with self.subTest(reduce=reduce):
                dut = ParallelMultiplyAccumulator(1, 8, 8, 16, reduce=reduce)

                async def testbench(ctx):
                    ctx.set(dut.en, 1)
                    for cycle in range(32):
                        ctx.set(dut.zero, cycle == 0)
                        ctx.set(dut.a[0], a[cycle])
                        ctx.set(dut.b[0], b[cycle])
                        await ctx.tick()
                    self.assertEqual(ctx.get(dut.sum),
                                     sum(x * y for x, y in zip(a, b)) % (1 << 16))

                self.run_scenario(dut, testbench, "mac_equivalence")


class PipelineTransparencyTestCase(unittest.TestCase):
    def trace(self, dut, steps, cycles):
        trace = []

        async def testbench(ctx):
            for cycle in range(cycles):
                step = steps[cycle] if cycle < len(steps) else {"en": 0, "zero": 0}
                ctx.set(dut.en, step["en"])
                ctx.set(dut.zero, step["zero"])
                if "a" in step:
                    for n in range(len(step["a"])):
                        ctx.set(dut.a[n], step["a"][n])
                        ctx.set(dut.b[n], step["b"][n])
                trace.append(ctx.get(dut.sum))
                await ctx.tick()

        sim = Simulator(dut)
        sim.add_clock(1e-6)
        sim.add_testbench(testbench)
        sim.run()
        return trace

    def test_delayed_by_pipes(self):
        rng = random.Random(5)
        steps = [{"en": int(rng.random() < 0.7), "zero": int(rng.random() < 0.2),
                  "a": [rng.randrange(16) for _ in range(3)],
                  "b": [rng.randrange(16) for _ in range(3)]}
                 for _ in range(24)]
        for reduce in (False, True):
            reference = self.trace(
                ParallelMultiplyAccumulator(3, 4, 4, 10, signed=True, reduce=reduce),
                steps, 30)
            for pipes in (1, 2, 4):
                with self.subTest(reduce=reduce, pipes=pipes):
                    trace = self.trace(
                        ParallelMultiplyAccumulator(3, 4, 4, 10, signed=True, reduce=reduce,
                                                    pipes=pipes),
                        steps, 30 + pipes)
                    self.assertEqual(trace[:pipes], [0] * pipes)
                    self.assertEqual(trace[pipes:], reference)
