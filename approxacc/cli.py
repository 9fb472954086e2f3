import os
import sys
import logging
import argparse
import platform

from amaranth.back import rtlil, verilog

from . import __version__
from .support.logging import *
from .gateware import GatewareBuildError
from .gateware.signature import Signature
from .gateware.comptree import (FitnessMetric, ColumnTruncation, ORCompression, Miscounting,
                                NetworkConfig)
from .gateware.accumulator import *


# When running as `-m approxacc.cli`, `__name__` is `__main__`, and the real name
# can be retrieved from `__loader__.name`.
logger = logging.getLogger(__loader__.name)


SHAPES = ("simple", "multiply", "bitmatrix", "parallel-simple", "parallel-multiply")


class TextHelpFormatter(argparse.HelpFormatter):
    def __init__(self, prog):
        if "COLUMNS" in os.environ:
            columns = int(os.environ["COLUMNS"])
        else:
            try:
                columns, _ = os.get_terminal_size(sys.stderr.fileno())
            except OSError:
                columns = 80
        super().__init__(prog, width=columns, max_help_position=28)


def version_info():
    python_version = ".".join(map(str, sys.version_info[:3]))
    python_implementation = platform.python_implementation()
    return f"approxacc {__version__} ({python_implementation} {python_version})"


def positive_int(arg):
    try:
        value = int(arg, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{arg} is not an integer")
    if value < 1:
        raise argparse.ArgumentTypeError(f"{arg} is not a positive integer")
    return value


def non_negative_int(arg):
    try:
        value = int(arg, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{arg} is not an integer")
    if value < 0:
        raise argparse.ArgumentTypeError(f"{arg} is a negative integer")
    return value


def signature_arg(arg):
    try:
        return Signature.parse(arg)
    except (ValueError, TypeError) as e:
        raise argparse.ArgumentTypeError(str(e))


def metric_arg(arg):
    try:
        return FitnessMetric.parse(arg)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def add_shape_args(parser):
    parser.add_argument(
        "shape", metavar="SHAPE", choices=SHAPES,
        help="accumulator shape (one of: %(choices)s)")

    g_widths = parser.add_argument_group("operand arguments")
    g_widths.add_argument(
        "--acc-width", metavar="WIDTH", type=positive_int, required=True,
        help="accumulator width")
    g_widths.add_argument(
        "--in-width", metavar="WIDTH", type=positive_int,
        help="operand width (simple shapes)")
    g_widths.add_argument(
        "--a-width", metavar="WIDTH", type=positive_int,
        help="first operand width (multiply shapes)")
    g_widths.add_argument(
        "--b-width", metavar="WIDTH", type=positive_int,
        help="second operand width (multiply shapes, default: same as --a-width)")
    g_widths.add_argument(
        "-n", "--count", metavar="COUNT", type=positive_int, default=1,
        help="number of operands or operand pairs per cycle (parallel shapes, "
             "default: %(default)s)")
    g_widths.add_argument(
        "--signature", metavar="SIGNATURE", type=signature_arg,
        help="comma-separated bit counts per column (bitmatrix shape)")
    g_widths.add_argument(
        "--signed", default=False, action="store_true",
        help="treat operands as two's complement numbers")
    g_widths.add_argument(
        "--pipes", metavar="STAGES", type=non_negative_int, default=0,
        help="number of pipeline stages (default: %(default)s)")

    g_network = parser.add_argument_group("reduction network arguments")
    g_network.add_argument(
        "--reduce", default=False, action="store_true",
        help="sum parallel operands with a reduction network instead of an adder tree")
    g_network.add_argument(
        "--device", metavar="DEVICE", type=str, default="",
        help="target device (one of: asic 7series ultrascale versal intel, default: asic)")
    g_network.add_argument(
        "--metric", metavar="METRIC", type=metric_arg, default=FitnessMetric.Efficiency,
        help="counter fitness metric (one of: efficiency strength, default: efficiency)")
    g_network.add_argument(
        "--truncate", metavar="COLUMNS", type=positive_int,
        help="drop all bits in the COLUMNS least significant columns")
    g_network.add_argument(
        "--or-compress", metavar="COLUMNS", type=positive_int,
        help="OR together the bits in each of the COLUMNS least significant columns")
    g_network.add_argument(
        "--miscount", metavar="COLUMNS", type=positive_int,
        help="use approximate counters in the COLUMNS least significant columns")


def create_argparser():
    parser = argparse.ArgumentParser(formatter_class=TextHelpFormatter, fromfile_prefix_chars="@")

    parser.add_argument(
        "-V", "--version", action="version", version=version_info(),
        help="show version and exit")
    parser.add_argument(
        "-v", "--verbose", default=0, action="count",
        help="increase logging verbosity")
    parser.add_argument(
        "-q", "--quiet", default=0, action="count",
        help="decrease logging verbosity")
    parser.add_argument(
        "-L", "--log-file", metavar="FILE", type=argparse.FileType("w"),
        help="save log messages at highest verbosity to FILE")
    parser.add_argument(
        "--no-shorten", default=False, action="store_true",
        help="do not shorten sequences in logs")

    subparsers = parser.add_subparsers(dest="action", metavar="COMMAND")
    subparsers.required = True

    p_build = subparsers.add_parser(
        "build", formatter_class=TextHelpFormatter,
        help="elaborate an accumulator and save it as a file")
    add_shape_args(p_build)
    p_build.add_argument(
        "-t", "--type", metavar="TYPE", type=str,
        choices=["il", "rtlil", "v", "verilog"], default="rtlil",
        help="artifact to build (one of: rtlil verilog, default: %(default)s)")
    p_build.add_argument(
        "-f", "--filename", metavar="FILENAME", type=str,
        help="file to save artifact to (default: <shape>.{il,v})")
    p_build.add_argument(
        "--name", metavar="NAME", type=str, default="top",
        help="name of the top-level module (default: %(default)s)")

    p_signature = subparsers.add_parser(
        "signature", formatter_class=TextHelpFormatter,
        help="print the bit matrix signature summed by the reduction network")
    add_shape_args(p_signature)

    return parser


def network_config(args):
    approximations = []
    if args.truncate is not None:
        approximations.append(ColumnTruncation(args.truncate))
    if args.or_compress is not None:
        approximations.append(ORCompression(args.or_compress))
    if args.miscount is not None:
        approximations.append(Miscounting(args.miscount))
    return NetworkConfig(args.device, args.metric, approximations)


def build_accumulator(args):
    def require(*names):
        for name in names:
            if getattr(args, name) is None:
                raise ValueError(f"shape {args.shape!r} requires "
                                 f"--{name.replace('_', '-')}")

    if args.shape in ("multiply", "parallel-multiply") and args.b_width is None:
        args.b_width = args.a_width

    if args.shape == "simple":
        require("in_width")
        return SimpleAccumulator(args.in_width, args.acc_width,
            signed=args.signed, pipes=args.pipes)
    if args.shape == "multiply":
        require("a_width")
        return MultiplyAccumulator(args.a_width, args.b_width, args.acc_width,
            signed=args.signed, pipes=args.pipes)
    if args.shape == "bitmatrix":
        require("signature")
        return BitMatrixAccumulator(args.signature, args.acc_width,
            config=network_config(args), pipes=args.pipes)
    if args.shape == "parallel-simple":
        require("in_width")
        return ParallelSimpleAccumulator(args.count, args.in_width, args.acc_width,
            signed=args.signed, reduce=args.reduce, config=network_config(args),
            pipes=args.pipes)
    if args.shape == "parallel-multiply":
        require("a_width")
        return ParallelMultiplyAccumulator(args.count, args.a_width, args.b_width, args.acc_width,
            signed=args.signed, reduce=args.reduce, config=network_config(args),
            pipes=args.pipes)
    assert False


class TerminalFormatter(logging.Formatter):
    DEFAULT_COLORS = {
        "TRACE"   : "\033[0m",
        "DEBUG"   : "\033[36m",
        "INFO"    : "\033[1m",
        "WARNING" : "\033[1;33m",
        "ERROR"   : "\033[1;31m",
        "CRITICAL": "\033[1;41m",
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.colors = dict(self.DEFAULT_COLORS)
        for color_override in os.getenv("APPROXACC_COLORS", "").split(":"):
            if color_override:
                level, color = color_override.split("=", 2)
                self.colors[level] = f"\033[{color}m"

    def format(self, record):
        color = self.colors.get(record.levelname, "")
        # approxacc.gateware.comptree → a.gateware.comptree
        record.name = record.name.replace("approxacc.", "a.")
        return f"{color}{super().format(record)}\033[0m"


def create_logger():
    root_logger = logging.getLogger()

    term_formatter_args = {"style": "{",
        "fmt": "{levelname[0]:s}: {name:s}: {message:s}"}
    term_handler = logging.StreamHandler()
    if sys.stderr.isatty() and sys.platform != 'win32':
        term_handler.setFormatter(TerminalFormatter(**term_formatter_args))
    else:
        term_handler.setFormatter(logging.Formatter(**term_formatter_args))
    root_logger.addHandler(term_handler)
    return term_handler


def configure_logger(args, term_handler):
    root_logger = logging.getLogger()

    file_formatter_args = {"style": "{",
        "fmt": "[{asctime:s}] {levelname:s}: {name:s}: {message:s}"}
    level = logging.INFO + args.quiet * 10 - args.verbose * 10
    if level < 0 or args.no_shorten:
        dump_seq.limit = dump_signature.limit = dump_order.limit = None

    if args.log_file:
        file_handler = logging.StreamHandler(args.log_file)
        file_handler.setFormatter(logging.Formatter(**file_formatter_args))
        root_logger.addHandler(file_handler)
        term_handler.setLevel(level)
        root_logger.setLevel(logging.TRACE)
    else:
        root_logger.setLevel(level)


def main(argv=None):
    term_handler = create_logger()

    args = create_argparser().parse_args(argv)
    configure_logger(args, term_handler)

    try:
        accumulator = build_accumulator(args)

        if args.action == "build":
            if args.type in ("il", "rtlil"):
                logger.info("generating RTLIL for %s accumulator", args.shape)
                output = rtlil.convert(accumulator, name=args.name)
                filename = args.filename or args.shape + ".il"
            if args.type in ("v", "verilog"):
                logger.info("generating Verilog for %s accumulator", args.shape)
                output = verilog.convert(accumulator, name=args.name)
                filename = args.filename or args.shape + ".v"
            with open(filename, "w") as f:
                f.write(output)
            logger.info("latency %d cycles, written to %s", accumulator.latency, filename)

        if args.action == "signature":
            try:
                signature = accumulator.extended_signature
            except AttributeError as e:
                logger.error("%s accumulator: %s", args.shape, e)
                return 1
            print(signature)

    except (ValueError, TypeError, GatewareBuildError) as e:
        logger.error(e)
        logger.error("failed to build %s accumulator", args.shape)
        return 2

    except KeyboardInterrupt:
        logger.warning("interrupted")
        return 130 # 128 + SIGINT

    return 0


# This entry point is invoked via `entry_points.console_scripts.approxacc`.
def run_main():
    exit(main())


# This entry point is invoked when running `python -m approxacc.cli`.
if __name__ == "__main__":
    run_main()
