from .lazy import lazy


__all__ = ["dump_seq", "dump_signature", "dump_order"]


def dump_seq(joiner, data):
    def to_seq(data):
        data = list(data)
        if dump_seq.limit is None or len(data) < dump_seq.limit:
            return joiner.join(map(str, data))
        else:
            return "{}... ({} elements total)".format(
                joiner.join(map(str, data[:dump_seq.limit])), len(data))
    return lazy(lambda: to_seq(data))

dump_seq.limit = 16


def dump_signature(signature):
    def to_signature(signature):
        columns = list(signature)
        if dump_signature.limit is None or len(columns) < dump_signature.limit:
            text = ",".join(map(str, columns))
        else:
            text = "{}... ({} columns total)".format(
                ",".join(map(str, columns[:dump_signature.limit])), len(columns))
        return f"[{text}] ({sum(columns)} bits)"
    return lazy(lambda: to_signature(signature))

dump_signature.limit = 32


def dump_order(order):
    def to_order(order):
        tokens = [f"{kind}{index}" for kind, index in order]
        if dump_order.limit is None or len(tokens) < dump_order.limit:
            return " ".join(tokens)
        else:
            return "{}... ({} bits total)".format(
                " ".join(tokens[:dump_order.limit]), len(tokens))
    return lazy(lambda: to_order(order))

dump_order.limit = 16
