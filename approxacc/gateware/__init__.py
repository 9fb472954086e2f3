__all__ = ["GatewareBuildError"]


class GatewareBuildError(Exception):
    pass
