__all__ = ["lazy"]


class lazy:
    """
    A deferred value for log message arguments.

    ``logger.debug("%s", lazy(lambda: expensive()))`` only calls ``expensive()`` if the record
    is actually formatted, i.e. if some handler accepts the message. The thunk runs at most once.
    """

    __slots__ = ["_object_", "_thunk_"]

    def __init__(self, thunk):
        self._object_ = None
        self._thunk_  = thunk

    def _force_(self):
        if self._thunk_ is not None:
            self._object_ = self._thunk_()
            self._thunk_  = None
        return self._object_

    def __str__(self):
        return str(self._force_())

    def __format__(self, format_spec):
        return format(self._force_(), format_spec)

    def __len__(self):
        return len(self._force_())

    def __iter__(self):
        return iter(self._force_())

    def __eq__(self, other):
        return self._force_() == other

    def __hash__(self):
        return hash(self._force_())

    def __bool__(self):
        return bool(self._force_())

    def __repr__(self):
        if self._thunk_ is not None:
            return f"<lazy {self._thunk_!r}>"
        return f"<lazy {self._object_!r}>"
