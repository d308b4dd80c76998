from __future__ import annotations


class ExitError(RuntimeError):
    pass


class ExitCancelledError(ExitError):
    pass
