"""Error classification helpers."""

from __future__ import annotations

import errno


def _chain(err: BaseException):
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__ or err.__context__


def is_epipe(err: BaseException | None) -> bool:
    """Return True if err, or any error it was raised from, is a broken pipe."""
    if err is None:
        return False
    for e in _chain(err):
        if isinstance(e, BrokenPipeError):
            return True
        if isinstance(e, OSError) and e.errno == errno.EPIPE:
            return True
        if "write on closed pipe" in str(e):
            return True
    return False