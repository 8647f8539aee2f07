import errno

import pytest

from dnsrelay.errors import is_epipe


def _wrapped_epipe():
    try:
        try:
            raise BrokenPipeError(errno.EPIPE, "broken pipe")
        except BrokenPipeError as inner:
            raise RuntimeError("test error") from inner
    except RuntimeError as outer:
        return outer


@pytest.mark.parametrize(
    "err, want",
    [
        (None, False),
        (BrokenPipeError(errno.EPIPE, "broken pipe"), True),
        (OSError(errno.EPIPE, "broken pipe"), True),
        (ValueError("test error"), False),
        (_wrapped_epipe(), True),
    ],
    ids=["nil", "epipe", "oserror_epipe", "not_epipe", "wrapped_epipe"],
)
def test_is_epipe(err, want):
    assert is_epipe(err) is want