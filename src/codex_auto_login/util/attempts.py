from __future__ import annotations

from typing import Callable, Iterable, Optional, TypeVar


T = TypeVar("T")


def first_success(attempts: Iterable[Callable[[], Optional[T]]]) -> Optional[T]:
    """
    Run attempts in order and return the first result that is neither None nor an empty string.

    Attempts are consumed lazily, so later (more expensive) attempts only run when earlier ones miss.
    Exceptions propagate; an attempt that should be skipped on error must catch and return None itself.
    """
    for attempt in attempts:
        result = attempt()
        if result is not None and result != "":
            return result
    return None
