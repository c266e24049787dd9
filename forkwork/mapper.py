# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""A map(...) forking one child per item, built atop a Manager."""
import gc
import logging
import typing

from .impl import ChildError, Failed, Manager, default_prepare

T = typing.TypeVar("T")
U = typing.TypeVar("U")

_LOGGER = logging.getLogger(__name__)

# Sentinel marking output slots not yet populated
_MISSING = object()


def _indexed(
    fn: typing.Callable[[T], U], index: int, item: T
) -> typing.Tuple[int, U]:
    """Run fn(item) remembering the index at which the output belongs."""
    return index, fn(item)


def _collect_young() -> None:
    """Cheaper alternative to default_prepare() for back-to-back forks."""
    gc.collect(0)


def fork_map(
    fn: typing.Callable[[T], U],
    items: typing.Iterable[T],
    *,
    maxprocs: typing.Optional[int] = None,
    fail_fast: bool = False
) -> typing.List[U]:
    """
    Compute [fn(item) for item in items] forking one child per item.

    Outputs are ordered like items regardless of completion order.
    At most maxprocs children run at once, defaulting to ncores().
    Results should be small and picklable as each crosses a process
    boundary.

    Should any child fail, no further children are forked and
    ChildError is raised once the outstanding children exit.  When
    several fail, which failure is raised is unspecified.  When fail_fast
    is True, the outstanding children are sent SIGTERM rather than being
    allowed to finish.
    """
    inputs = list(items)
    outputs = [_MISSING] * len(inputs)  # type: typing.List[typing.Any]

    with Manager(maxprocs) as manager:

        def drain() -> None:
            """Place every available output into its slot."""
            while True:
                found = manager.any_result()
                if found is None:
                    return
                job, result = found
                if isinstance(result, Failed):
                    _LOGGER.debug("Job %d failed: %s", job, result.info[:2])
                    if fail_fast:
                        manager.kill_all(wait=True)
                    else:
                        manager.await_all()
                    raise ChildError(*result.info)
                index, output = result.unwrap()
                assert outputs[index] is _MISSING, index
                outputs[index] = output

        try:
            default_prepare()
            for index, item in enumerate(inputs):
                drain()
                manager.fork(
                    _indexed, args=(fn, index, item), prepare=_collect_young
                )
            manager.await_all()
            drain()
        except ChildError:
            raise
        except BaseException:
            # No child may outlive an aborted map, e.g. on TransportFailure
            manager.kill_all(wait=True)
            raise

    assert all(output is not _MISSING for output in outputs), "Postcondition"
    return outputs
