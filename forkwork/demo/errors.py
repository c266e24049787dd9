# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Failure handling for children."""
import os

from ..impl import ChildError, Failed, Manager, TransportFailure


def raise_designated(message: str) -> None:
    raise ChildError("bad-input", message)


def raise_other(message: str) -> None:
    raise ValueError(message)


def exit_abruptly() -> None:
    os._exit(1)


if __name__ == "__main__":
    manager = Manager(maxprocs=2)

    # ChildError strings arrive unchanged
    job = manager(raise_designated, "oops")
    assert manager.await_result(job) == Failed(("bad-input", "oops"))

    # Other exceptions are described by strings starting with "_"
    job = manager(raise_other, "whoops")
    result = manager.await_result(job)
    assert isinstance(result, Failed)
    assert result.info[0] == "_" and "whoops" in result.info[1]

    # Unwrapping a failure raises ChildError
    try:
        result.unwrap()
        assert False, "Should have raised ChildError"
    except ChildError as e:
        assert e.info == result.info

    # Children exiting without a result cause TransportFailure
    job = manager(exit_abruptly)
    try:
        manager.await_result(job)
        assert False, "Should have raised TransportFailure"
    except TransportFailure as e:
        assert e.job == job and e.__cause__ is not None

    print("errors: OK")
