# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Basic Manager usage."""
from ..impl import Manager, Ok


def square(x: int) -> int:
    return x * x


if __name__ == "__main__":
    # Create a manager permitting 2 simultaneous children
    manager = Manager(maxprocs=2)

    # Fork work using the __call__ shorthand
    job_a = manager(square, 5)
    job_b = manager(square, 7)

    # Fork work using the explicit fork() method
    job_c = manager.fork(fn=len, args=("hello",))

    # Retrieve results (blocks until complete)
    assert manager.await_result(job_a) == Ok(25)
    assert manager.await_result(job_b).unwrap() == 49

    # Results can be kept for retrieval again
    assert manager.await_result(job_c, keep=True) == Ok(5)
    assert manager.result(job_c) == Ok(5)

    print("basic: OK")
