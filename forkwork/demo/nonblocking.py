# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Non-blocking forks, polling, and killing."""
import time

from ..impl import Busy, Manager


if __name__ == "__main__":
    manager = Manager(maxprocs=1)

    # Fork work that takes a while
    job = manager.fork(fn=time.sleep, args=(60,))

    # Poll without blocking: result() returns None while running
    assert manager.result(job) is None

    # fork() with nonblocking=True raises Busy when at capacity
    try:
        manager.fork(fn=len, args=("x",), nonblocking=True)
        assert False, "Should have raised Busy"
    except Busy:
        pass

    # Kill the work instead of waiting a minute
    manager.kill(job, wait=True)
    assert manager.pending == ()

    # Now capacity is available
    job = manager.fork(fn=len, args=("x",), nonblocking=True)
    assert manager.await_result(job).unwrap() == 1

    print("nonblocking: OK")
