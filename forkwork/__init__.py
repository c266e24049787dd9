# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""
Fork child processes to perform work on multiple cores.

Forkwork suits workloads that a master process can partition into
independent jobs, each of which takes a while to execute (several seconds
or more), and whose results are modest enough to be pickled back to the
master.  Compared to multiprocessing.Pool or concurrent.futures:

 * First, each job runs in its own freshly forked child so work need not
   be picklable, only its result.  Lambdas and closures are fine.
 * Second, no background threads are spun up nor are any pipes kept open.
   Results travel through unlinked temporary files instead.
 * Third, jobs are identified by integer handles rather than pids
   because pids are recycled by the OS.
 * Fourth, children which die unexpectedly are detected and reported.
 * Lastly, outstanding jobs may be killed at any time.

For one child per item, with results in order, use fork_map(...).
For finer control, use a Manager directly.

Requires os.fork() and therefore a POSIX platform.
"""
from .impl import (
    AbnormalExit,
    Busy,
    ChildError,
    Failed,
    Idle,
    Manager,
    NotFound,
    Ok,
    Result,
    TransportFailure,
    default_prepare,
    ncores,
    set_ncores,
    set_traceback,
    traceback_enabled,
)
from .mapper import fork_map

__all__ = [
    "AbnormalExit",
    "Busy",
    "ChildError",
    "Failed",
    "Idle",
    "Manager",
    "NotFound",
    "Ok",
    "Result",
    "TransportFailure",
    "default_prepare",
    "fork_map",
    "ncores",
    "set_ncores",
    "set_traceback",
    "traceback_enabled",
]
