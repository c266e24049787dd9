# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Implementation of the Manager and related classes."""
import abc
import collections.abc
import gc
import itertools
import logging
import os
import signal
import sys
import tempfile
import traceback
import types
import typing
import weakref

# Results cross the process boundary using the same pickler as multiprocessing.
from multiprocessing.reduction import ForkingPickler  # type: ignore

T = typing.TypeVar("T")

_LOGGER = logging.getLogger(__name__)


class Busy(Exception):
    """Reports that Manager.fork(..., nonblocking=True) found no free slot."""

    pass


class Idle(Exception):
    """Reports that Manager.await_any_result(...) has nothing to wait on."""

    pass


class NotFound(KeyError):
    """Reports a job handle unknown to, or already removed from, a Manager."""

    pass


class ChildError(Exception):
    """
    A failure reported by work running in a child process.

    Arbitrary exceptions cannot reliably cross a process boundary, so
    failures are flattened into a tuple of strings available as info:

     * When work raises ChildError(*strings), the master sees exactly
       those strings.  Put whatever the master needs to interpret into
       them, including serialized values.
     * When work raises any other Exception, the master sees either
       ("_", description) or ("_", description, traceback) depending
       upon traceback_enabled().

    Consequently, work raising ChildError for the master to interpret
    should not use "_" as its first string.
    """

    def __init__(self, *info: str) -> None:
        assert all(isinstance(i, str) for i in info), info
        super().__init__(*info)
        self.info = tuple(info)  # type: typing.Tuple[str, ...]


class TransportFailure(Exception):
    """
    Reports no valid result could be read for some job which has exited.

    Instances have a non-None __cause__ explaining what went wrong.  Likely
    causes are a child that segfaulted or was killed, a child that called
    os._exit(...) or sys.exit(...), an out-of-memory or out-of-disk system,
    or corrupted temporary files.  This is a severe error.  Do not attempt
    to recover.  Clean up and abort.
    """

    def __init__(self, job: int) -> None:
        super().__init__("No result could be read for job {}".format(job))
        self.job = job


class AbnormalExit(Exception):
    """Reports that a child exited without writing any result."""

    pass


class Result(abc.ABC, typing.Generic[T]):
    """The outcome of one job, either Ok or Failed."""

    __slots__ = ()

    @abc.abstractmethod
    def unwrap(self) -> T:
        """Raise ChildError for a failure otherwise return the value."""
        raise NotImplementedError()


class Ok(Result[T]):
    """Specialization of Result for when work returned normally."""

    __slots__ = ("value",)

    def __init__(self, value: T) -> None:
        self.value = value

    def unwrap(self) -> T:
        return self.value

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Ok) and self.value == other.value

    def __hash__(self) -> int:
        return hash((Ok, self.value))

    def __repr__(self) -> str:
        return "Ok({!r})".format(self.value)


class Failed(Result[typing.Any]):
    """Specialization of Result for when work raised an Exception."""

    __slots__ = ("info",)

    def __init__(self, info: typing.Iterable[str]) -> None:
        self.info = tuple(info)  # type: typing.Tuple[str, ...]

    def unwrap(self) -> typing.NoReturn:
        raise ChildError(*self.info)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Failed) and self.info == other.info

    def __hash__(self) -> int:
        return hash((Failed, self.info))

    def __repr__(self) -> str:
        return "Failed({!r})".format(self.info)


class _Undelivered:
    """Stands in for the Result of a job whose transport could not be read."""

    __slots__ = ("cause",)

    def __init__(self, cause: Exception) -> None:
        assert isinstance(cause, Exception), type(cause)
        self.cause = cause


# Either what a child wrote or why that could not be read
Outcome = typing.Union[Result, _Undelivered]


def _detect_ncores() -> typing.Optional[int]:
    """Count CPUs usable by this process or None when that is unknowable."""
    try:
        return len(os.sched_getaffinity(0))  # Not os.cpu_count()!
    except (AttributeError, OSError):
        # Platforms like macOS lack sched_getaffinity(...)
        return os.cpu_count()


_ncores = _detect_ncores() or 4


def ncores() -> int:
    """Number of processors believed available, the default maxprocs."""
    return _ncores


def set_ncores(n: int, *, detect: bool = False) -> None:
    """
    Override the number of processors believed available.

    When detect is True, processors are counted again with n used only
    when that detection fails.
    """
    global _ncores
    assert isinstance(n, int) and n >= 1, n
    _ncores = (_detect_ncores() or n) if detect else n


_traceback = False


def traceback_enabled() -> bool:
    """Do failures synthesized from arbitrary Exceptions carry tracebacks?"""
    return _traceback


def set_traceback(enabled: bool) -> None:
    """Enable or disable tracebacks within synthesized failures."""
    global _traceback
    _traceback = bool(enabled)


# Job handles deliberately differ from pids as the OS recycles pids.
_counter = itertools.count(1)


def next_id() -> int:
    """Issue a job handle never previously issued within this process."""
    return next(_counter)


def is_done(pid: int) -> bool:
    """
    Has the child process pid exited?  Never blocks.

    Exit statuses are deliberately ignored as results are only ever
    judged by what was (or was not) written to the transport.
    An already-reaped child, e.g. by os.wait(), is reported as done.
    """
    try:
        waited, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        return True
    assert waited == 0 or waited == pid, (waited, pid)
    return waited == pid


def _transport_dir() -> typing.Optional[str]:
    """Prefer memory-backed filesystems, when available, for transports."""
    for candidate in ("/dev/shm", "/run/shm"):
        if os.path.isdir(candidate) and os.access(candidate, os.W_OK):
            return candidate
    return None  # Meaning tempfile.gettempdir()


_TRANSPORT_DIR = _transport_dir()


def open_transport() -> int:
    """
    Create a temporary file, unlink it, and return an open descriptor.

    As the file has no name, only holders of the descriptor can reach it.
    Forked children inherit it to communicate their result to the master.
    """
    fd, path = tempfile.mkstemp(prefix="forkwork", dir=_TRANSPORT_DIR)
    try:
        os.unlink(path)
    except BaseException:
        os.close(fd)
        raise
    return fd


def write_result(fd: int, result: Result) -> None:
    """Write result to the transport fd then close fd.  Raises on failure."""
    # Serialize before writing so unpicklable results write nothing
    try:
        send = ForkingPickler.dumps(result)
        with os.fdopen(fd, "wb", closefd=False) as stream:
            stream.write(send)
            stream.flush()
    finally:
        os.close(fd)


def read_result(pid: int, fd: int) -> Result:
    """
    Read the result written by child pid to transport fd then close fd.

    Raises AbnormalExit whenever the child never wrote anything.
    Truncated or corrupt data raises whatever unpickling raises.
    """
    try:
        if os.fstat(fd).st_size == 0:
            raise AbnormalExit(
                "Worker {} (parent {}) exited abnormally".format(
                    pid, os.getpid()
                )
            )
        os.lseek(fd, 0, os.SEEK_SET)
        with os.fdopen(fd, "rb", closefd=False) as stream:
            recv = stream.read()
    finally:
        os.close(fd)

    # Deserialize after the descriptor is reclaimed
    result = ForkingPickler.loads(recv)
    if not isinstance(result, Result):
        raise TypeError("Transport held {}".format(type(result)))
    return result


def _describe(exception: Exception) -> typing.Tuple[str, ...]:
    """Flatten an arbitrary Exception into strings for a Failed result."""
    description = "".join(
        traceback.format_exception_only(type(exception), exception)
    ).strip()
    if not traceback_enabled():
        return ("_", description)
    return (
        "_",
        description,
        "".join(
            traceback.format_exception(
                type(exception), exception, exception.__traceback__
            )
        ),
    )


def _flush_std_streams() -> None:
    """Flush sys.stdout and sys.stderr, either of which may be unusable."""
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (AttributeError, ValueError):
            pass  # Stream is None or already closed


def default_prepare() -> None:
    """
    Actions taken immediately before forking each child.

    Flushing buffered output keeps children from repeating it.
    Collecting garbage keeps children from inheriting it.
    """
    _flush_std_streams()
    gc.collect()


def run_worker(
    fd: int,
    fn: typing.Callable[..., typing.Any],
    args: typing.Iterable,
    kwargs: typing.Mapping[str, typing.Any],
) -> typing.NoReturn:
    """Entry point for forked children to run fn(...) due to some fork(...)."""
    status = 1
    try:
        # Classify how the work concluded
        try:
            result = Ok(fn(*args, **kwargs))  # type: Result
        except ChildError as e:
            result = Failed(e.info)
        except Exception as e:
            result = Failed(_describe(e))

        # Report that outcome to the master
        try:
            write_result(fd, result)
            status = 0
        except Exception as e:
            print(
                "[PANIC] forkwork worker {} (parent {})"
                " failed to write result: {!r}".format(
                    os.getpid(), os.getppid(), e
                ),
                file=sys.stderr,
            )
            if traceback_enabled():
                traceback.print_exc(file=sys.stderr)
    finally:
        # Never return into the caller's code, whatever happened above.
        # Anything not an Exception, e.g. SystemExit, writes no result.
        _flush_std_streams()
        os._exit(status)


def _wait_any() -> None:
    """Block until some child, possibly not one of ours, exits."""
    try:
        os.wait()
    except ChildProcessError:
        # No children remain so every is_done(...) now reports True
        pass


def _terminate(pid: int) -> None:
    """Send SIGTERM to pid, ignoring failures as pid may have just exited."""
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError:
        pass


def _release(pending: typing.Dict[int, typing.Tuple[int, int]]) -> None:
    """Close every transport within pending then forget every entry."""
    while pending:
        _, (_, fd) = pending.popitem()
        os.close(fd)


class Manager(typing.Generic[T]):
    """
    Forks children to perform work and collects their results.

    Work is submitted with fork(...) which returns an integer job handle.
    At most maxprocs children run simultaneously.  Results are obtained
    by handle with result(...) or await_result(...), in completion order
    with any_result(...) or await_any_result(...), or discarded using
    ignore_results(...).  Running work may be terminated with kill(...).

    Managers are not thread-safe.  While any job is outstanding, the
    host program must neither fork nor wait on its own children, as
    Manager relies upon os.wait() which reaps whichever child exits.
    Managers cannot be copied or pickled.
    """

    __slots__ = (
        "_maxprocs",
        "_pending",
        "_results",
        "_killed",
        "_finalizer",
        "__weakref__",
    )

    def __init__(self, maxprocs: typing.Optional[int] = None) -> None:
        """
        Permit at most maxprocs children at any one time.

        When not provided, maxprocs defaults to ncores().
        """
        if maxprocs is None:
            maxprocs = ncores()
        if not isinstance(maxprocs, int) or maxprocs < 1:
            raise ValueError("maxprocs must be a positive int")
        self._maxprocs = maxprocs

        # Maps jobs to (pid, transport) while running
        self._pending = {}  # type: typing.Dict[int, typing.Tuple[int, int]]

        # Maps jobs to their outcome once their process has exited
        self._results = {}  # type: typing.Dict[int, Outcome]

        # Killed pids which may remain zombies until reaped
        self._killed = set()  # type: typing.Set[int]

        # Closes transports should a Manager vanish with work outstanding
        self._finalizer = weakref.finalize(self, _release, self._pending)

    def __copy__(self) -> typing.NoReturn:
        """Disallow copying as duplicates cannot sensibly share resources."""
        # In particular, which copy would read from the transports?
        raise NotImplementedError("Managers cannot be copied.")

    def __deepcopy__(self, _: typing.Any) -> typing.NoReturn:
        """Disallow copying as duplicates cannot sensibly share resources."""
        raise NotImplementedError("Managers cannot be copied.")

    def __reduce__(self) -> typing.NoReturn:
        """Disallow pickling as duplicates cannot sensibly share resources."""
        # In particular, because pickles create copies.
        raise NotImplementedError("Managers cannot be pickled.")

    def __enter__(self) -> "Manager[T]":
        return self

    def __exit__(self, *exc_info: typing.Any) -> None:
        self.close()

    def close(self) -> None:
        """
        Release the transports of any outstanding jobs.

        Outstanding children are neither killed nor awaited and their
        results are lost.  Prefer await_all() or kill_all() beforehand.
        """
        if self._pending:
            _LOGGER.warning(
                "Closing with %d job(s) outstanding", len(self._pending)
            )
        _release(self._pending)

    @property
    def maxprocs(self) -> int:
        """Maximum number of simultaneously running children."""
        return self._maxprocs

    @property
    def pending(self) -> typing.Tuple[int, ...]:
        """Jobs not yet known to have completed."""
        return tuple(self._pending)

    @property
    def completed(self) -> typing.Tuple[int, ...]:
        """Jobs whose results await retrieval."""
        return tuple(self._results)

    def __call__(self, fn: typing.Callable[..., T], *args, **kwargs) -> int:
        """Fork a child running fn(*args, **kwargs).

        Shorthand for calling fork(fn=fn, args=*args, kwargs=**kwargs),
        with all fork semantics per that method's default arguments.
        """
        return self.fork(fn=fn, args=args, kwargs=kwargs)

    def fork(
        self,
        fn: typing.Callable[..., T],
        *,
        args: typing.Iterable = (),
        kwargs: typing.Mapping[str, typing.Any] = types.MappingProxyType({}),
        prepare: typing.Callable[[], None] = default_prepare,
        nonblocking: bool = False
    ) -> int:
        """Fork a child running fn(*args, **kwargs) returning a job handle.

        When maxprocs children are outstanding, blocks until one exits
        unless nonblocking is True in which case Busy is raised.
        Function prepare() is called in the master just before forking.
        """
        assert fn is not None
        assert isinstance(args, collections.abc.Iterable), type(args)
        assert isinstance(kwargs, collections.abc.Mapping), type(kwargs)
        assert isinstance(nonblocking, bool), type(nonblocking)
        assert prepare is not None

        # Wait, if permitted, until fewer than maxprocs remain outstanding
        self.reconcile()
        while len(self._pending) >= self._maxprocs:
            if nonblocking:
                raise Busy()
            _wait_any()
            self.reconcile()

        # Grab resources for processing the work
        job = next_id()
        fd = open_transport()
        try:
            prepare()
            pid = os.fork()
        except BaseException:
            os.close(fd)
            raise

        if pid == 0:
            # Child must neither act upon nor hold the master's bookkeeping
            _release(self._pending)
            self._results.clear()
            self._killed.clear()
            run_worker(fd, fn, args, kwargs)

        self._pending[job] = (pid, fd)
        _LOGGER.debug("Forked job %d as pid %d", job, pid)
        return job

    def reconcile(self) -> None:
        """
        Collect results from every child which has exited.  Never blocks.

        Invoked automatically by every other method.  Exposed for when
        eagerly reclaiming resources is desired.
        """
        # Copy of items() required to prevent concurrent modification
        for job, (pid, fd) in tuple(self._pending.items()):
            if not is_done(pid):
                continue
            del self._pending[job]
            try:
                self._results[job] = read_result(pid, fd)
                _LOGGER.debug("Collected job %d from pid %d", job, pid)
            except Exception as e:
                self._results[job] = _Undelivered(e)
                _LOGGER.warning(
                    "No result for job %d from pid %d: %r", job, pid, e
                )

        # Reap killed children that nobody awaited
        for pid in tuple(self._killed):
            if is_done(pid):
                self._killed.discard(pid)

    def _deliver(self, job: int, keep: bool) -> Result:
        """Retrieve job's completed outcome raising on TransportFailure."""
        outcome = self._results[job] if keep else self._results.pop(job)
        if isinstance(outcome, _Undelivered):
            raise TransportFailure(job) from outcome.cause
        return outcome

    def result(
        self, job: int, *, keep: bool = False
    ) -> typing.Optional[Result]:
        """
        Non-blocking query for the result of job.

        Returns None, without side effects, when job is still running.
        Unless keep is True, a returned result is forgotten so that
        subsequent queries for job raise NotFound.
        Raises NotFound if job is unknown and TransportFailure if
        no result could be read after job exited.
        """
        self.reconcile()
        if job in self._results:
            return self._deliver(job, keep)
        if job in self._pending:
            return None
        raise NotFound(job)

    def any_result(
        self, *, keep: bool = False
    ) -> typing.Optional[typing.Tuple[int, Result]]:
        """
        Non-blocking query for the result of any completed job.

        Returns None when no results are available.  With keep True,
        repeated calls may return the same result.
        Raises TransportFailure per result(...).
        """
        self.reconcile()
        job = next(iter(self._results), None)
        if job is None:
            return None
        return job, self._deliver(job, keep)

    def await_result(self, job: int, *, keep: bool = False) -> Result:
        """Obtain the result of job, blocking until it is available."""
        while True:
            result = self.result(job, keep=keep)
            if result is not None:
                return result
            _wait_any()

    def await_any_result(
        self, *, keep: bool = False
    ) -> typing.Tuple[int, Result]:
        """
        Obtain the result of any job, blocking until one is available.

        Raises Idle when no results are available and no jobs are pending.
        """
        while True:
            found = self.any_result(keep=keep)
            if found is not None:
                return found
            if not self._pending:
                raise Idle()
            _wait_any()

    def await_all(self) -> None:
        """Block until no jobs are pending.  Results remain retrievable."""
        self.reconcile()
        while self._pending:
            _wait_any()
            self.reconcile()

    def ignore_results(self) -> None:
        """
        Forget every currently available result.  Never blocks.

        For work run only for side effects.  Afterwards, raises ChildError
        (or TransportFailure) should any forgotten result have been a
        failure.  When several were, which one is raised is unspecified.
        Jobs still running are unaffected.
        """
        self.reconcile()
        failures = [
            (job, outcome)
            for job, outcome in self._results.items()
            if not isinstance(outcome, Ok)
        ]
        self._results.clear()
        for job, outcome in failures:
            if isinstance(outcome, _Undelivered):
                raise TransportFailure(job) from outcome.cause
            outcome.unwrap()

    def _await_exit(self, pid: int) -> None:
        """Block until pid exits without consulting any transport."""
        while not is_done(pid):
            _wait_any()
        self._killed.discard(pid)

    def kill(self, job: int, *, wait: bool = False) -> None:
        """
        Kill job, forgetting it entirely.

        A still-running child is sent SIGTERM.  When wait is True, blocks
        until that child exits.  Killing a completed job forgets its result.
        Raises NotFound if job is unknown.
        """
        self.reconcile()
        if job in self._pending:
            pid, fd = self._pending.pop(job)
            os.close(fd)
            if not is_done(pid):
                _LOGGER.debug("Terminating job %d at pid %d", job, pid)
                self._killed.add(pid)
                _terminate(pid)
                if wait:
                    self._await_exit(pid)
        elif job in self._results:
            del self._results[job]
        else:
            raise NotFound(job)

    def kill_all(self, *, wait: bool = False) -> None:
        """
        Kill every job and forget every result, resetting this Manager.

        When wait is True, blocks until every killed child exits.
        """
        self.reconcile()
        pids = [pid for pid, _ in self._pending.values()]
        for pid in pids:
            if not is_done(pid):
                self._killed.add(pid)
                _terminate(pid)
        _LOGGER.debug("Terminating %d job(s)", len(pids))
        if wait:
            for pid in pids:
                self._await_exit(pid)
        _release(self._pending)
        self._results.clear()
