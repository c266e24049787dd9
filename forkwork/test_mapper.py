# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Tests for fork_map -- one child per item with ordered outputs."""
import os
import random
import tempfile
import time
import typing
import unittest

from .impl import ChildError, TransportFailure
from .mapper import fork_map


class ForkMapTest(unittest.TestCase):
    """Tests verifying fork_map ordering and failure semantics."""

    # ------------------------------------------------------------------
    # Basic mapping
    # ------------------------------------------------------------------

    def test_empty(self) -> None:
        """Mapping nothing forks nothing."""
        self.assertEqual([], fork_map(len, []))

    def test_squares(self) -> None:
        """Outputs match a serial map."""
        items = list(range(20))
        self.assertEqual(
            [x * x for x in items], fork_map(lambda x: x * x, items)
        )

    def test_iterables(self) -> None:
        """Any iterable, e.g. a generator, may be mapped."""
        outputs = fork_map(str.upper, (s for s in "abc"), maxprocs=2)
        self.assertEqual(["A", "B", "C"], outputs)

    def test_maxprocs_one(self) -> None:
        """A single process suffices."""
        self.assertEqual([0, 1, 2], fork_map(len, ["", "a", "bb"], maxprocs=1))

    # ------------------------------------------------------------------
    # Ordering independent of completion order
    # ------------------------------------------------------------------

    @staticmethod
    def _sleep_then_return(item: typing.Tuple[int, float]) -> int:
        index, delay = item
        time.sleep(delay)
        return index

    def test_order_reversed_completion(self) -> None:
        """Later items finishing first still land in order."""
        n = 8
        items = [(i, 0.05 * (n - i)) for i in range(n)]
        outputs = fork_map(self._sleep_then_return, items, maxprocs=n)
        self.assertEqual(list(range(n)), outputs)

    def test_order_random_completion(self) -> None:
        """Randomly varying durations still land in order."""
        rng = random.Random(1234)
        items = [(i, rng.uniform(0, 0.05)) for i in range(24)]
        outputs = fork_map(self._sleep_then_return, items, maxprocs=4)
        self.assertEqual(list(range(24)), outputs)

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    @staticmethod
    def _fail_on(bad: int, item: int) -> int:
        if item == bad:
            raise ChildError("bad", str(item))
        return item

    def test_designated_failure(self) -> None:
        """ChildError from one child is raised to the caller."""
        for fail_fast in (False, True):
            with self.subTest(fail_fast=fail_fast):
                with self.assertRaises(ChildError) as c:
                    fork_map(
                        lambda x: self._fail_on(3, x),
                        range(6),
                        maxprocs=2,
                        fail_fast=fail_fast,
                    )
                self.assertEqual(("bad", "3"), c.exception.info)

    def test_undesignated_failure(self) -> None:
        """Other Exceptions from a child arrive as described ChildErrors."""
        with self.assertRaises(ChildError) as c:
            fork_map(lambda x: 1 // x, [1, 0, 2], maxprocs=3)
        self.assertEqual("_", c.exception.info[0])
        self.assertIn("ZeroDivisionError", c.exception.info[1])

    def test_transport_failure(self) -> None:
        """Children dying abruptly abort the map with TransportFailure."""
        with self.assertRaises(TransportFailure):
            fork_map(lambda x: os._exit(x), [0, 1], maxprocs=1)

    @staticmethod
    def _mark_after(tmp: str, bad: int, delay: float, item: int) -> int:
        """Fail immediately on bad otherwise sleep then leave a marker."""
        if item == bad:
            raise ValueError(item)
        time.sleep(delay)
        with open(os.path.join(tmp, str(item)), "w"):
            pass
        return item

    def _abort(self, fail_fast: bool) -> typing.Tuple[int, float]:
        """Map 16 items failing on the 11th reporting markers and time."""
        with tempfile.TemporaryDirectory() as tmp:
            start = time.monotonic()
            with self.assertRaises(ChildError):
                fork_map(
                    lambda x: self._mark_after(tmp, 10, 1.0, x),
                    range(16),
                    maxprocs=4,
                    fail_fast=fail_fast,
                )
            elapsed = time.monotonic() - start
            markers = len(os.listdir(tmp))
        return markers, elapsed

    def test_abort(self) -> None:
        """Failures stop new forks with fail_fast also killing siblings."""
        slow_markers, slow_elapsed = self._abort(fail_fast=False)
        fast_markers, fast_elapsed = self._abort(fail_fast=True)

        # Either way, some but not all children completed their work
        for markers in (slow_markers, fast_markers):
            self.assertGreater(markers, 1)
            self.assertLess(markers, 15)

        # Killing siblings saves both their work and the caller's time
        self.assertLess(fast_markers, slow_markers)
        self.assertLess(fast_elapsed, slow_elapsed)

    def test_no_stragglers(self) -> None:
        """No child outlives a failed map."""
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ChildError):
                fork_map(
                    lambda x: self._mark_after(tmp, 0, 0.5, x),
                    range(4),
                    maxprocs=4,
                    fail_fast=True,
                )
            before = sorted(os.listdir(tmp))
            time.sleep(1.0)
            self.assertEqual(before, sorted(os.listdir(tmp)))
