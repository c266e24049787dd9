# Copyright (C) 2019-2026 Rhys Ulerich <rhys.ulerich@gmail.com>
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at http://mozilla.org/MPL/2.0/.
"""Demo: Estimate pi by Monte Carlo sampling across children."""
import logging
import random
import sys
import time
import typing

from ..mapper import fork_map


def sample(k: int) -> typing.Tuple[int, int]:
    """Count how many of k points within the unit square land in the circle."""
    rng = random.Random()  # Seeded afresh within each child
    inside = 0
    for _ in range(k):
        x, y = rng.random(), rng.random()
        if x * x + y * y <= 1.0:
            inside += 1
    return inside, k - inside


def estimate_pi(n: int, k: int) -> float:
    """Estimate pi from n children each sampling k points."""
    counts = fork_map(sample, [k] * n)
    inside = sum(i for i, _ in counts)
    outside = sum(o for _, o in counts)
    return 4.0 * inside / (inside + outside)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    n = int(sys.argv[1]) if len(sys.argv) > 1 else 16
    k = int(sys.argv[2]) if len(sys.argv) > 2 else 250000
    start = time.monotonic()
    pi = estimate_pi(n, k)
    logging.info(
        "Based on %.1e samples, pi ~= %f in %.2f seconds",
        n * k,
        pi,
        time.monotonic() - start,
    )
