#!/usr/bin/env python3
"""Print how often each prize ends up under the pointer over N simulated spins."""

import argparse
import random

from wheel import DEFAULT_PRIZES, load_prizes, simulate_spins


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("-n", "--count", type=int, default=1000)
    parser.add_argument("--prizes", help="JSON prize table (defaults to the built-in wheel)")
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    prizes = load_prizes(args.prizes) if args.prizes else DEFAULT_PRIZES
    freq = simulate_spins(prizes, args.count, random.Random(args.seed))
    total_weight = sum(p.weight for p in prizes)

    for prize, hits in zip(prizes, freq):
        expected = prize.weight / total_weight
        print(f"{prize.label:>12}  {hits:>7}  {hits / args.count:7.2%}  (expected {expected:7.2%})")


if __name__ == "__main__":
    main()
