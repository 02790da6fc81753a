"""
Print the distribution state of the matching service.

Shows the fairness index, per-deliverer load against the configured capacity,
today's decline rate and any sender request holding more than one active offer.

Usage:
    python inspect_distribution.py
    python inspect_distribution.py --deliverer 12
    python inspect_distribution.py --reset-index
"""
import argparse
import json
import sys

from capacity import one_to_one_violations
from db import get_session
from matching import Matcher


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Inspect deliverer capacity and round-robin state")
    parser.add_argument("--deliverer", type=int, help="Show capacity details for one deliverer")
    parser.add_argument("--reset-index", action="store_true", help="Reset the round-robin index before reporting")
    args = parser.parse_args(argv)

    matcher = Matcher()
    if args.reset_index:
        matcher.reset_distribution()
        print("Round-robin index reset")

    print("Distribution state:")
    print(json.dumps(matcher.distribution_state(), indent=2))

    if args.deliverer is not None:
        print(f"Deliverer {args.deliverer}:")
        print(json.dumps(matcher.capacity_info(args.deliverer), indent=2))

    stats = matcher.system_stats()
    loads = stats.pop("loads")
    print("System capacity:")
    print(json.dumps(stats, indent=2))
    for deliverer_id, load in sorted(loads.items()):
        print(f"  deliverer {deliverer_id}: {load} active")

    with get_session() as session:
        violations = one_to_one_violations(session)
    if violations:
        print(f"Sender requests with several active offers: {violations}")
        return 1
    print("No sender request holds more than one active offer")
    return 0


if __name__ == "__main__":
    sys.exit(main())
