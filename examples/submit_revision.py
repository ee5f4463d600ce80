"""Example: hand a freshly built revision to the controller from CI.

Submits a RevisionSubmitted event, follows the rollout until it is Healthy
or Aborted and exits non-zero on rollback so the pipeline fails.

Usage:
    python examples/submit_revision.py vote v2.4.1 --controller http://canary-controller:8000
"""
import argparse
import sys
import time
from typing import Any, Dict

import httpx
from loguru import logger

TERMINAL = {"Healthy", "Aborted"}

DEFAULT_STEPS = [
    {"setWeight": 10},
    {"analysis": {"templateName": "smoke", "args": {"namespace": "shop"}}},
    {"setWeight": 25},
    {"analysis": {"templateName": "success-rate"}},
    {"setWeight": 50},
    {"pause": {"duration": 300}},
    {"analysis": {"templateName": "success-rate"}},
    {"setWeight": 100},
]


def submit(client: httpx.Client, application: str, revision: str, source: str) -> Dict[str, Any]:
    response = client.post(
        "/api/v1/rollouts",
        json={"application": application, "revision": revision, "source": source, "steps": DEFAULT_STEPS},
    )
    if response.status_code == 422:
        logger.error(f"Rollout rejected: {response.json()}")
        sys.exit(2)
    response.raise_for_status()
    return response.json()


def follow(client: httpx.Client, rollout_id: str, poll_seconds: float) -> Dict[str, Any]:
    """Poll the rollout, logging every status change, until it is terminal."""
    last = None
    while True:
        rollout = client.get(f"/api/v1/rollouts/{rollout_id}").raise_for_status().json()
        state = (rollout["status"], rollout["weight"], rollout["current_step_index"])
        if state != last:
            logger.info(f"{rollout['status']:<16} weight={rollout['weight']:>3}% step={rollout['current_step_index']}")
            last = state
        if rollout["status"] in TERMINAL:
            return rollout
        time.sleep(poll_seconds)


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("application")
    parser.add_argument("revision")
    parser.add_argument("--controller", default="http://localhost:8000")
    parser.add_argument("--source", default="ci")
    parser.add_argument("--poll-seconds", type=float, default=5.0)
    args = parser.parse_args()

    with httpx.Client(base_url=args.controller, timeout=10.0) as client:
        rollout = submit(client, args.application, args.revision, args.source)
        logger.info(f"🚀 Rollout {rollout['id']} started for {args.application} {args.revision}")
        rollout = follow(client, rollout["id"], args.poll_seconds)

    if rollout["status"] == "Healthy":
        logger.info("✅ Revision fully promoted")
        return 0

    report = rollout["failure_report"] or {}
    logger.error(
        f"❌ Rolled back: {report.get('reason')} "
        f"(metric={report.get('metric')}, provider={report.get('provider')}, reverted={report.get('reverted')})"
    )
    return 1


if __name__ == "__main__":
    sys.exit(main())
