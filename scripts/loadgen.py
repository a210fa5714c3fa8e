import argparse
import time
from typing import Dict, List

import requests

DEFAULT_URL = "http://localhost:8000"
DEFAULT_QUEUE = "notification-dispatch"


def submit_jobs(base_url: str, queue: str, n: int, job_type: str, attempts: int) -> List[str]:
    ids: List[str] = []
    for i in range(n):
        r = requests.post(
            f"{base_url}/queues/{queue}/jobs",
            json={
                "type": job_type,
                "payload": {"seq": i},
                "owner": {"user_id": "loadgen"},
                "options": {"attempts": attempts},
            },
            timeout=10,
        )
        r.raise_for_status()
        ids.append(r.json()["job_id"])
    return ids


def poll(base_url: str, queue: str, job_ids: List[str], poll_s: float = 0.2) -> Dict[str, int]:
    done = set()
    counts = {"completed": 0, "failed": 0, "removed": 0}

    while len(done) < len(job_ids):
        for job_id in job_ids:
            if job_id in done:
                continue
            r = requests.get(f"{base_url}/queues/{queue}/jobs/{job_id}", timeout=10)
            if r.status_code == 404:
                # trimmed by retention
                done.add(job_id)
                counts["removed"] += 1
                continue
            if r.status_code != 200:
                continue
            state = r.json()["state"]
            if state in ("completed", "failed"):
                done.add(job_id)
                counts[state] += 1
        time.sleep(poll_s)

    return counts


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--url", default=DEFAULT_URL)
    ap.add_argument("--queue", default=DEFAULT_QUEUE)
    ap.add_argument("--n", type=int, default=300)
    ap.add_argument("--job-type", default="notification_dispatch")
    ap.add_argument("--attempts", type=int, default=3)
    args = ap.parse_args()

    t0 = time.time()
    job_ids = submit_jobs(args.url, args.queue, args.n, args.job_type, args.attempts)
    counts = poll(args.url, args.queue, job_ids)
    dt = max(1e-9, time.time() - t0)

    stats = requests.get(f"{args.url}/queues/{args.queue}/stats", timeout=10).json()

    print("=== LOADGEN RESULTS ===")
    print(f"jobs: {args.n}")
    print(f"wall_time_s: {dt:.2f}")
    print(f"throughput_jobs_per_s: {args.n / dt:.2f}")
    print(counts)
    print(stats)


if __name__ == "__main__":
    main()
