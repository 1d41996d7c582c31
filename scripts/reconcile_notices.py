import argparse
import json
import logging
import os
import time

import requests


BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:8000")


def trigger_reconcile(start: int, end: int | None, mode: str) -> str | None:
    res = requests.post(
        f"{BACKEND_URL}/api/v1/notices/reconcile",
        json={"start": start, "end": end, "mode": mode},
        timeout=20,
    )
    if res.status_code != 202:
        return None
    return res.json().get("task_id")


def wait_task(task_id: str, timeout_sec: int = 3600, poll_sec: float = 5.0) -> dict:
    started = time.perf_counter()
    while time.perf_counter() - started < timeout_sec:
        res = requests.get(f"{BACKEND_URL}/api/v1/tasks/{task_id}", timeout=20)
        if res.status_code == 200:
            payload = res.json()
            if payload.get("status") in {"SUCCESS", "FAILURE", "REVOKED"}:
                return payload
        time.sleep(poll_sec)
    return {"task_id": task_id, "status": "TIMEOUT"}


def run_local(start: int, end: int | None, mode: str, batch_size: int) -> dict:
    from blockserved.core.context import build_context
    from blockserved.db.session import session_scope
    from blockserved.services.reconciliation import reconcile
    from blockserved.services.records import RecordStore

    context = build_context()
    with session_scope() as db:
        report = reconcile(context, RecordStore(db), start, end, mode=mode, batch_size=batch_size)
    return report.as_dict()


def main() -> None:
    parser = argparse.ArgumentParser(description="Repair service records from on-chain notice ownership.")
    parser.add_argument("--start", type=int, default=1)
    parser.add_argument("--end", type=int, default=None)
    parser.add_argument("--mode", choices=["ownership", "events"], default="ownership")
    parser.add_argument("--batch-size", type=int, default=50)
    parser.add_argument("--via-api", action="store_true", help="Queue the job on the backend instead of running here.")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.end is not None and args.end < args.start:
        raise SystemExit("--end must be >= --start")

    if args.via_api:
        task_id = trigger_reconcile(args.start, args.end, args.mode)
        if task_id is None:
            raise SystemExit("Could not queue reconciliation task")
        print(json.dumps(wait_task(task_id), indent=2, ensure_ascii=False, default=str))
        return

    report = run_local(args.start, args.end, args.mode, args.batch_size)
    print(json.dumps(report, indent=2, ensure_ascii=False, default=str))
    if report["errors"]:
        print(f"{len(report['errors'])} token reads or batches failed; affected ids: {report['skipped']}")


if __name__ == "__main__":
    main()
