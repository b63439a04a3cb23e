#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

DEFAULT_JOB_NAME = "billing-cycle"


class JobAlreadyRunning(RuntimeError):
    def __init__(self, payload: dict[str, Any]) -> None:
        super().__init__(payload.get("detail") or "job already running")
        self.payload = payload


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("BILLING_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1/billing"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/billing"


def _request_json(method: str, base_url: str, path: str, *, timeout: int) -> dict[str, Any]:
    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=b"" if method == "POST" else None,
        headers={"Accept": "application/json"},
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        if exc.code == 409:
            try:
                payload = json.loads(detail)
            except ValueError:
                payload = {"detail": detail}
            raise JobAlreadyRunning(payload) from exc
        raise RuntimeError(f"{method} {path} failed with {exc.code}: {detail}") from exc


def _run_in_process(command: str, job_name: str) -> dict[str, Any]:
    from billing_orchestrator.config import get_settings
    from billing_orchestrator.errors import JobAlreadyRunningError
    from billing_orchestrator.runtime import build_runtime

    runtime = build_runtime(get_settings())
    if command == "status":
        status = runtime.job_runner.status(job_name)
        last_run = status.last_run.__dict__ if status.last_run is not None else None
        return {"job_name": status.job_name, "running": status.running, "last_run": last_run}
    try:
        summary = runtime.job_runner.run(job_name)
    except JobAlreadyRunningError as exc:
        raise JobAlreadyRunning(
            {"detail": str(exc), "job_name": job_name, "running_run_id": exc.running_run_id}
        ) from exc
    return {"run": summary.run.__dict__, "items": [item.__dict__ for item in summary.items]}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trigger a billing job run or show its status.")
    parser.add_argument("command", choices=("trigger", "status"))
    parser.add_argument(
        "--job-name",
        default=os.getenv("BILLING_JOB_NAME", DEFAULT_JOB_NAME),
        help=f"Job to trigger or inspect (default: BILLING_JOB_NAME or {DEFAULT_JOB_NAME}).",
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Service base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1/billing)."
        ),
    )
    parser.add_argument(
        "--in-process",
        action="store_true",
        help="Run against the configured store directly instead of calling the service.",
    )
    parser.add_argument("--timeout", type=int, default=300, help="HTTP timeout in seconds (default: 300).")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    job_name = args.job_name.strip()
    if not job_name:
        raise SystemExit("--job-name must not be empty")

    try:
        if args.in_process:
            result = _run_in_process(args.command, job_name)
        elif args.command == "trigger":
            result = _request_json(
                "POST",
                _resolve_api_base_url(args.api_base_url),
                f"jobs/{job_name}/trigger",
                timeout=args.timeout,
            )
        else:
            result = _request_json(
                "GET",
                _resolve_api_base_url(args.api_base_url),
                f"jobs/{job_name}/status",
                timeout=args.timeout,
            )
    except JobAlreadyRunning as exc:
        print(json.dumps(exc.payload, indent=2, default=str))
        return 2

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
