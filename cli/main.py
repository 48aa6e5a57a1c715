#!/usr/bin/env python3
"""
vforge CLI - submit and inspect video processing jobs over the HTTP API.

Identity comes from the environment:
    VFORGE_API_URL           API base URL (default http://localhost:9100)
    VFORGE_USER_ID           sent as X-User-Id
    VFORGE_USER_ROLE         sent as X-User-Role ("admin" for admin commands)
    VFORGE_ADMIN_API_SECRET  sent as X-Admin-Secret
"""

import argparse
import json
import os
import sys
from functools import wraps

import httpx
from rich.console import Console
from rich.table import Table

from api.errors import truncate_error
from config import API_PORT, ERROR_DETAIL_MAX_LENGTH, ERROR_SUMMARY_MAX_LENGTH

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("VFORGE_API_TIMEOUT", "30"))

_default_api_url = f"http://localhost:{API_PORT}"
API_URL = os.getenv("VFORGE_API_URL", _default_api_url).rstrip("/")
API_BASE = API_URL + "/api"

console = Console()


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def get_headers() -> dict:
    """Identity headers from the environment, read on every call."""
    headers = {}
    user_id = os.getenv("VFORGE_USER_ID", "")
    if user_id:
        headers["X-User-Id"] = user_id
    role = os.getenv("VFORGE_USER_ROLE", "")
    if role:
        headers["X-User-Role"] = role
    admin_secret = os.getenv("VFORGE_ADMIN_API_SECRET", "")
    if admin_secret:
        headers["X-Admin-Secret"] = admin_secret
    return headers


def safe_json_response(response, default_error="Request failed"):
    """
    Parse a JSON response, turning API errors into CLIError.

    Args:
        response: httpx.Response object
        default_error: Message used when the error response has no body

    Raises:
        CLIError: Non-2xx status, or a body that is not JSON
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, AttributeError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        if response.status_code == 401:
            detail = f"{detail} (set VFORGE_USER_ID, and VFORGE_ADMIN_API_SECRET for admin commands)"
        raise CLIError(f"API error ({response.status_code}): {detail}")

    if response.status_code == 204:
        return None
    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def api_command(func):
    """Exit 1 with a readable message on connection, timeout and API errors."""

    @wraps(func)
    def wrapper(args):
        try:
            return func(args)
        except httpx.ConnectError:
            print(f"Error: Could not connect to API at {API_URL}")
            sys.exit(1)
        except httpx.TimeoutException:
            print(f"Error: Request timed out while connecting to {API_URL}")
            sys.exit(1)
        except CLIError as e:
            print(f"Error: {e}")
            sys.exit(1)

    return wrapper


def _short_time(value) -> str:
    return value[:19].replace("T", " ") if value else "-"


def _print_job(job: dict) -> None:
    console.print(f"[bold]Job {job['id']}[/bold]  {job['status']}  {job['progress']}%")
    console.print(f"  Source:   {job['input_source']}")
    console.print(f"  Formats:  {', '.join(job['requested_formats'])}")
    console.print(f"  Created:  {_short_time(job['created_at'])}")
    console.print(f"  Updated:  {_short_time(job['updated_at'])}")
    if job.get("error_text"):
        console.print(f"  Error:    [red]{job['error_text']}[/red]")


def _jobs_table(jobs: list, title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", justify="right")
    table.add_column("Owner")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Formats")
    table.add_column("Assets", justify="right")
    table.add_column("Updated")
    for job in jobs:
        table.add_row(
            str(job["id"]),
            job["owner_id"],
            job["status"],
            f"{job['progress']}%",
            ",".join(job["requested_formats"]),
            str(job.get("asset_count") or 0),
            _short_time(job["updated_at"]),
        )
    return table


# =============================================================================
# Job commands
# =============================================================================


@api_command
def cmd_submit(args):
    """Submit a new job."""
    response = httpx.post(
        f"{API_BASE}/jobs",
        json={"input_source": args.source, "requested_formats": args.formats},
        headers=get_headers(),
        timeout=DEFAULT_API_TIMEOUT,
    )
    job = safe_json_response(response)
    print(f"Job {job['id']} submitted ({', '.join(job['requested_formats'])})")


@api_command
def cmd_status(args):
    """Show one job."""
    response = httpx.get(f"{API_BASE}/jobs/{args.job_id}", headers=get_headers(), timeout=DEFAULT_API_TIMEOUT)
    _print_job(safe_json_response(response))


@api_command
def cmd_list(args):
    """List jobs (your own, or everyone's with --all as admin)."""
    params = {"page": args.page, "limit": args.limit}
    if args.status:
        params["status"] = args.status
    if args.sort_by:
        params["sort_by"] = args.sort_by
    if args.sort_order:
        params["sort_order"] = args.sort_order

    path = "/admin/jobs" if args.all else "/jobs"
    response = httpx.get(f"{API_BASE}{path}", params=params, headers=get_headers(), timeout=DEFAULT_API_TIMEOUT)
    result = safe_json_response(response)

    jobs = result.get("jobs", [])
    if not jobs:
        print("No jobs found.")
        return
    pagination = result["pagination"]
    console.print(
        _jobs_table(jobs, f"Jobs (page {pagination['page']}/{max(1, pagination['totalPages'])}, {pagination['total']} total)")
    )


@api_command
def cmd_cancel(args):
    response = httpx.post(f"{API_BASE}/jobs/{args.job_id}/cancel", headers=get_headers(), timeout=DEFAULT_API_TIMEOUT)
    job = safe_json_response(response)
    print(f"Job {job['id']} cancelled.")


@api_command
def cmd_delete(args):
    path = f"/admin/jobs/{args.job_id}" if args.admin else f"/jobs/{args.job_id}"
    response = httpx.delete(f"{API_BASE}{path}", headers=get_headers(), timeout=DEFAULT_API_TIMEOUT)
    safe_json_response(response)
    print(f"Job {args.job_id} deleted.")


@api_command
def cmd_assets(args):
    response = httpx.get(f"{API_BASE}/jobs/{args.job_id}/assets", headers=get_headers(), timeout=DEFAULT_API_TIMEOUT)
    assets = safe_json_response(response)
    if not assets:
        print("No assets.")
        return

    table = Table(title=f"Assets of job {args.job_id}")
    table.add_column("ID", justify="right")
    table.add_column("Type")
    table.add_column("Content type")
    table.add_column("Size", justify="right")
    table.add_column("Key")
    for asset in assets:
        size = asset.get("size_bytes")
        table.add_row(
            str(asset["id"]),
            asset["asset_type"],
            asset["content_type"],
            f"{size:,}" if size is not None else "-",
            asset["storage_key"],
        )
    console.print(table)


@api_command
def cmd_download_url(args):
    response = httpx.get(
        f"{API_BASE}/jobs/{args.job_id}/assets/{args.asset_id}/download",
        headers=get_headers(),
        timeout=DEFAULT_API_TIMEOUT,
    )
    result = safe_json_response(response)
    print(result["url"])
    print(f"(valid for {result['expires_in']}s, {result['content_type']})", file=sys.stderr)


@api_command
def cmd_stats(args):
    response = httpx.get(f"{API_BASE}/jobs/stats", headers=get_headers(), timeout=DEFAULT_API_TIMEOUT)
    stats = safe_json_response(response)

    table = Table(title="Your jobs by status")
    table.add_column("Status")
    table.add_column("Count", justify="right")
    table.add_column("Avg progress", justify="right")
    for status, values in stats.items():
        table.add_row(status, str(values["count"]), f"{values['avg_progress']}%")
    console.print(table)


@api_command
def cmd_watch(args):
    """Follow the job event stream until interrupted."""
    try:
        with httpx.stream(
            "GET",
            f"{API_BASE}/jobs/events",
            headers={**get_headers(), "Accept": "text/event-stream"},
            timeout=httpx.Timeout(DEFAULT_API_TIMEOUT, read=None),
        ) as response:
            if not response.is_success:
                response.read()
                safe_json_response(response)

            event = None
            for line in response.iter_lines():
                if line.startswith("event:"):
                    event = line[len("event:"):].strip()
                elif line.startswith("data:") and event:
                    _print_event(event, line[len("data:"):].strip())
                elif not line:
                    event = None
    except KeyboardInterrupt:
        print()


def _print_event(event: str, data: str) -> None:
    try:
        payload = json.loads(data)
    except ValueError:
        return
    if event == "job_update":
        console.print(f"job {payload['jobId']:>6}  {payload['status']:<12} {payload['progress']:>3}%")
    elif event == "system_stats":
        console.print(
            f"[dim]scheduler: {payload['activeJobs']}/{payload['maxConcurrentJobs']} active, "
            f"{payload['queuedJobs']} queued[/dim]"
        )


# =============================================================================
# Admin commands
# =============================================================================


@api_command
def cmd_admin(args):
    headers = get_headers()

    if args.admin_command == "status":
        response = httpx.get(f"{API_BASE}/admin/processing-status", headers=headers, timeout=DEFAULT_API_TIMEOUT)
        result = safe_json_response(response)

        queue = result["queue"]
        console.print(
            f"[bold]Scheduler[/bold]: {queue['activeJobs']}/{queue['maxConcurrentJobs']} active, "
            f"{queue['queuedJobs']} queued"
        )
        health = result["systemHealth"]
        console.print(
            f"[bold]Health[/bold]: database {health.get('database')}, redis {health.get('redis')}, "
            f"cpu {health.get('cpu_percent')}%, memory {health.get('memory_percent')}%"
        )

        counts = Table(title="Jobs by status")
        counts.add_column("Status")
        counts.add_column("Count", justify="right")
        for status, count in result["jobCounts"].items():
            counts.add_row(status, str(count))
        console.print(counts)

        if result["activeJobs"]:
            active = Table(title="Active jobs")
            active.add_column("ID", justify="right")
            active.add_column("Owner")
            active.add_column("Status")
            active.add_column("Progress", justify="right")
            for job in result["activeJobs"]:
                active.add_row(str(job["id"]), job["owner_id"], job["status"], f"{job['progress']}%")
            console.print(active)

    elif args.admin_command == "restart-failed":
        response = httpx.post(f"{API_BASE}/admin/restart-failed", headers=headers, timeout=DEFAULT_API_TIMEOUT)
        result = safe_json_response(response)
        print(f"Restarted {result['restartedCount']} failed job(s).")

    elif args.admin_command == "cleanup":
        response = httpx.post(
            f"{API_BASE}/admin/cleanup",
            params={"older_than_days": args.days},
            headers=headers,
            timeout=DEFAULT_API_TIMEOUT,
        )
        result = safe_json_response(response)
        print(f"Deleted {result['deletedCount']} completed job(s) older than {result['olderThanDays']} days.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vforge", description="vforge CLI - video processing jobs")
    subparsers = parser.add_subparsers(dest="command", required=True)

    submit_parser = subparsers.add_parser("submit", help="Submit a processing job")
    submit_parser.add_argument("source", help="Input URL, blob://key or local path")
    submit_parser.add_argument(
        "-f", "--format", dest="formats", action="append", default=None,
        help="Output format (repeatable, e.g. -f 720p -f 480p; default 720p)",
    )
    submit_parser.set_defaults(func=cmd_submit)

    status_parser = subparsers.add_parser("status", help="Show a job")
    status_parser.add_argument("job_id", type=positive_int)
    status_parser.set_defaults(func=cmd_status)

    list_parser = subparsers.add_parser("list", help="List jobs")
    list_parser.add_argument("-s", "--status", help="Filter by status (e.g. PROCESSING)")
    list_parser.add_argument("--page", type=positive_int, default=1)
    list_parser.add_argument("--limit", type=positive_int, default=10)
    list_parser.add_argument("--sort-by", choices=["id", "created_at", "updated_at", "status", "progress"])
    list_parser.add_argument("--sort-order", choices=["asc", "desc"])
    list_parser.add_argument("--all", action="store_true", help="All owners (admin)")
    list_parser.set_defaults(func=cmd_list)

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a pending or running job")
    cancel_parser.add_argument("job_id", type=positive_int)
    cancel_parser.set_defaults(func=cmd_cancel)

    del_parser = subparsers.add_parser("delete", help="Delete a job and its assets")
    del_parser.add_argument("job_id", type=positive_int)
    del_parser.add_argument("--admin", action="store_true", help="Delete any owner's job (admin)")
    del_parser.set_defaults(func=cmd_delete)

    assets_parser = subparsers.add_parser("assets", help="List a job's assets")
    assets_parser.add_argument("job_id", type=positive_int)
    assets_parser.set_defaults(func=cmd_assets)

    url_parser = subparsers.add_parser("download-url", help="Print a presigned asset URL")
    url_parser.add_argument("job_id", type=positive_int)
    url_parser.add_argument("asset_id", type=positive_int)
    url_parser.set_defaults(func=cmd_download_url)

    stats_parser = subparsers.add_parser("stats", help="Your job counts by status")
    stats_parser.set_defaults(func=cmd_stats)

    watch_parser = subparsers.add_parser("watch", help="Follow live job updates")
    watch_parser.set_defaults(func=cmd_watch)

    admin_parser = subparsers.add_parser("admin", help="Admin operations")
    admin_subparsers = admin_parser.add_subparsers(dest="admin_command", required=True)
    admin_subparsers.add_parser("status", help="System-wide processing status")
    admin_subparsers.add_parser("restart-failed", help="Requeue every FAILED job")
    cleanup_parser = admin_subparsers.add_parser("cleanup", help="Delete old COMPLETED jobs")
    cleanup_parser.add_argument("--days", type=positive_int, default=30, help="Age threshold in days (default: 30)")
    admin_parser.set_defaults(func=cmd_admin)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    if getattr(args, "formats", None) is None and args.command == "submit":
        args.formats = ["720p"]
    args.func(args)


if __name__ == "__main__":
    main()
