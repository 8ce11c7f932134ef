"""CLI for mutual-graph analysis."""
import asyncio
import argparse
import logging
import sys
import json

from .database import init_db
from .errors import MutualGraphError
from .models import JobStatus
from .runtime import build_runtime


def cmd_init(args):
    """Initialize the database."""
    print("Initializing database...")
    init_db()
    print("Database initialized successfully")


async def cmd_analyze_async(args):
    """Create an analysis job and run it in this process."""
    runtime = build_runtime()

    try:
        job = runtime.jobs.create_job(args.handle, {"force": args.force}, priority=1 if args.force else 0)
        print(f"Job #{job.id} for @{job.handle}: {job.status}")

        if job.status == JobStatus.RATE_LIMITED:
            print(f"  {job.error}")
            return job

        job = await runtime.scheduler.run_job(job.id)

        if job.status != JobStatus.COMPLETED:
            print(f"\nAnalysis failed after {job.attempts} attempts: {job.error}")
            return job

        result = job.result
        if args.json:
            print(json.dumps(result, indent=2))
            return job

        stats = result["stats"]
        print(f"\nAnalysis completed!")
        print(f"  Subject: {result['subjectId']}")
        print(f"  Followers: {stats['followers']}")
        print(f"  Following: {stats['following']}")
        print(f"  Mutuals: {stats['mutuals']}")
        print(f"  Communities: {len(result['communities'])}")
        for community in result["communities"]:
            metrics = community["metrics"]
            print(
                f"    {community['id']}: {community['size']} members, "
                f"density {metrics['density']:.2f}, cohesion {metrics['cohesion']:.2f}"
            )
        return job

    except MutualGraphError as e:
        print(f"\nAnalysis failed: {e}")
        raise
    finally:
        await runtime.close()


def cmd_analyze(args):
    """Run analysis (sync wrapper)."""
    return asyncio.run(cmd_analyze_async(args))


async def cmd_worker_async(args):
    runtime = build_runtime()
    await runtime.start()
    print("Worker running, press Ctrl+C to stop")
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await runtime.close()


def cmd_worker(args):
    """Run the job scheduler until interrupted."""
    try:
        asyncio.run(cmd_worker_async(args))
    except KeyboardInterrupt:
        print("\nWorker stopped")


def cmd_serve(args):
    """Serve the HTTP API with the job scheduler running in-process."""
    import uvicorn
    uvicorn.run("mutual_graph.api:app", host=args.host, port=args.port)


def cmd_status(args):
    """Show one job."""
    runtime = build_runtime()
    job = runtime.jobs.get(args.job_id)
    if not job:
        print(f"Job #{args.job_id} not found")
        return
    print(json.dumps(job.to_status(), indent=2))


def cmd_jobs(args):
    """List jobs for a handle."""
    runtime = build_runtime()
    jobs = runtime.jobs.list_jobs(args.handle, limit=args.limit)

    if not jobs:
        print("No jobs found")
        return

    print(f"Jobs for @{args.handle} (limit {args.limit}):")
    print(f"  Refreshes today: {runtime.jobs.get_refresh_count(args.handle)}")
    print("-" * 70)
    for job in jobs:
        print(f"  #{job.id}: {job.status} (attempt {job.attempts}/{job.max_attempts})")
        print(f"    Created: {job.created_at}")
        if job.error:
            print(f"    Error: {job.error}")
        print()


def cmd_sweep(args):
    """Expired cache entries, stuck jobs and old jobs."""
    runtime = build_runtime()
    summary = runtime.run_maintenance()
    print(f"Cache entries swept: {summary['cache_swept']}")
    print(f"Stuck jobs recovered: {summary['jobs_recovered']}")
    print(f"Old jobs deleted: {summary['jobs_deleted']}")


def cmd_stats(args):
    """Show job statistics."""
    runtime = build_runtime()
    counts = runtime.jobs.stats()

    print("Mutual Graph Statistics")
    print("=" * 40)
    print(f"Jobs: {sum(counts.values())}")
    for status, count in sorted(counts.items()):
        print(f"  {status}: {count}")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Mutual Graph - Bluesky mutual-follow communities"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init
    init_parser = subparsers.add_parser("init", help="Initialize database")
    init_parser.set_defaults(func=cmd_init)

    # analyze
    analyze_parser = subparsers.add_parser("analyze", help="Analyze a handle's mutual network")
    analyze_parser.add_argument("handle", help="Bluesky handle (alice or alice.bsky.social)")
    analyze_parser.add_argument("--force", action="store_true", help="Bypass cached data")
    analyze_parser.add_argument("--json", action="store_true", help="Output the full analysis")
    analyze_parser.set_defaults(func=cmd_analyze)

    # worker
    worker_parser = subparsers.add_parser("worker", help="Run the job scheduler")
    worker_parser.set_defaults(func=cmd_worker)

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port")
    serve_parser.set_defaults(func=cmd_serve)

    # status
    status_parser = subparsers.add_parser("status", help="Show a job")
    status_parser.add_argument("job_id", type=int, help="Job ID")
    status_parser.set_defaults(func=cmd_status)

    # jobs
    jobs_parser = subparsers.add_parser("jobs", help="List jobs for a handle")
    jobs_parser.add_argument("handle", help="Bluesky handle")
    jobs_parser.add_argument("--limit", type=int, default=10, help="Number of jobs")
    jobs_parser.set_defaults(func=cmd_jobs)

    # sweep
    sweep_parser = subparsers.add_parser("sweep", help="Run cache and job maintenance")
    sweep_parser.set_defaults(func=cmd_sweep)

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    stats_parser.set_defaults(func=cmd_stats)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        args.func(args)
    except MutualGraphError:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
