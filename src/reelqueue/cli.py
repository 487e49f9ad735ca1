import argparse
import json
import sys
from pathlib import Path

from .config import resolve_config
from .errors import InfrastructureError, ValidationError
from .ffmpeg_runner import check_ffmpeg
from .logging import configure_logging
from .stages.fetch import YtDlpFetcher
from .submission import JobSubmitter
from . import worker


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reelqueue", description="Asynchronous video-to-short-clip job pipeline"
    )
    parser.add_argument("--config", type=str, help="Config YAML (default: config/default.yaml)")
    parser.add_argument("--database-url", type=str, help="Status store SQLAlchemy URL")
    parser.add_argument("--queue-db", type=str, help="Queue database path")
    parser.add_argument(
        "--log-level", choices=["debug", "info", "warn", "error"], help="Log level"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Submit a video URL for processing")
    submit_parser.add_argument("source_reference", help="Video URL")

    # JOBS
    jobs_parser = subparsers.add_parser("jobs", help="List jobs (newest first) or show one")
    jobs_parser.add_argument("job_id", type=int, nargs="?", help="Show a single job")

    # DELETE
    delete_parser = subparsers.add_parser("delete", help="Delete a job record")
    delete_parser.add_argument("job_id", type=int)

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Consume the queue and run the pipeline")
    worker_parser.add_argument("--max-jobs", type=int, help="Exit after handling N messages")
    worker_parser.add_argument(
        "--drain", action="store_true", help="Exit once the queue is empty"
    )
    worker_parser.add_argument(
        "--no-analysis", action="store_true", help="Skip analysis, always cut the fallback segment"
    )
    worker_parser.add_argument(
        "--publish-backend", choices=["local", "fileio"], help="Where clips are published"
    )
    worker_parser.add_argument(
        "--health-port", type=int, help="Serve a liveness endpoint (GET /) on this port"
    )

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Port")

    # QUEUE subcommands (status, recover)
    queue_parser = subparsers.add_parser("queue", help="Inspect the durable queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    queue_subparsers.add_parser("status", help="Show queue depth")
    recover_parser = queue_subparsers.add_parser(
        "recover", help="Return in-flight messages of dead workers to the queue"
    )
    recover_parser.add_argument(
        "--older-than",
        type=float,
        default=None,
        help="Only leases without heartbeat for N seconds (default: queue.stale_timeout_s)",
    )

    # CHECK
    subparsers.add_parser("check", help="Verify external tools")

    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict, config_path=Path(args.config) if args.config else None)
    configure_logging(config.logging.level, config.logging.format)

    try:
        return _dispatch(args, config)
    except InfrastructureError as e:
        print(f"Service unavailable: {e}", file=sys.stderr)
        return 1


def _dispatch(args, config) -> int:
    if args.command == "submit":
        store = worker.build_store(config)
        queue = worker.build_queue(config)
        try:
            queue.connect()
            job = JobSubmitter(store, queue).submit(args.source_reference)
        except ValidationError as e:
            print(f"Invalid request: {e}", file=sys.stderr)
            return 2
        finally:
            queue.close()
            store.dispose()
        _print_json(job.to_public())

    elif args.command == "jobs":
        store = worker.build_store(config)
        try:
            if args.job_id is not None:
                job = store.get(args.job_id)
                if job is None:
                    print(f"Job not found: {args.job_id}", file=sys.stderr)
                    return 1
                _print_json(job.to_public())
            else:
                _print_json([job.to_public() for job in store.list_jobs()])
        finally:
            store.dispose()

    elif args.command == "delete":
        store = worker.build_store(config)
        try:
            deleted = store.delete(args.job_id)
        finally:
            store.dispose()
        if not deleted:
            print(f"Job not found: {args.job_id}", file=sys.stderr)
            return 1
        print(f"Deleted job {args.job_id}")

    elif args.command == "worker":
        handled = worker.run_worker(
            config,
            max_messages=args.max_jobs,
            drain=args.drain,
            health_port=args.health_port,
        )
        print(f"Handled {handled} message(s)")

    elif args.command == "serve":
        import uvicorn

        from .api.main import create_app

        uvicorn.run(create_app(config), host=config.api.host, port=config.api.port)

    elif args.command == "queue":
        if args.queue_command not in ("status", "recover"):
            print("usage: reelqueue queue {status,recover}", file=sys.stderr)
            return 2

        queue = worker.build_queue(config)
        queue.connect()
        try:
            if args.queue_command == "status":
                stats = queue.stats()
                print("\n" + "=" * 60)
                print(f"QUEUE STATUS ({config.queue.name})")
                print("=" * 60)
                print(f"Ready:                {stats['ready']}")
                print(f"In Flight:            {stats['in_flight']}")
                print(f"Total:                {stats['total']}")
                print("=" * 60)
            else:
                older_than = args.older_than
                if older_than is None:
                    older_than = config.queue.stale_timeout_s
                count = queue.requeue_stale(older_than)
                print(f"Requeued {count} message(s)")
        finally:
            queue.close()

    elif args.command == "check":
        print("Checking dependencies...")
        ok = True
        if check_ffmpeg():
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            ok = False
        if YtDlpFetcher(executable=config.fetch.executable).is_available():
            print(f"✅ {config.fetch.executable} found.")
        else:
            print(f"❌ {config.fetch.executable} NOT found in PATH.")
            ok = False
        if config.analysis.available:
            print("✅ analysis configured.")
        else:
            print("⚠️  analysis unavailable, the fallback segment will be used.")
        return 0 if ok else 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
