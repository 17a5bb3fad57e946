import argparse
import multiprocessing
import sys
from config.logging_setup import setup_logging
from config.settings import QueueConfig, settings
from core.registry import KINDS


def run_worker(kind: str, concurrency: int = None, loglevel: str = None):
    """Start a Celery worker consuming only the kind's queue."""
    from workers.celery_app import celery_app, queue_name
    config = QueueConfig.from_settings(settings)
    celery_app.worker_main([
        "worker",
        f"--queues={queue_name(kind)}",
        f"--concurrency={concurrency or config.concurrency.get(kind, 2)}",
        f"--hostname={kind}@%h",
        f"--loglevel={loglevel or settings.log_level}",
    ])


def run_all_workers(loglevel: str = None):
    processes = []
    for kind in KINDS:
        proc = multiprocessing.Process(target=run_worker, args=(kind, None, loglevel),
                                       name=f"worker-{kind}")
        proc.start()
        processes.append(proc)
    try:
        for proc in processes:
            proc.join()
    except KeyboardInterrupt:
        for proc in processes:
            proc.terminate()
        for proc in processes:
            proc.join()


def init_db():
    from scripts.init_db import init_database
    init_database()


def run_api(host: str, port: int):
    import uvicorn
    uvicorn.run("api.main:app", host=host, port=port, log_level=settings.log_level.lower())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Media job workers and API")
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Run encoder workers")
    target = worker.add_mutually_exclusive_group(required=True)
    target.add_argument("--kind", choices=KINDS, help="Job kind to consume")
    target.add_argument("--all", action="store_true", help="One worker process per kind")
    worker.add_argument("-c", "--concurrency", type=int, help="Override the kind's concurrency")
    worker.add_argument("--loglevel", help="Worker log level")

    sub.add_parser("init-db", help="Create job tables")

    api = sub.add_parser("api", help="Run the HTTP API")
    api.add_argument("--host", default="0.0.0.0")
    api.add_argument("--port", type=int, default=settings.api_port)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging()

    if args.command == "worker":
        if args.all:
            run_all_workers(args.loglevel)
        else:
            run_worker(args.kind, args.concurrency, args.loglevel)
    elif args.command == "init-db":
        init_db()
    elif args.command == "api":
        run_api(args.host, args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
