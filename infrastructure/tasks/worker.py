"""Convenience entry point for running the Celery worker.

``python -m infrastructure.tasks.worker --beat`` also embeds the beat scheduler,
which suits single-node deployments; larger setups run ``celery beat`` separately.
"""
from __future__ import annotations

import sys

from core.logging_config import configure_logging

from .config.celery import celery_app


def main(argv: list[str] | None = None) -> None:
    configure_logging()
    args = list(sys.argv[1:] if argv is None else argv)
    worker_argv = ["worker", "--hostname=worker@%h", "--queues=payments,default"]
    if "--beat" in args:
        worker_argv.append("--beat")
    celery_app.worker_main(argv=worker_argv)


if __name__ == "__main__":
    main()
