"""Local entry point for the payments worker.

Deployments normally run ``celery -A infrastructure.tasks worker -B``; this
script does the same for Procfile-style runners.
"""
from __future__ import annotations

from .config.celery import celery_app


def main() -> None:
    celery_app.worker_main(
        argv=["worker", "--beat", "--hostname=payments@%h", "--queues=default,high,low", "--loglevel=INFO"]
    )


if __name__ == "__main__":
    main()
