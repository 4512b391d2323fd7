from __future__ import annotations

import sys

from unextdoor_bg_worker.celery_app import celery_app
from unextdoor_bg_worker import billing_worker  # noqa: F401  registers tasks


def main() -> None:
    # `beat` runs the scheduler, anything else starts a worker
    if len(sys.argv) > 1 and sys.argv[1] == "beat":
        celery_app.start(["beat", "--loglevel=info"])
        return
    # prefork is unreliable on Windows, solo works everywhere
    argv = ["worker", "--loglevel=info", "-P", "solo"]
    celery_app.worker_main(argv)


if __name__ == "__main__":
    main()
