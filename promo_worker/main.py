from __future__ import annotations

from promo_worker.celery_app import celery_app
from promo_worker import cache_worker  # noqa: F401  registers tasks


def main() -> None:
    # solo pool: invalidation tasks are short and I/O bound
    argv = ["worker", "--loglevel=info", "-P", "solo"]
    celery_app.worker_main(argv)


if __name__ == "__main__":
    main()
