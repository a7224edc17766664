from __future__ import annotations

import sys

from wikiupload.worker import celery_app


def main() -> None:
    # "beat" runs the periodic stash cleanup instead of consuming jobs.
    if sys.argv[1:2] == ["beat"]:
        celery_app.start(argv=["beat", "--loglevel=info"])
        return
    celery_app.worker_main(argv=["worker", "--loglevel=info", "-P", "solo"])


if __name__ == "__main__":
    main()
