import logging
import sys
from typing import Iterable

# engine sub-tasks log from "ranker_*" threads, monitor ticks from to_thread workers
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"

NOISY_LOGGERS = ("uvicorn.access", "httpx", "asyncio")


def setup_logging(level: str = "INFO", noisy: Iterable[str] = NOISY_LOGGERS) -> None:
    root_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=root_level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )

    # access log is too chatty once the feed is paginated
    for name in noisy:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))
