"""Utility functions and decorators."""

import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, TypeVar, Union

import structlog
import yaml
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

T = TypeVar('T')

DEFAULT_INTERVAL_SECONDS = 3600.0

_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}
_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')


def retry_with_backoff(
    max_retries: int = 3,
    backoff_factor: float = 1.5,
    max_wait: float = 60.0,
    retry_on: Optional[Callable[[BaseException], bool]] = None
):
    """Decorator for retry with exponential backoff.

    When ``retry_on`` is given only exceptions it accepts are retried, every
    other error propagates on the first attempt.
    """
    kwargs = {}
    if retry_on is not None:
        kwargs['retry'] = retry_if_exception(retry_on)
    return retry(
        stop=stop_after_attempt(max_retries),
        wait=wait_exponential(multiplier=backoff_factor, max=max_wait),
        reraise=True,
        **kwargs
    )


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    config_path: Optional[Union[str, Path]] = None
) -> None:
    """Setup structured logging configuration."""
    if config_path and Path(config_path).exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
        logging.config.dictConfig(config)
    else:
        logging.basicConfig(
            level=getattr(logging, log_level.upper()),
            format='%(message)s',
            stream=sys.stderr,
        )

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def parse_duration(value: Optional[str], default: float = DEFAULT_INTERVAL_SECONDS) -> float:
    """Parse a Go-style duration string ("90s", "15m", "1h30m") into seconds.

    Empty, unparsable or non-positive values fall back to ``default``.
    """
    if value is None:
        return default
    text = str(value).strip()
    if not text:
        return default

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            return default
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text) or total <= 0:
        return default
    return total


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield successive ``size``-length chunks of ``items``."""
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


def first_or_none(items: Optional[Iterable[T]]) -> Optional[T]:
    """Return the first item of an iterable or None."""
    for item in items or []:
        return item
    return None


def safe_get(obj: Any, path: str, default: Any = None) -> Any:
    """Safely walk attributes or keys using dot notation.

    SDK models mix attribute access and plain dicts; both are followed.
    """
    value = obj
    for part in path.split('.'):
        if value is None:
            return default
        if isinstance(value, dict):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return default if value is None else value
