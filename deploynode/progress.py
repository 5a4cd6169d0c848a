"""Progress reporting, decoupled from control flow.

Components emit structured ``ProgressEvent``s into a ``Reporter``. The default
``LogReporter`` renders them through the package logger.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from .utils import logger, mask_secret


@dataclass(frozen=True)
class ProgressEvent:
    kind: str  # e.g. "instance.created", "deploy.state"
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    level: int = logging.INFO


class Reporter(Protocol):
    def emit(self, event: ProgressEvent) -> None: ...


class LogReporter:
    """Write events through the deploynode logger, masking any known secrets."""

    def __init__(self, secrets: Iterable[str | None] = ()):
        self.secrets = [s for s in secrets if s]

    def emit(self, event: ProgressEvent) -> None:
        logger.log(event.level, mask_secret(event.message, *self.secrets))


def report(
    reporter: Reporter,
    kind: str,
    message: str,
    level: int = logging.INFO,
    **data: Any,
) -> None:
    reporter.emit(ProgressEvent(kind=kind, message=message, data=data, level=level))
