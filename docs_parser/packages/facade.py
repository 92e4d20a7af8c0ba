from __future__ import annotations

from typing import Optional

from .events import EventDispatcher, ParsingTriggerEvent
from .jobs import JobQueue, PackageInitializationJob, PageParserJob


class DOCXParse:
    """
    Entry point for parsing a DOCX package version.

    Announces the request with a ParsingTriggerEvent, then submits the
    initialization -> page parsing chain. Inputs are forwarded untouched and
    errors from the dispatcher or the queue propagate to the caller.
    """

    def __init__(self, events: EventDispatcher, queue: JobQueue):
        self.events = events
        self.queue = queue

    def execute(self, package, version) -> None:
        self.events.dispatch(ParsingTriggerEvent(package, version))

        PackageInitializationJob(package, version).with_chain(
            [
                PageParserJob(package, version),
            ]
        ).dispatch(self.queue)


_default: Optional[DOCXParse] = None


def configure(events: EventDispatcher, queue: JobQueue) -> DOCXParse:
    global _default
    _default = DOCXParse(events, queue)
    return _default


def execute(package, version) -> None:
    if _default is None:
        raise RuntimeError("DOCXParse is not configured; call configure() first")
    _default.execute(package, version)
