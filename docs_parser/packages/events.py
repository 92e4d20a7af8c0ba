from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, ClassVar, DefaultDict, Dict, List, Optional, Type

from redis import Redis
from redis.exceptions import RedisError

from .models import PackageStatus, ParseJobPhase, ParseJobRecord, ParseJobState, parse_job_id, utcnow
from .repository import ParsingRepository

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


@dataclass(frozen=True)
class ParsingTriggerEvent:
    """Fired when parsing of a package version has been requested."""

    name: ClassVar[str] = "docs_parser.parsing.triggered"

    package: str
    version: str
    triggered_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.name,
            "package": self.package,
            "version": self.version,
            "ts": self.triggered_at.isoformat(),
        }


class EventDispatcher:
    """
    Synchronous listener registry. Listeners for an event type run in the
    order they were registered; an exception from a listener propagates to
    whoever dispatched the event.
    """

    def __init__(self):
        self._listeners: DefaultDict[Type, List[Listener]] = defaultdict(list)

    def listen(self, event_type: Type, listener: Listener) -> None:
        self._listeners[event_type].append(listener)

    def listeners_for(self, event_type: Type) -> List[Listener]:
        return list(self._listeners.get(event_type, []))

    def dispatch(self, event: Any) -> None:
        listeners = self.listeners_for(type(event))
        logger.debug("Dispatching %s to %d listener(s)", type(event).__name__, len(listeners))
        for listener in listeners:
            listener(event)


class RedisEventPublisher:
    """
    Listener that forwards events to a Redis pub/sub channel as compact JSON.
    """

    def __init__(self, redis: Redis, channel: str = "docs_parser:events"):
        self.redis = redis
        self.channel = channel

    @classmethod
    def from_url(cls, redis_url: str, channel: str = "docs_parser:events") -> "RedisEventPublisher":
        return cls(Redis.from_url(redis_url), channel=channel)

    def __call__(self, event: Any) -> None:
        message = json.dumps(event.to_dict(), separators=(",", ":"))
        try:
            receivers = self.redis.publish(self.channel, message)
        except RedisError as exc:
            logger.error("redis_publish_error channel=%s error=%s", self.channel, exc)
            raise
        logger.debug("Published %s to %s (%s receivers)", event.name, self.channel, receivers)


def record_parse_trigger(repository: ParsingRepository) -> Listener:
    """
    Build a listener that resets the parse job for the triggered version and
    marks the version as queued.
    """

    def listener(event: ParsingTriggerEvent) -> None:
        job_id = parse_job_id(event.package, event.version)
        repository.save_job(
            ParseJobRecord(
                id=job_id,
                package_id=event.package,
                version_id=event.version,
                state=ParseJobState.QUEUED,
                phase=ParseJobPhase.INITIALIZATION,
                started_at=event.triggered_at,
            )
        )
        repository.update_version(event.package, event.version, status=PackageStatus.QUEUED)
        logger.info("Parse queued for package %s version %s (job %s)", event.package, event.version, job_id)

    return listener


def build_trigger_dispatcher(repository: ParsingRepository, publisher: Optional[Listener] = None) -> EventDispatcher:
    """
    Wire the ParsingTriggerEvent listeners. The publisher runs first so a
    failed publish leaves no queued job behind.
    """
    events = EventDispatcher()
    if publisher is not None:
        events.listen(ParsingTriggerEvent, publisher)
    events.listen(ParsingTriggerEvent, record_parse_trigger(repository))
    return events
