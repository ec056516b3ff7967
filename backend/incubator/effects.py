"""Outbox effects emitted by request transitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Union
from uuid import UUID

# purpose: describe notification and broadcast work without performing I/O inside transitions
# outputs: immutable effect records executed later by incubator.dispatch
# status: active


@dataclass(frozen=True)
class NotifyEffect:
    """Deliver a templated notification to a set of email recipients."""

    recipients: tuple[str, ...]
    template_key: str
    data: dict[str, Any] = field(default_factory=dict)

    kind = "notify"


@dataclass(frozen=True)
class PublishEffect:
    """Broadcast a real-time event on a pub/sub channel."""

    channel: str
    event: str
    payload: dict[str, Any] = field(default_factory=dict)

    kind = "publish"


Effect = Union[NotifyEffect, PublishEffect]


def team_channel(team_id: UUID | str) -> str:
    return f"team:{team_id}"


def notify(recipients: Iterable[str | None], template_key: str, data: dict[str, Any]) -> list[Effect]:
    """Build a notify effect, or nothing when there is no one to address."""

    addresses = tuple(dict.fromkeys(r for r in recipients if r))
    if not addresses:
        return []
    return [NotifyEffect(recipients=addresses, template_key=template_key, data=dict(data))]


def publish(team_id: UUID | str, event: str, payload: dict[str, Any]) -> list[Effect]:
    return [PublishEffect(channel=team_channel(team_id), event=event, payload=dict(payload))]
