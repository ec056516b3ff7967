import logging
from typing import Iterable

from fastapi.encoders import jsonable_encoder
from prometheus_client import Counter

from . import pubsub, tasks
from .effects import Effect, NotifyEffect, PublishEffect

# purpose: execute outbox effects after the originating transaction has committed
# status: active
# depends_on: incubator.tasks (notifications), incubator.pubsub (real-time events)

logger = logging.getLogger(__name__)

EFFECT_DISPATCH_FAILURES = Counter(
    "effect_dispatch_failures_total",
    "Side effects that failed after their transition committed",
    ["kind"],
)


async def dispatch_effects(effects: Iterable[Effect]) -> list[Effect]:
    """Run every effect once; failures are logged and returned, never raised."""

    failed: list[Effect] = []
    for effect in effects:
        try:
            if isinstance(effect, NotifyEffect):
                tasks.enqueue_notification(
                    list(effect.recipients),
                    effect.template_key,
                    jsonable_encoder(effect.data),
                )
            elif isinstance(effect, PublishEffect):
                await pubsub.publish(effect.channel, effect.event, jsonable_encoder(effect.payload))
            else:
                raise TypeError(f"Unsupported effect {effect!r}")
        except Exception:
            EFFECT_DISPATCH_FAILURES.labels(getattr(effect, "kind", "unknown")).inc()
            logger.exception("Failed to dispatch %s effect", getattr(effect, "kind", "unknown"))
            failed.append(effect)
    return failed
