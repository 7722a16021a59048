# trigger.py
"""
Map an inbound event to the per-invocation TriggerParameters.

The toolchain channel is decided here, once, and every job of the
invocation reads it from the same TriggerParameters value.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    SCHEDULE = "schedule"
    RELEASE = "release.published"


# Accepted spellings for each kind. Anything else is treated as a push.
_ALIASES = {
    "push": EventKind.PUSH,
    "pull_request": EventKind.PULL_REQUEST,
    "pull-request": EventKind.PULL_REQUEST,
    "schedule": EventKind.SCHEDULE,
    "cron": EventKind.SCHEDULE,
    "release": EventKind.RELEASE,
    "release.published": EventKind.RELEASE,
}

STABLE = "stable"
NIGHTLY = "nightly"


@dataclass(frozen=True)
class Event:
    """An inbound event as received (before resolution)."""
    kind: str
    tag: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class TriggerParameters:
    event: EventKind
    channel: str
    release_tag: Optional[str] = None

    @property
    def is_release(self) -> bool:
        return self.event is EventKind.RELEASE and bool(self.release_tag)


def resolve(event: Event) -> TriggerParameters:
    """
    Resolve an event into TriggerParameters. Never fails.

    - unknown kinds behave like a push
    - a release event without a tag cannot be published, so it also
      degrades to a push
    """
    kind = _ALIASES.get((event.kind or "").strip().lower(), EventKind.PUSH)
    tag = (event.tag or "").strip() or None

    if kind is EventKind.RELEASE and tag is None:
        kind = EventKind.PUSH

    channel = NIGHTLY if kind is EventKind.SCHEDULE else STABLE
    return TriggerParameters(
        event=kind,
        channel=channel,
        release_tag=tag if kind is EventKind.RELEASE else None,
    )


# ---------------------------------------------------------------------
# Condition predicates
# ---------------------------------------------------------------------

def always(params: TriggerParameters) -> bool:
    return True


def on_release(params: TriggerParameters) -> bool:
    """Only when the invocation was triggered by a published release."""
    return params.is_release


def on_events(*kinds: str | EventKind) -> Callable[[TriggerParameters], bool]:
    wanted = {_ALIASES.get(str(getattr(k, "value", k)).lower(), None) for k in kinds}
    wanted.discard(None)
    if not wanted:
        raise ValueError(f"on_events() needs at least one known event kind, got {kinds!r}")

    def predicate(params: TriggerParameters) -> bool:
        return params.event in wanted

    predicate.__name__ = "on_" + "_or_".join(sorted(k.name.lower() for k in wanted))
    return predicate
