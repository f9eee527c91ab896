# triggers.py
from __future__ import annotations

from typing import Iterable, Optional

from .errors import ConfigurationError
from .model import EVENT_KINDS, PULL_REQUEST, PUSH, Event, TriggerRule

BRANCH_REF_PREFIX = "refs/heads/"


def normalize_branch(ref: Optional[str]) -> Optional[str]:
    """'refs/heads/master' -> 'master'; plain names pass through."""
    if ref is None:
        return None
    ref = ref.strip()
    if ref.startswith(BRANCH_REF_PREFIX):
        ref = ref[len(BRANCH_REF_PREFIX):]
    return ref or None


def validate_event(event: Event) -> Event:
    """
    Reject malformed events instead of treating them as a non-match.

    Returns the event with its branch normalized.
    """
    if event.kind not in EVENT_KINDS:
        raise ConfigurationError(
            "unknown event kind",
            {"kind": event.kind, "expected": "|".join(EVENT_KINDS)},
        )
    branch = normalize_branch(event.branch)
    if event.kind == PUSH and not branch:
        raise ConfigurationError("push event is missing its target branch", {"kind": event.kind})
    return Event(kind=event.kind, branch=branch, sha=event.sha)


def rule_matches(rule: TriggerRule, event: Event) -> bool:
    if rule.kind != event.kind:
        return False

    if rule.kind == PULL_REQUEST:
        # no filter -> every pull request
        if rule.branches is None:
            return True
        return event.branch in rule.branches

    # push: only branches named in the filter
    return bool(rule.branches) and event.branch in rule.branches


def evaluate(rules: Iterable[TriggerRule], event: Event) -> bool:
    """True iff at least one rule matches the (validated) event."""
    event = validate_event(event)
    return any(rule_matches(r, event) for r in rules)
