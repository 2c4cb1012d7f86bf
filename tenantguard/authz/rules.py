"""Rule list evaluation.

An ``Ability`` is an ordered list of allow/deny rules for one principal in
one tenant. The last relevant rule wins, so a ``cannot`` placed after a
broad ``can`` carves an exception out of it. ``manage`` covers every
action and ``all`` covers every resource type.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tenantguard.authz.resources import ResourceRef, describe

Condition = Callable[[ResourceRef, datetime], bool]

MANAGE = "manage"
ALL = "all"

_ALIASES: dict[str, frozenset[str]] = {
    "read": frozenset({"read", "show", "index"}),
    "create": frozenset({"create", "new"}),
    "update": frozenset({"update", "edit"}),
    "delete": frozenset({"delete", "destroy"}),
    "destroy": frozenset({"delete", "destroy"}),
}


def _utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def expand_actions(actions: Iterable[str]) -> frozenset[str]:
    expanded: set[str] = set()
    for action in actions:
        action = action.lower()
        expanded |= _ALIASES.get(action, frozenset({action}))
    return frozenset(expanded)


@dataclass(frozen=True, slots=True)
class Rule:
    allow: bool
    actions: frozenset[str]
    subjects: frozenset[str]
    condition: Condition | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    source: str = ""

    def covers_action(self, action: str) -> bool:
        return MANAGE in self.actions or action.lower() in self.actions

    def covers_subject(self, resource_type: str) -> bool:
        return ALL in self.subjects or resource_type in self.subjects

    def in_window(self, now: datetime) -> bool:
        if self.starts_at is not None and now < self.starts_at:
            return False
        return not (self.ends_at is not None and now >= self.ends_at)

    def applies_to(self, ref: ResourceRef, now: datetime) -> bool:
        if self.condition is None:
            return True
        if ref.is_class:
            # Class-level question: a conditional grant still means "sometimes",
            # a conditional denial never blocks the class as a whole.
            return self.allow
        return bool(self.condition(ref, now))


def can(
    actions: str | Iterable[str],
    subjects: str | Iterable[str],
    condition: Condition | None = None,
    **kwargs: Any,
) -> Rule:
    return _rule(True, actions, subjects, condition, **kwargs)


def cannot(
    actions: str | Iterable[str],
    subjects: str | Iterable[str],
    condition: Condition | None = None,
    **kwargs: Any,
) -> Rule:
    return _rule(False, actions, subjects, condition, **kwargs)


def _rule(
    allow: bool,
    actions: str | Iterable[str],
    subjects: str | Iterable[str],
    condition: Condition | None,
    **kwargs: Any,
) -> Rule:
    action_list = [actions] if isinstance(actions, str) else list(actions)
    subject_list = [subjects] if isinstance(subjects, str) else list(subjects)
    return Rule(
        allow=allow,
        actions=expand_actions(action_list),
        subjects=frozenset(subject_list),
        condition=condition,
        **kwargs,
    )


@dataclass(frozen=True)
class Ability:
    """Decision set for one principal within one tenant.

    Immutable and clock-aware: rule windows and time conditions are checked
    against ``now`` at evaluation time, so a cached ability never outlives a
    delegation window.
    """

    principal_id: str | None
    tenant_id: str | None
    rules: tuple[Rule, ...] = ()
    fingerprint: str = "guest"
    clock: Callable[[], datetime] = field(default=_utc_now, compare=False, repr=False)

    def can(self, action: str, subject: Any, now: datetime | None = None) -> bool:
        ref = describe(subject)
        if self._crosses_tenant(ref):
            return False
        now = now or self.clock()
        for rule in reversed(self.rules):
            if not (rule.covers_action(action) and rule.covers_subject(ref.resource_type)):
                continue
            if not rule.in_window(now):
                continue
            if rule.applies_to(ref, now):
                return rule.allow
        return False

    def cannot(self, action: str, subject: Any, now: datetime | None = None) -> bool:
        return not self.can(action, subject, now)

    def permission_keys(self, now: datetime | None = None) -> set[str]:
        """``Resource:action`` pairs granted unconditionally or conditionally."""
        now = now or self.clock()
        keys: set[str] = set()
        for rule in self.rules:
            if not rule.allow or not rule.in_window(now):
                continue
            for subject in rule.subjects:
                for action in rule.actions:
                    keys.add(f"{subject}:{action}")
        return keys

    def _crosses_tenant(self, ref: ResourceRef) -> bool:
        if ref.is_class or ref.org_id is None or self.tenant_id is None:
            return False
        return ref.org_id != self.tenant_id


GUEST_RULES: tuple[Rule, ...] = (
    can("read", "Organization", lambda ref, _now: ref.get("active") is True, source="guest"),
)


def guest_ability(principal_id: str | None = None) -> Ability:
    return Ability(principal_id=principal_id, tenant_id=None, rules=GUEST_RULES)


def no_access(principal_id: str, tenant_id: str | None = None) -> Ability:
    """Signed-in principal without an active membership in ``tenant_id``."""
    return Ability(principal_id=principal_id, tenant_id=tenant_id, fingerprint="none")
