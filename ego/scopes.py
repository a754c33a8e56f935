"""
Scopes: (policy, access level) pairs and the set algebra used to decide what a principal may do.

Two scopes share a subject when they name the same policy, whatever the access level.
Precedence when merging scopes on the same policy is DENY > WRITE > READ.
A scope's canonical string is "<policyName>.<ACCESSLEVEL>", e.g. "StudyA.READ".
"""
from dataclasses import dataclass, field
from typing import Iterable

from ego.errors import InvalidScopeError
from ego.models import AccessLevel, Policy, User

_PRECEDENCE = {AccessLevel.READ: 1, AccessLevel.WRITE: 2, AccessLevel.DENY: 3}


@dataclass(frozen=True)
class Scope:
    # Policies are compared by id so a rename does not change identity
    policy_id: str
    access_level: AccessLevel
    policy_name: str = field(compare=False)

    @classmethod
    def of(cls, policy: Policy, access_level: AccessLevel) -> "Scope":
        return cls(policy_id=policy.id, access_level=AccessLevel(access_level), policy_name=policy.name)

    def __str__(self) -> str:
        return f"{self.policy_name}.{self.access_level.value}"


@dataclass(frozen=True)
class ScopeName:
    """A scope as requested by name, before the policy is looked up."""
    policy_name: str
    access_level: AccessLevel

    @classmethod
    def parse(cls, value: str) -> "ScopeName":
        """Parse "<policyName>.<LEVEL>". Policy names may themselves contain dots."""
        policy_name, sep, level = (value or "").strip().rpartition(".")
        if not sep or not policy_name:
            raise InvalidScopeError(f"Bad scope name '{value}'; expected '<policy>.<READ|WRITE|DENY>'")
        try:
            access_level = AccessLevel(level.upper())
        except ValueError:
            raise InvalidScopeError(f"Bad access level '{level}' in scope '{value}'")
        return cls(policy_name=policy_name, access_level=access_level)

    def __str__(self) -> str:
        return f"{self.policy_name}.{self.access_level.value}"


def allows(have: AccessLevel, need: AccessLevel) -> bool:
    """True if holding `have` on a policy satisfies a request for `need` on it."""
    if have == AccessLevel.DENY:
        return False
    if need == AccessLevel.DENY:
        return True
    return _PRECEDENCE[have] >= _PRECEDENCE[need]


def _by_policy(scopes: Iterable[Scope]) -> dict[str, Scope]:
    """Collapse scopes to one per policy, keeping the highest precedence level."""
    merged: dict[str, Scope] = {}
    for scope in scopes:
        current = merged.get(scope.policy_id)
        if current is None or _PRECEDENCE[scope.access_level] > _PRECEDENCE[current.access_level]:
            merged[scope.policy_id] = scope
    return merged


def effective_scopes(scopes_a: Iterable[Scope], scopes_b: Iterable[Scope]) -> set[Scope]:
    """
    One scope per policy present in either input, at the highest precedence level found
    (DENY on either side wins). A policy present on one side only is carried through unchanged.
    """
    return set(_by_policy([*scopes_a, *scopes_b]).values())


def explicit_scopes(scopes: Iterable[Scope]) -> set[Scope]:
    """Drop DENY entries: they mask grants, they are not grants to expose."""
    return {s for s in scopes if s.access_level != AccessLevel.DENY}


def missing_scopes(granted: Iterable[Scope], requested: Iterable[Scope]) -> set[Scope]:
    """
    Requested scopes that `granted` does not satisfy: policy absent, a lower level held,
    or the policy masked by DENY. Empty means the request is fully satisfiable.
    """
    held = _by_policy(granted)
    missing = set()
    for scope in requested:
        have = held.get(scope.policy_id)
        if have is None or not allows(have.access_level, scope.access_level):
            missing.add(scope)
    return missing


def scope_names(scopes: Iterable[Scope]) -> list[str]:
    """Canonical strings, sorted for stable output."""
    return sorted(str(s) for s in scopes)


def user_scopes(user: User) -> set[Scope]:
    """
    Everything the user currently holds: direct permissions plus the permissions of every
    group the user belongs to, one entry per policy by precedence. DENY entries are kept
    so callers can mask other scope sets with them.
    """
    direct = [Scope.of(p.policy, p.access_level) for p in user.permissions]
    inherited = [Scope.of(p.policy, p.access_level) for group in user.groups for p in group.permissions]
    return effective_scopes(direct, inherited)
