"""
Identity -- identifier generation and principal resolution.

Responsibility:
    Supplies new UUIDs and answers questions about principals (roles,
    department, supervisor, approval authority, privilege) that the
    approval and ledger engines need.  Both are capabilities injected into
    services so tests can wire deterministic fakes.

Architecture position:
    Kernel > Domain -- protocols plus in-memory implementations, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Protocol, runtime_checkable
from uuid import UUID, uuid4

# Actor recorded for engine-originated actions (auto-approvals, holds, steps)
SYSTEM_PRINCIPAL_ID = UUID("00000000-0000-0000-0000-000000000001")


class IdGenerator(Protocol):
    def new_id(self) -> UUID: ...


class UuidGenerator:
    """Random (version 4) identifiers."""

    def new_id(self) -> UUID:
        return uuid4()


class SequentialIdGenerator:
    """Predictable identifiers for tests: 00000000-...-000000000001, ..."""

    def __init__(self, start: int = 1):
        self._next = start

    def new_id(self) -> UUID:
        value = UUID(int=self._next)
        self._next += 1
        return value


@dataclass(frozen=True)
class Principal:
    """Resolved caller identity."""

    actor_id: UUID
    display_name: str = ""
    roles: frozenset[str] = frozenset()
    department: str | None = None
    supervisor_id: UUID | None = None
    approval_limit: int | None = None
    privileged: bool = False

    def has_role(self, role: str) -> bool:
        return role in self.roles


@runtime_checkable
class PrincipalDirectory(Protocol):
    """Pluggable interface for principal and hierarchy lookups."""

    def get_principal(self, actor_id: UUID) -> Principal | None:
        """Return the principal, or None when the actor is unknown."""
        ...

    def has_role(self, actor_id: UUID, role: str) -> bool:
        ...

    def is_privileged(self, actor_id: UUID) -> bool:
        ...


@dataclass
class InMemoryPrincipalDirectory:
    """Dictionary-backed directory used by default wiring and tests."""

    principals: dict[UUID, Principal] = field(default_factory=dict)
    privileged_roles: frozenset[str] = frozenset({"approval_admin"})

    def add(self, principal: Principal) -> Principal:
        self.principals[principal.actor_id] = principal
        return principal

    def register(
        self,
        actor_id: UUID | None = None,
        *,
        display_name: str = "",
        roles: Iterable[str] = (),
        department: str | None = None,
        supervisor_id: UUID | None = None,
        approval_limit: int | None = None,
        privileged: bool = False,
    ) -> Principal:
        return self.add(
            Principal(
                actor_id=actor_id or uuid4(),
                display_name=display_name,
                roles=frozenset(roles),
                department=department,
                supervisor_id=supervisor_id,
                approval_limit=approval_limit,
                privileged=privileged,
            )
        )

    def get_principal(self, actor_id: UUID) -> Principal | None:
        return self.principals.get(actor_id)

    def has_role(self, actor_id: UUID, role: str) -> bool:
        principal = self.principals.get(actor_id)
        return principal is not None and principal.has_role(role)

    def is_privileged(self, actor_id: UUID) -> bool:
        principal = self.principals.get(actor_id)
        if principal is None:
            return False
        return principal.privileged or bool(principal.roles & self.privileged_roles)
