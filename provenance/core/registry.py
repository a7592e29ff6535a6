"""
Identity & Role Registry

Maps opaque caller identities to role sets. Roles are additive: a grant
never revokes anything, and a participant record is never deleted.

Every successful grant appends a ROLE_GRANTED fact, including repeat
grants of a role the identity already holds.
"""

from threading import Lock
from typing import TYPE_CHECKING, Optional, Union

from ..observability import get_logger
from ..schemas import (
    EntityType,
    FactType,
    Participant,
    Role,
    RoleGrantedPayload,
    TransitionFact,
    is_null_identity,
)
from .errors import InvalidIdentityError, SystemPausedError, UnauthorizedError
from .policy import can_administer
from .recording import AppliedCursor, Clock, append_fact, guarded_operation, utc_now

if TYPE_CHECKING:
    from ..db.store import FactLog

logger = get_logger(__name__)


class PauseSwitch:
    """
    Global pause flag shared by the registry and the ledger.

    Reads are lock-free. Changes are made by the ledger while holding
    `lock`, so the flag and its LEDGER_PAUSED/UNPAUSED fact move together.
    """

    def __init__(self) -> None:
        self._paused = False
        self.lock = Lock()

    @property
    def paused(self) -> bool:
        return self._paused

    def set(self, paused: bool) -> None:
        self._paused = paused

    def check(self) -> None:
        """Raise SystemPausedError if paused."""
        if self._paused:
            raise SystemPausedError("Ledger is paused")


class RoleRegistry:
    """
    Participant registry.

    Owns the identity -> Participant table. Participant records are frozen
    and replaced wholesale on every grant, so readers never see a partial
    update.
    """

    def __init__(
        self,
        fact_log: Optional["FactLog"] = None,
        clock: Optional[Clock] = None,
        pause_switch: Optional[PauseSwitch] = None,
    ):
        # Import here to avoid circular imports
        if fact_log is None:
            from ..db.store import InMemoryFactLog
            fact_log = InMemoryFactLog()

        self._fact_log = fact_log
        self._clock = clock or utc_now
        self.pause_switch = pause_switch or PauseSwitch()

        self._participants: dict[str, Participant] = {}
        self._lock = Lock()

        # Last fact applied here (and in a ledger sharing this registry)
        self.cursor = AppliedCursor()

    @property
    def fact_log(self) -> "FactLog":
        return self._fact_log

    # ================================================================
    # MUTATIONS
    # ================================================================

    def bootstrap(self, admin: str) -> TransitionFact:
        """
        Grant ADMIN to the first participant, granted by itself.

        Only allowed while the registry is empty.
        """
        with guarded_operation("bootstrap", admin), self._lock:
            seen = self.cursor.generation
            if self._participants:
                raise UnauthorizedError(
                    "Registry already bootstrapped; roles must be granted by an admin"
                )
            if is_null_identity(admin):
                raise InvalidIdentityError("Invalid address: zero address")

            fact = self._record_grant(Role.ADMIN, admin, granted_by=admin, generation=seen)

        logger.info("Registry bootstrapped", admin=admin)
        return fact

    def grant_role(
        self,
        role: Union[Role, str],
        identity: str,
        caller: str,
    ) -> TransitionFact:
        """
        Grant a role to an identity. Caller must be an admin.

        Re-granting a held role succeeds and is recorded again.
        """
        role = Role(role)
        with guarded_operation("grant_role", caller):
            seen = self.cursor.generation
            self.pause_switch.check()
            if not can_administer(self.roles_of(caller)):
                raise UnauthorizedError(
                    "Only admin can grant roles",
                    permitted_roles={Role.ADMIN},
                )
            if is_null_identity(identity):
                raise InvalidIdentityError("Invalid address: zero address")

            with self._lock:
                fact = self._record_grant(role, identity, granted_by=caller, generation=seen)

        logger.info(
            "Role granted",
            role=role.value,
            identity=identity,
            granted_by=caller,
        )
        return fact

    def _record_grant(
        self,
        role: Role,
        identity: str,
        granted_by: str,
        generation: Optional[int] = None,
    ) -> TransitionFact:
        """Append ROLE_GRANTED and apply it. Caller holds self._lock."""
        payload = RoleGrantedPayload(
            role=role,
            identity=identity,
            granted_by=granted_by,
        )
        return append_fact(
            self._fact_log,
            fact_type=FactType.ROLE_GRANTED,
            entity_type=EntityType.PARTICIPANT,
            actor=granted_by,
            recorded_at=self._clock(),
            payload=payload,
            apply=self.replay,
            cursor=self.cursor,
            generation=generation,
        )

    def replay(self, fact: TransitionFact) -> None:
        """
        Apply a ROLE_GRANTED fact to the participant table.

        Used both right after an append and when rebuilding from a log.
        Other fact types are ignored.
        """
        if fact.fact_type != FactType.ROLE_GRANTED:
            return

        payload = RoleGrantedPayload.model_validate(fact.payload)
        existing = self._participants.get(payload.identity)
        if existing is None:
            self._participants[payload.identity] = Participant(
                identity=payload.identity,
                roles=frozenset({payload.role}),
                registered_at=fact.recorded_at,
                registered_by=payload.granted_by,
            )
        elif payload.role not in existing.roles:
            self._participants[payload.identity] = existing.model_copy(
                update={"roles": existing.roles | {payload.role}}
            )

    # ================================================================
    # QUERIES
    # ================================================================

    def has_role(self, role: Union[Role, str], identity: Optional[str]) -> bool:
        try:
            role = Role(role)
        except ValueError:
            return False
        return role in self.roles_of(identity)

    def is_registered(self, identity: Optional[str]) -> bool:
        return identity is not None and identity in self._participants

    def roles_of(self, identity: Optional[str]) -> frozenset[Role]:
        if identity is None:
            return frozenset()
        participant = self._participants.get(identity)
        return participant.roles if participant else frozenset()

    def get_participant(self, identity: str) -> Optional[Participant]:
        return self._participants.get(identity)

    def list_participants(self) -> list[Participant]:
        """All participants, in registration order."""
        return list(self._participants.values())
