"""Exceptions raised by the session engine.

Validation errors (``RequirementNotMet``, ``NotYourTurn``, ``InvalidChoice``,
``SessionNotActive``, ``SessionFull``) are raised before anything is written
and leave the stored session untouched.
"""
from __future__ import annotations


class ChroniclesError(Exception):
    """Base class for every engine error."""


class GraphLookupError(ChroniclesError):
    """A campaign, node, choice or character id does not exist."""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


class SessionNotFound(GraphLookupError):
    def __init__(self, identifier):
        super().__init__("session", identifier)


class SessionNotActive(ChroniclesError):
    def __init__(self, session_id: int, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is {status}")


class SessionFull(ChroniclesError):
    def __init__(self, session_id: int, max_players: int):
        self.session_id = session_id
        self.max_players = max_players
        super().__init__(f"Session {session_id} already has {max_players} players")


class InvalidChoice(ChroniclesError):
    """The choice is not an outgoing edge of the session's current node."""


class NotYourTurn(ChroniclesError):
    def __init__(self, expected_user_id: int | None, acting_user_id: int | None):
        self.expected_user_id = expected_user_id
        self.acting_user_id = acting_user_id
        super().__init__(
            f"User {acting_user_id} tried to act during the turn of user {expected_user_id}"
        )


class RequirementNotMet(ChroniclesError):
    def __init__(self, stat: str, min_value: int, current: int):
        self.stat = stat
        self.min_value = min_value
        self.current = current
        super().__init__(
            f"Requires {min_value} {stat} (you have {current}, missing {self.deficit})"
        )

    @property
    def deficit(self) -> int:
        return max(self.min_value - self.current, 0)


class PersistenceFailure(ChroniclesError):
    """Writing the session aggregate failed; nothing from the attempt was kept."""


class TriggerEvaluationFault(ChroniclesError):
    """A single trigger is malformed. Never propagated out of the trigger engine."""

    def __init__(self, trigger_id, reason: str):
        self.trigger_id = trigger_id
        self.reason = reason
        super().__init__(f"Trigger {trigger_id}: {reason}")
