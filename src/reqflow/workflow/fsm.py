"""Status machines for use cases and requirements, built on ``transitions``.

Each trigger becomes a method on the FSM object. Only the transitions listed
here are legal; ``auto_transitions`` is off so there is no ``to_<state>``
escape hatch.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from transitions import Machine, MachineError

logger = logging.getLogger(__name__)

USE_CASE_STATES = [
    "draft",
    "pending_review",
    "approved",
    "rejected",
    "assigned",
    "in_development",
    "completed",
]

USE_CASE_TRANSITIONS = [
    {"trigger": "submit", "source": "draft", "dest": "pending_review"},
    # Review outcomes
    {"trigger": "approve", "source": "pending_review", "dest": "approved"},
    {"trigger": "reject", "source": "pending_review", "dest": "rejected"},
    {"trigger": "revise", "source": "rejected", "dest": "draft"},
    # Delivery
    {"trigger": "assign", "source": "approved", "dest": "assigned"},
    {"trigger": "start_development", "source": "assigned", "dest": "in_development"},
    {"trigger": "complete", "source": "in_development", "dest": "completed"},
]

REQUIREMENT_STATES = ["draft", "accepted"]

REQUIREMENT_TRANSITIONS = [
    {"trigger": "accept", "source": "draft", "dest": "accepted"},
]


class InvalidTransition(RuntimeError):
    """Raised when a trigger is not legal from the artifact's current status."""

    def __init__(self, entity_type: str, entity_id: int, current: str, trigger: str) -> None:
        super().__init__(f"Cannot {trigger} {entity_type} {entity_id} while it is '{current}'.")
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current = current
        self.trigger = trigger


class StatusFSM:
    """Wraps one artifact's status in a transitions Machine."""

    states: list[str] = []
    transitions: list[dict[str, str]] = []
    entity_type = "artifact"

    def __init__(
        self,
        entity_id: int,
        status: str,
        on_transition: Callable[[str, str, str], None] | None = None,
    ) -> None:
        self.entity_id = entity_id
        self.on_transition = on_transition
        if status not in self.states:
            raise InvalidTransition(self.entity_type, entity_id, status, "load")
        self.machine = Machine(
            model=self,
            states=self.states,
            transitions=self.transitions,
            initial=status,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name
        logger.info(
            "%s %s: %s -> %s (%s)", self.entity_type, self.entity_id, from_state, to_state, trigger
        )
        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def can(self, trigger: str) -> bool:
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        return self.machine.get_triggers(self.state)

    def fire(self, trigger: str) -> str:
        """Run ``trigger`` and return the new status, or raise InvalidTransition."""
        current = self.state
        if not self.can(trigger):
            raise InvalidTransition(self.entity_type, self.entity_id, current, trigger)
        try:
            self.trigger(trigger)
        except MachineError as exc:
            raise InvalidTransition(self.entity_type, self.entity_id, current, trigger) from exc
        return self.state


class UseCaseFSM(StatusFSM):
    states = USE_CASE_STATES
    transitions = USE_CASE_TRANSITIONS
    entity_type = "use_case"


class RequirementFSM(StatusFSM):
    states = REQUIREMENT_STATES
    transitions = REQUIREMENT_TRANSITIONS
    entity_type = "requirement"
