from enum import Enum


class ConversationStatus(str, Enum):
    ACTIVE = "active"  # automation may reply
    ESCALATED = "escalated"  # waiting for / handled by a human agent
    CLOSED = "closed"


VALID_TRANSITIONS = {
    ConversationStatus.ACTIVE: [ConversationStatus.ESCALATED, ConversationStatus.CLOSED],
    ConversationStatus.ESCALATED: [ConversationStatus.ACTIVE, ConversationStatus.CLOSED],
    ConversationStatus.CLOSED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_status: ConversationStatus, to_status: ConversationStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


def can_transition(from_status: ConversationStatus, to_status: ConversationStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, [])


def transition(from_status: ConversationStatus, to_status: ConversationStatus) -> ConversationStatus:
    """Perform a status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def escalate(current: ConversationStatus) -> ConversationStatus:
    """Hand the conversation to a human."""
    return transition(current, ConversationStatus.ESCALATED)


def is_human_handled(status: str) -> bool:
    return status == ConversationStatus.ESCALATED.value
