"""Delivery attempt-loop state machine."""
from __future__ import annotations

from dataclasses import dataclass, field

from webhook_service.core.exceptions import InvalidStatusTransitionError
from webhook_service.domain.enums import DeliveryState

DELIVERY_TRANSITIONS: dict[DeliveryState, set[DeliveryState]] = {
    DeliveryState.PENDING: {DeliveryState.ATTEMPTING},
    DeliveryState.ATTEMPTING: {
        DeliveryState.DELIVERED,
        DeliveryState.RETRY,
        DeliveryState.EXHAUSTED,
    },
    DeliveryState.RETRY: {DeliveryState.ATTEMPTING},
    DeliveryState.DELIVERED: set(),
    DeliveryState.EXHAUSTED: set(),
}


def validate_delivery_transition(current: DeliveryState, new: DeliveryState) -> None:
    if new not in DELIVERY_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransitionError(
            f"Invalid delivery state transition: {current.value} → {new.value}"
        )


@dataclass
class DeliveryStateMachine:
    """Tracks one dispatch from PENDING to DELIVERED or EXHAUSTED.

    ``attempts`` counts entries into ATTEMPTING; ATTEMPTING is only reachable
    while ``attempts < max_attempts``.
    """

    max_attempts: int
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    history: list[DeliveryState] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.history.append(self.state)

    @property
    def attempts_remaining(self) -> int:
        return self.max_attempts - self.attempts

    @property
    def done(self) -> bool:
        return self.state.is_terminal

    def _move(self, new: DeliveryState) -> None:
        validate_delivery_transition(self.state, new)
        self.state = new
        self.history.append(new)

    def begin_attempt(self) -> int:
        """Enter ATTEMPTING; returns the 1-based attempt number."""
        if self.attempts >= self.max_attempts:
            raise InvalidStatusTransitionError(
                f"No attempts left ({self.attempts}/{self.max_attempts})"
            )
        self._move(DeliveryState.ATTEMPTING)
        self.attempts += 1
        return self.attempts

    def succeed(self) -> None:
        self._move(DeliveryState.DELIVERED)

    def fail(self, *, retryable: bool = True) -> DeliveryState:
        """Record a failed attempt; moves to RETRY if allowed, else EXHAUSTED."""
        if retryable and self.attempts < self.max_attempts:
            self._move(DeliveryState.RETRY)
        else:
            self._move(DeliveryState.EXHAUSTED)
        return self.state
