"""Upload record state machine."""

from shared.schemas.upload import UploadStatus


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        current_state: UploadStatus,
        target_state: UploadStatus,
        message: str | None = None,
    ):
        self.current_state = current_state
        self.target_state = target_state
        self.message = message or f"Invalid transition from {current_state} to {target_state}"
        super().__init__(self.message)


class StateMachine:
    """Upload lifecycle state machine.

    Valid transitions:
    - pending -> uploaded (storage provider confirmed the object)
    - pending -> failed (credential could not be issued)
    - pending -> expired (credential lapsed with no confirmation)

    Every other state is terminal.
    """

    VALID_TRANSITIONS: set[tuple[UploadStatus, UploadStatus]] = {
        (UploadStatus.PENDING, UploadStatus.UPLOADED),
        (UploadStatus.PENDING, UploadStatus.FAILED),
        (UploadStatus.PENDING, UploadStatus.EXPIRED),
    }

    @classmethod
    def is_valid_transition(
        cls,
        current_state: UploadStatus,
        target_state: UploadStatus,
    ) -> bool:
        """Check if a state transition is valid."""
        return (current_state, target_state) in cls.VALID_TRANSITIONS

    @classmethod
    def validate_transition(
        cls,
        current_state: UploadStatus,
        target_state: UploadStatus,
    ) -> None:
        """Validate a state transition, raising an error if invalid.

        Raises:
            InvalidTransitionError: If transition is not valid
        """
        if not cls.is_valid_transition(current_state, target_state):
            raise InvalidTransitionError(current_state, target_state)

    @classmethod
    def get_valid_next_states(
        cls,
        current_state: UploadStatus,
    ) -> list[UploadStatus]:
        """Get list of valid next states from current state."""
        return sorted(
            (target for (source, target) in cls.VALID_TRANSITIONS if source == current_state),
            key=lambda s: s.value,
        )

    @classmethod
    def is_terminal_state(cls, state: UploadStatus) -> bool:
        """Check if a state is terminal (no valid transitions out)."""
        return not cls.get_valid_next_states(state)
