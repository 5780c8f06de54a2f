class LiveInterviewError(Exception):
    """Base class for every error raised by the interview engine."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class MicrophoneError(LiveInterviewError):
    user_message = "Microphone could not be opened."


class MicrophonePermissionDenied(MicrophoneError):
    user_message = (
        "Microphone access denied. Please allow microphone access and restart the interview."
    )


class MicrophoneUnavailable(MicrophoneError):
    user_message = "No microphone was found. Connect an input device and restart the interview."


class BootstrapError(LiveInterviewError):
    """The session-start collaborator did not hand out credentials."""

    user_message = "Failed to start session"


class TransportError(LiveInterviewError):
    user_message = "Connection error. Please try again."


class SetupTimeout(TransportError):
    user_message = "Connection timeout. Please try again."


class CredentialsAlreadyUsed(TransportError):
    user_message = "Connection credentials can only be used once."


class InvalidStateTransition(LiveInterviewError):
    def __init__(self, current, target):
        super().__init__(f"Cannot move from {current} to {target}")
        self.current = current
        self.target = target
