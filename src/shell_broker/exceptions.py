"""shell-broker exception hierarchy.

Every error the control protocol can recover from knows how to render
itself as the observation line sent back to the peer.
"""


class BrokerError(Exception):
    """Base exception for all broker errors."""

    @property
    def observation(self) -> str:
        return "observation: something went wrong"


class UnknownSessionError(BrokerError):
    """Raised when a message references a shell id that does not exist."""

    def __init__(self, session_id: str):
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id

    @property
    def observation(self) -> str:
        return f"observation: can't find shell with ID '{self.session_id}'"


class NoActiveSessionError(BrokerError):
    """Raised when input is sent before any shell has been opened."""

    def __init__(self):
        super().__init__("No active session")

    @property
    def observation(self) -> str:
        return "observation: there are no shells open"


class MalformedMessageError(BrokerError):
    """Raised when a control message cannot be parsed."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    @property
    def observation(self) -> str:
        return f"observation: could not parse message: {self.reason}"


class UnsupportedMessageType(BrokerError):
    """Raised for a well-formed message whose type the broker does not know."""

    def __init__(self, message_type: str):
        super().__init__(f"Unsupported message type: {message_type}")
        self.message_type = message_type

    @property
    def observation(self) -> str:
        return f"observation: unsupported message type '{self.message_type}'"


class ProcessSpawnError(BrokerError):
    """Raised when a shell subprocess could not be launched."""

    def __init__(self, session_id: str, shell_path: str):
        super().__init__(f"Failed to spawn {shell_path} for session {session_id}")
        self.session_id = session_id
        self.shell_path = shell_path

    @property
    def observation(self) -> str:
        return f"observation: failed to start shell '{self.session_id}' using '{self.shell_path}'"


class SessionClosedError(BrokerError):
    """Raised when writing to a shell whose process is gone."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is closed")
        self.session_id = session_id

    @property
    def observation(self) -> str:
        return f"observation: shell '{self.session_id}' is no longer running"


class DuplicateSessionError(BrokerError):
    """Raised when opening a shell under an id that is still running."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} already exists")
        self.session_id = session_id

    @property
    def observation(self) -> str:
        return f"observation: a shell with ID '{self.session_id}' is already running"


class SessionLimitError(BrokerError):
    """Raised when the live shell cap has been reached."""

    def __init__(self, limit: int):
        super().__init__(f"Session limit of {limit} reached")
        self.limit = limit

    @property
    def observation(self) -> str:
        return f"observation: can't open more than {self.limit} shells"
