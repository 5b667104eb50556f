class ChathubError(Exception):
    pass


class ConfigError(ChathubError):
    pass


class SessionNotFoundError(ChathubError):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class TurnInProgressError(ChathubError):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} already has a response in progress")
        self.session_id = session_id


class AssistantError(ChathubError):
    pass


class MessageNotFoundError(ChathubError):
    def __init__(self, session_id: str, message_id: str):
        super().__init__(f"Message {message_id} not found in session {session_id}")
        self.session_id = session_id
        self.message_id = message_id
