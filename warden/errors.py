class WardenError(Exception):
    pass


class InvalidTransition(WardenError):
    def __init__(self, session_id: str, current: str, target: str):
        self.session_id = session_id
        self.current = current
        self.target = target
        super().__init__(f"Session {session_id}: cannot go from {current} to {target}")


class GatewayError(WardenError):
    """Raised inside the retry loop when a completion comes back unsuccessful."""
