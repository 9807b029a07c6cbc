class DispatchError(Exception):
    """Base class for errors raised by the dispatch core."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(DispatchError):
    """Malformed input, rejected before any mutation."""


class NotFound(DispatchError):
    pass


class Conflict(DispatchError):
    """Valid input that is illegal given the current state.

    ``rule`` names the violated rule so callers can react to it.
    """

    def __init__(self, rule: str, message: str):
        super().__init__(message)
        self.rule = rule

    def as_dict(self) -> dict:
        return {"rule": self.rule, "message": self.message}


class Forbidden(Conflict):
    """The caller's role (or ownership) does not allow the operation."""

    def __init__(self, message: str, rule: str = "role_not_permitted"):
        super().__init__(rule, message)
