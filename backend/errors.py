"""Game errors raised by rooms and the registry.

The socket manager turns these into wire messages: turn violations go back
to the offending connection as ``error-message``, capacity violations become
a failed create/join result.
"""


class GameError(Exception):
    message = "Game error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.message)

    @property
    def text(self) -> str:
        return str(self)


# --- Turn violations ---

class TurnViolation(GameError):
    message = "Action not allowed right now"


class NotYourTurnError(TurnViolation):
    message = "It's not your turn"


class AlreadyInProgressError(TurnViolation):
    message = "A turn is already in progress"


class GameNotActiveError(TurnViolation):
    message = "The game is not in progress"


class OpponentMissingError(TurnViolation):
    message = "Your opponent left the match"


# --- Capacity violations ---

class CapacityViolation(GameError):
    message = "Room unavailable"


class RoomFullError(CapacityViolation):
    message = "Room is full"


class AlreadyStartedError(CapacityViolation):
    message = "The match has already started"


class RoomNotFoundError(CapacityViolation):
    message = "Room not found"


class DuplicateCodeError(CapacityViolation):
    message = "Room code already exists"


class AlreadyInRoomError(CapacityViolation):
    message = "You are already in a room"


class TooManyRoomsError(CapacityViolation):
    message = "Too many active rooms. Please try again later."
