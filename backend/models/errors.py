"""Game-level errors. Routers translate these into HTTP / WebSocket errors."""


class GameError(RuntimeError):
    code = "GAME_ERROR"


class RoomNotFoundError(GameError):
    code = "ROOM_NOT_FOUND"


class InvalidMatchStateError(GameError):
    code = "INVALID_MATCH_STATE"


class WrongPhaseError(GameError):
    code = "WRONG_PHASE"


class InvalidActionError(GameError):
    code = "INVALID_ACTION"


class PromptPoolEmptyError(GameError):
    """No active prompt exists even after refreshing the pool cache."""
    code = "PROMPT_POOL_EMPTY"
