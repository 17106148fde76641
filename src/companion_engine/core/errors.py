from __future__ import annotations


class CompanionEngineError(Exception):
    """Base class for engine errors."""


class TurnBusyError(CompanionEngineError):
    pass


class SessionEndedError(CompanionEngineError):
    pass


class SessionNotFoundError(CompanionEngineError):
    pass


class NarrativeStreamError(CompanionEngineError):
    """The narrative service stream failed mid-turn."""


class ImageSynthesisError(CompanionEngineError):
    pass


class ToolArgumentError(CompanionEngineError):
    pass
