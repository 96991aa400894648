from .config import EngineConfig, configure_logging
from .core import EngineContext, GameBrain
from .errors import InvalidMoveError, MalformedStateError, RpsLabError

__all__ = [
    "EngineConfig",
    "EngineContext",
    "GameBrain",
    "InvalidMoveError",
    "MalformedStateError",
    "RpsLabError",
    "configure_logging",
]
