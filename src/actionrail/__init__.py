"""actionrail: declarative action execution with resilience and undoable state.

Usage:
    from actionrail import Engine, EngineConfig

    async with Engine(EngineConfig(db_path=":memory:")) as engine:
        engine.load_path("actions.json")
        result = await engine.execute("getMakes")

    # Or via CLI:
    $ actionrail run actions.json getMakes
"""

from actionrail.core.config import EngineConfig
from actionrail.core.errors import ActionError, StateError, ValidationError
from actionrail.core.models import ActionDefinition, ExecutionContext, ExecutionResult, TriggerType
from actionrail.engine import Engine

__version__ = "0.1.0"
__all__ = [
    "Engine",
    "EngineConfig",
    "ActionDefinition",
    "ExecutionContext",
    "ExecutionResult",
    "TriggerType",
    "ActionError",
    "StateError",
    "ValidationError",
]
