from enum import Enum


class EvolutionMode(str, Enum):
    """How a self-reflect node treats the evolution it proposes."""

    SUGGEST = "suggest"
    AUTO_APPLY = "auto-apply"
    DRY_RUN = "dry-run"


class EvolutionScope(str, Enum):
    """Categories of change a self-reflect node may be allowed to make."""

    PROMPTS = "prompts"
    MODELS = "models"
    TOOLS = "tools"
    NODES = "nodes"
    EDGES = "edges"
    PARAMETERS = "parameters"


ALL_SCOPES = tuple(EvolutionScope)
