"""
Route Historian: location-aware historical exploration

Follows the observer's position, asks a grounded language model for the
history of nearby places, keeps a deduplicated collection of what was
found and narrates short highlights out loud.

Two operating modes:
- standing: explore on demand, highlights shown as a popup
- driving: one automatic lookup per drive, highlights spoken
"""

__version__ = "1.0.0"
__author__ = "Route Historian Team"

from .models import (
    ContextResult,
    ExplorationMode,
    OrchestratorSnapshot,
    Outcome,
    Phase,
    Place,
    Position,
)
from .orchestrator import ExplorationOrchestrator
from .session import ExplorationSession

__all__ = [
    "ContextResult",
    "ExplorationMode",
    "ExplorationOrchestrator",
    "ExplorationSession",
    "OrchestratorSnapshot",
    "Outcome",
    "Phase",
    "Place",
    "Position",
]
