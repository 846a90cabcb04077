"""Event Orchestrator.

An event-driven workflow engine:
- external events are persisted and matched against case-file rules
- rules dispatch to notifications, backend calls or workflow job control
- long-running jobs are resumed by cooperating workers over a message queue
"""

__version__ = "0.1.0"

from event_orchestrator.orchestrator.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
