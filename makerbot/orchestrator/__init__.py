"""
Orchestrator package.

Single owner of BotState; turns stream and timer events into engine calls.
"""

from makerbot.orchestrator.bot_orchestrator import BotOrchestrator, OrchestratorConfig

__all__ = [
    "BotOrchestrator",
    "OrchestratorConfig",
]
