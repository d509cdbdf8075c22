# Agents layer - agent invocation, concern verification and turn processing

from agents.runner import AgentRequest, AgentResult, AgentRunner, ClaudeCliRunner, invoke_with_fallback
from agents.decision_validator import DecisionValidator, ValidationResult
from agents.result_processor import SessionResultProcessor, TurnOutcome

__all__ = [
    # Runner
    "AgentRequest",
    "AgentResult",
    "AgentRunner",
    "ClaudeCliRunner",
    "invoke_with_fallback",
    # Verification
    "DecisionValidator",
    "ValidationResult",
    # Turns
    "SessionResultProcessor",
    "TurnOutcome",
]
