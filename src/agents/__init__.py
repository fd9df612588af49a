"""Agents - pluggable handlers invoked by AGENT steps."""

from .base import AgentHandler, AgentRequest, AgentResponse, AgentTrace, AgentUsage
from .openai_agent import OpenAIAgent
from .registry import AgentRegistry

__all__ = [
    "AgentHandler",
    "AgentRequest",
    "AgentResponse",
    "AgentTrace",
    "AgentUsage",
    "AgentRegistry",
    "OpenAIAgent",
]
