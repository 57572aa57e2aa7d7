"""Autonomous ReAct execution with self review."""

from chatloop.react.agent import ReactAgent, ReactAgentTool
from chatloop.react.critic import CriticModule
from chatloop.react.executor import ExecutorModule

__all__ = ["CriticModule", "ExecutorModule", "ReactAgent", "ReactAgentTool"]
