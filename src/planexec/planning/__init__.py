"""Plan records, the plan parser and the fix-plan generator."""

from .parser import load_plan, parse_plan
from .schema import Plan, Task, TaskKind

__all__ = ["Plan", "Task", "TaskKind", "load_plan", "parse_plan"]
