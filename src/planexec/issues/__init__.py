"""Issue store and failure logger."""

from .logger import IssueLogger, IssueStore, LogOutcome, LogResult, issue_id_for

__all__ = ["IssueLogger", "IssueStore", "LogOutcome", "LogResult", "issue_id_for"]
