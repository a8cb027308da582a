"""Issue lifecycle tracking"""
from ghissuemarket.core.issue.tracker import IssueTracker

__all__ = ["IssueTracker"]
