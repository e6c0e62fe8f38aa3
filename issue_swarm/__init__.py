"""
Issue Swarm - event-driven orchestration of AI task trees for GitHub issues.

Turns a labeled issue into merged code by decomposing it into EM and Worker
tasks, each driven through branch, pull request, review and merge by
externally triggered events.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
