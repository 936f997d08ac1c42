"""
Standup Orchestrator

Runs a team's daily status workflow through a chat workspace:
- Morning check-in threads per assignee, with a reply quality gate
- A daily report thread carrying an allocation proposal
- Human-approved mutations of the task source (react or press Approve)
- Snapshot-based analytics (consumption pace, weekly diff, stagnation)
- Reminder subscriptions and direct-mention requests
"""

__version__ = "0.1.0"
