"""
FinOps Monitoring Module
========================

Bounded Context for FinOps subtask SLA monitoring and escalation.

Responsibilities:
- Decide which recurring tasks are scheduled on a given date
- Classify subtasks against their daily start time (warning / overdue)
- Guard subtask status transitions and the reasons they require
- Promote breached pending subtasks to overdue automatically
- Re-alert reporting and escalation managers on a fixed cadence
- Provide an API for task ingestion, status updates and SLA visibility
"""

__version__ = "1.0.0"
