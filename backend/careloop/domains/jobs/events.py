"""
Event and timer names carried on the jobs table.

Timer names end in ``_due``; everything else is a fact that already happened.
"""


class Events:
    PATIENT_DISCHARGED = "patient.discharged"

    OUTREACH_ATTEMPT_DUE = "outreach.attempt_due"
    OUTREACH_ATTEMPT_TIMEOUT = "outreach.attempt_timeout_due"
    ATTEMPT_OUTCOME = "attempt.outcome"

    RISK_SIGNAL = "risk.signal"
    EPISODE_RISK_UPGRADED = "episode.risk_upgraded"

    TASK_CREATED = "task.created"
    TASK_ASSIGNED = "task.assigned"
    TASK_ASSIGNMENT_RETRY = "task.assignment_retry_due"
    TASK_SLA_WARNING_DUE = "task.sla_warning_due"
    TASK_SLA_BREACH_DUE = "task.sla_breach_due"
    TASK_SLA_WARNING = "task.sla_warning"
    TASK_SLA_BREACH = "task.sla_breach"
    TASK_RESOLVED = "task.resolved"

    NURSE_ACTIVATED = "nurse.activated"

    NOTIFICATION_SEND = "notification.send"
    NOTIFICATION_RETRY = "notification.retry_due"


class AlertKinds:
    CONFIGURATION = "configuration"
    DEAD_JOB = "dead_job"
