"""
Session Health
==============

Heuristic health assessment and recovery advice for a conversation session.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from stageflow.agent.models import ExecutionStatus, Session, utc_now

ERROR_WARNING_THRESHOLD = 2
ERROR_CRITICAL_THRESHOLD = 5
ERROR_RESTART_THRESHOLD = 3
SESSION_AGE_LIMIT = timedelta(minutes=30)
TURN_COUNT_LIMIT = 20
CRITICAL_ISSUE_COUNT = 3

TRANSIENT_MARKERS = ("fetch", "network", "timeout", "timed out", "connection")
PROCESSING_MARKERS = ("agent", "processing", "prerequisite")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    RESET = "reset"
    RESTART = "restart"


@dataclass
class SessionHealth:
    status: HealthStatus = HealthStatus.HEALTHY
    issues: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "issues": self.issues,
            "suggestions": self.suggestions,
        }


@dataclass
class RecoveryRecommendation:
    action: RecoveryAction
    reason: str
    target_stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "target_stage": self.target_stage,
        }


def assess_health(session: Session, now: Optional[datetime] = None) -> SessionHealth:
    """
    Assess a session from its error count, age, failed executions and turn count.

    Three or more issues, or more than five errors, is critical; any issue
    is a warning.
    """
    now = now or utc_now()
    health = SessionHealth()
    errors = session.metrics.errors_encountered

    if errors > ERROR_CRITICAL_THRESHOLD:
        health.issues.append(f"{errors} errors encountered")
        health.suggestions.append("Start a new session")
    elif errors > ERROR_WARNING_THRESHOLD:
        health.issues.append(f"{errors} errors encountered")
        health.suggestions.append("If errors continue, reset to the previous stage")

    age = now - session.created_at
    if age > SESSION_AGE_LIMIT:
        health.issues.append(f"Session has been open for {int(age.total_seconds() // 60)} minutes")
        health.suggestions.append("Save progress and consider starting over")

    failed = [e for e in session.executions if e.status == ExecutionStatus.FAILED]
    if failed:
        health.issues.append(f"{len(failed)} agent execution(s) failed")
        health.suggestions.append("Retry the last turn or reset to the stage before the failure")

    if session.metrics.turn_count > TURN_COUNT_LIMIT:
        health.issues.append(f"{session.metrics.turn_count} turns so far")
        health.suggestions.append("The flow may need simplifying")

    if len(health.issues) >= CRITICAL_ISSUE_COUNT or errors > ERROR_CRITICAL_THRESHOLD:
        health.status = HealthStatus.CRITICAL
    elif health.issues:
        health.status = HealthStatus.WARNING
    return health


def recommend_recovery(session: Session, error_message: str,
                       now: Optional[datetime] = None) -> RecoveryRecommendation:
    """
    Suggest how to recover from an error.

    Transient failures are retried, processing failures reset the current
    stage, and unstable sessions are restarted.
    """
    message = (error_message or "").lower()

    if any(marker in message for marker in TRANSIENT_MARKERS):
        return RecoveryRecommendation(RecoveryAction.RETRY, "Network or model API error; retry the turn")

    if any(marker in message for marker in PROCESSING_MARKERS):
        return RecoveryRecommendation(
            RecoveryAction.RESET,
            "Agent processing error; reset the current stage",
            target_stage=session.current_stage.value,
        )

    health = assess_health(session, now)
    if health.status == HealthStatus.CRITICAL or session.metrics.errors_encountered > ERROR_RESTART_THRESHOLD:
        return RecoveryRecommendation(RecoveryAction.RESTART, "Session state is unstable; start over")

    return RecoveryRecommendation(RecoveryAction.RETRY, "Try the last operation again")
