"""
Conversation Data Models
========================

Data classes and enums shared by the streaming pipeline and the orchestrator:
the persisted Session record, the PartialResponse snapshot streamed to the
consumer, and the StreamingFile artifacts produced in the coding stage.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ============================================================================
# Enumerations
# ============================================================================

class Stage(str, Enum):
    """Conversation stages, in order. DONE is terminal."""
    WELCOME = "welcome"
    INFO_COLLECTION = "info_collection"
    DESIGN = "design"
    CODING = "coding"
    DONE = "done"


class SessionStatus(str, Enum):
    """Session status enumeration."""
    ACTIVE = "active"
    PAUSED = "paused"  # Consumer disconnected mid-turn
    COMPLETED = "completed"
    ABANDONED = "abandoned"  # Idle past the abandonment threshold


class ExecutionStatus(str, Enum):
    """Status of one strategy invocation."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FileStatus(str, Enum):
    """Lifecycle of a generated file."""
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"


FILE_TRANSITIONS: Dict[FileStatus, tuple] = {
    FileStatus.PENDING: (FileStatus.STREAMING, FileStatus.COMPLETED, FileStatus.ERROR),
    FileStatus.STREAMING: (FileStatus.COMPLETED, FileStatus.ERROR),
    FileStatus.COMPLETED: (),
    FileStatus.ERROR: (),
}


# ============================================================================
# Session record
# ============================================================================

@dataclass
class HistoryEntry:
    """One message in the conversation history."""
    role: str  # user | assistant | system
    content: str
    timestamp: datetime = field(default_factory=utc_now)
    agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": _iso(self.timestamp),
            "agent": self.agent,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryEntry':
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            timestamp=_parse_dt(data.get("timestamp")) or utc_now(),
            agent=data.get("agent"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class AgentExecution:
    """Record of one strategy invocation for a turn."""
    stage: Stage
    agent_name: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    user_input: Optional[str] = None  # raw input, directives included
    forced: bool = False
    test_mode: bool = False
    output: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None

    def finish(self, status: ExecutionStatus, output: Optional[Dict[str, Any]] = None,
               error: Optional[Dict[str, Any]] = None) -> None:
        self.status = status
        self.ended_at = utc_now()
        if output is not None:
            self.output = output
        if error is not None:
            self.error = error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "execution_id": self.execution_id,
            "stage": self.stage.value,
            "agent_name": self.agent_name,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "user_input": self.user_input,
            "forced": self.forced,
            "test_mode": self.test_mode,
            "output": self.output,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentExecution':
        return cls(
            stage=Stage(data["stage"]),
            agent_name=data.get("agent_name", data["stage"]),
            status=ExecutionStatus(data.get("status", ExecutionStatus.RUNNING.value)),
            execution_id=data.get("execution_id") or str(uuid.uuid4()),
            started_at=_parse_dt(data.get("started_at")) or utc_now(),
            ended_at=_parse_dt(data.get("ended_at")),
            user_input=data.get("user_input"),
            forced=data.get("forced", False),
            test_mode=data.get("test_mode", False),
            output=data.get("output"),
            error=data.get("error"),
        )


@dataclass
class SessionMetrics:
    """Aggregate counters for a session."""
    turn_count: int = 0
    stage_transitions: int = 0
    errors_encountered: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn_count": self.turn_count,
            "stage_transitions": self.stage_transitions,
            "errors_encountered": self.errors_encountered,
        }


@dataclass
class Session:
    """
    One conversation.

    Invariants kept by the orchestrator: at most one execution is RUNNING,
    current_stage only moves forward outside an explicit reset, and DONE is
    terminal.
    """
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: SessionStatus = SessionStatus.ACTIVE
    current_stage: Stage = Stage.WELCOME
    completed_stages: List[Stage] = field(default_factory=list)
    progress: int = 0
    history: List[HistoryEntry] = field(default_factory=list)
    executions: List[AgentExecution] = field(default_factory=list)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    collected_data: Dict[str, Any] = field(default_factory=dict)
    stage_outputs: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    last_activity: datetime = field(default_factory=utc_now)

    def touch(self) -> None:
        self.last_activity = utc_now()

    def running_execution(self) -> Optional[AgentExecution]:
        for execution in reversed(self.executions):
            if execution.status == ExecutionStatus.RUNNING:
                return execution
        return None

    def last_execution(self) -> Optional[AgentExecution]:
        return self.executions[-1] if self.executions else None

    def add_message(self, role: str, content: str, agent: Optional[str] = None,
                    metadata: Optional[Dict[str, Any]] = None) -> HistoryEntry:
        entry = HistoryEntry(role=role, content=content, agent=agent, metadata=metadata or {})
        self.history.append(entry)
        return entry

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "current_stage": self.current_stage.value,
            "completed_stages": [stage.value for stage in self.completed_stages],
            "progress": self.progress,
            "history": [entry.to_dict() for entry in self.history],
            "executions": [execution.to_dict() for execution in self.executions],
            "metrics": self.metrics.to_dict(),
            "collected_data": self.collected_data,
            "stage_outputs": self.stage_outputs,
            "created_at": _iso(self.created_at),
            "last_activity": _iso(self.last_activity),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        """Rebuild a session from its persisted JSON form."""
        metrics = data.get("metrics") or {}
        return cls(
            session_id=data["session_id"],
            status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
            current_stage=Stage(data.get("current_stage", Stage.WELCOME.value)),
            completed_stages=[Stage(s) for s in data.get("completed_stages", [])],
            progress=data.get("progress", 0),
            history=[HistoryEntry.from_dict(h) for h in data.get("history", [])],
            executions=[AgentExecution.from_dict(e) for e in data.get("executions", [])],
            metrics=SessionMetrics(
                turn_count=metrics.get("turn_count", 0),
                stage_transitions=metrics.get("stage_transitions", 0),
                errors_encountered=metrics.get("errors_encountered", 0),
            ),
            collected_data=data.get("collected_data") or {},
            stage_outputs=data.get("stage_outputs") or {},
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            last_activity=_parse_dt(data.get("last_activity")) or utc_now(),
        )


# ============================================================================
# Streamed response
# ============================================================================

@dataclass
class ImmediateDisplay:
    """Human-readable reply, updated character by character."""
    reply: str = ""
    agent_name: Optional[str] = None
    timestamp: Optional[str] = None
    thinking: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"reply": self.reply, "agent_name": self.agent_name, "timestamp": self.timestamp}
        if self.thinking is not None:
            data["thinking"] = self.thinking
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ImmediateDisplay':
        reply = data.get("reply", "")
        return cls(
            reply=reply if isinstance(reply, str) else str(reply),
            agent_name=data.get("agent_name"),
            timestamp=data.get("timestamp"),
            thinking=data.get("thinking"),
        )


@dataclass
class SystemState:
    """Machine-readable turn state."""
    intent: Optional[str] = None
    current_stage: Optional[str] = None
    progress: int = 0
    done: bool = False
    next_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "intent": self.intent,
            "current_stage": self.current_stage,
            "progress": self.progress,
            "done": self.done,
            "metadata": self.metadata,
        }
        if self.next_agent is not None:
            data["next_agent"] = self.next_agent
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SystemState':
        progress = data.get("progress", 0)
        try:
            progress = int(progress)
        except (TypeError, ValueError):
            progress = 0
        metadata = data.get("metadata")
        return cls(
            intent=data.get("intent"),
            current_stage=data.get("current_stage"),
            progress=progress,
            done=bool(data.get("done", False)),
            next_agent=data.get("next_agent"),
            metadata=metadata if isinstance(metadata, dict) else {},
        )


@dataclass
class PartialResponse:
    """
    The unit streamed to the consumer.

    All three regions are optional while the response is in flight;
    ``interaction`` only ever appears whole.
    """
    immediate_display: Optional[ImmediateDisplay] = None
    interaction: Optional[Dict[str, Any]] = None
    system_state: Optional[SystemState] = None

    @property
    def reply(self) -> str:
        return self.immediate_display.reply if self.immediate_display else ""

    @property
    def done(self) -> bool:
        return bool(self.system_state and self.system_state.done)

    def copy(self) -> 'PartialResponse':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: Dict[str, Any] = {}
        if self.immediate_display is not None:
            data["immediate_display"] = self.immediate_display.to_dict()
        if self.interaction is not None:
            data["interaction"] = self.interaction
        if self.system_state is not None:
            data["system_state"] = self.system_state.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PartialResponse':
        """Build from a decoded document; unknown regions are ignored."""
        display = data.get("immediate_display")
        interaction = data.get("interaction")
        state = data.get("system_state")
        return cls(
            immediate_display=ImmediateDisplay.from_dict(display) if isinstance(display, dict) else None,
            interaction=interaction if isinstance(interaction, dict) else None,
            system_state=SystemState.from_dict(state) if isinstance(state, dict) else None,
        )

    @classmethod
    def error(cls, message: str, stage: Optional[str], progress: int = 0,
              agent_name: str = "system", metadata: Optional[Dict[str, Any]] = None) -> 'PartialResponse':
        """
        Build the single terminal snapshot for a turn that ended in error.

        Args:
            message: Text shown to the user
            stage: Session's current stage (unchanged by the failure)
            progress: Session progress
            agent_name: Originating agent
            metadata: Error details (error_code, category, recoverable)
        """
        return cls(
            immediate_display=ImmediateDisplay(
                reply=message,
                agent_name=agent_name,
                timestamp=utc_now().isoformat(),
            ),
            system_state=SystemState(
                intent="error",
                current_stage=stage,
                progress=progress,
                done=True,
                metadata=metadata or {},
            ),
        )


# ============================================================================
# Generated files
# ============================================================================

@dataclass
class StreamingFile:
    """One generated artifact, keyed by filename."""
    filename: str
    content: str = ""
    language: str = "text"
    type: str = "file"
    description: Optional[str] = None
    status: FileStatus = FileStatus.PENDING
    progress: int = 0

    def can_transition(self, target: FileStatus) -> bool:
        return target == self.status or target in FILE_TRANSITIONS[self.status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "content": self.content,
            "language": self.language,
            "type": self.type,
            "description": self.description,
            "status": self.status.value,
            "progress": self.progress,
        }
