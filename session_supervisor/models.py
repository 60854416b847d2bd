"""Data models for the session supervisor."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class MonitorPhase(Enum):
    """Output monitor run lifecycle."""
    IDLE = "idle"                  # Not started yet
    POLLING = "polling"            # Capturing output each tick
    COMPLETED = "completed"        # Idle prompt detected
    STALLED_TIMEOUT = "stalled"    # Output stopped changing for too long
    FAILED = "failed"              # Capture failed, run aborted


@dataclass
class MonitorState:
    """State owned by a single output monitor run."""
    last_output: str = ""
    unchanged_ticks: int = 0
    running: bool = False
    phase: MonitorPhase = MonitorPhase.IDLE
    ticks: int = 0
    started_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "running": self.running,
            "unchanged_ticks": self.unchanged_ticks,
            "ticks": self.ticks,
            "output_length": len(self.last_output),
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


@dataclass(frozen=True)
class ResourceStatus:
    """Context window usage reported by the status source."""
    usage: float  # 0.0 - 1.0
    token_count: int = 0
    max_tokens: int = 200_000

    @property
    def percentage(self) -> str:
        return f"{self.usage * 100:.1f}%"


@dataclass(frozen=True)
class RestartRecord:
    """A single automatic restart attempt."""
    at: float  # Clock reading (seconds) when the restart started


@dataclass
class HealthState:
    """Consecutive probe failures seen by the health check."""
    consecutive_failures: int = 0
    last_check: Optional[datetime] = None
    last_healthy: Optional[bool] = None
    escalations: int = 0

    def to_dict(self) -> dict:
        return {
            "consecutive_failures": self.consecutive_failures,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_healthy": self.last_healthy,
            "escalations": self.escalations,
        }


@dataclass
class CompletedOutput:
    """Last finished response, kept in memory for /detail."""
    user_id: int
    prompt: str
    output: str
    stalled: bool = False
    completed_at: datetime = field(default_factory=datetime.now)
