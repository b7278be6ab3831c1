"""
Transfer Records

One record per transfer, on each side. Records are created when a send
starts (outbound) or when metadata arrives (inbound), mutated as chunks
move, and terminal at COMPLETED or FAILED.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class TransferStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class Direction(Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


TERMINAL_STATUSES = (TransferStatus.COMPLETED, TransferStatus.FAILED)


@dataclass
class TransferRecord:
    """Track one transfer's progress."""
    id: str
    name: str
    total_size: int
    mime_type: str
    direction: Direction

    # Offset (outbound) or received bytes (inbound)
    transferred: int = 0
    status: TransferStatus = TransferStatus.PENDING

    error: Optional[str] = None
    insight: Optional[str] = None
    local_path: Optional[str] = None

    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def progress_percent(self) -> float:
        """Progress as percentage, 100 only when every byte has moved."""
        if self.total_size == 0:
            return 100.0 if self.status is TransferStatus.COMPLETED else 0.0
        return min(100.0, self.transferred / self.total_size * 100)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def elapsed_seconds(self) -> float:
        end = self.completed_at or time.time()
        return end - self.created_at

    @property
    def speed_bytes_per_sec(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.transferred / elapsed

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'name': self.name,
            'total_size': self.total_size,
            'mime_type': self.mime_type,
            'direction': self.direction.value,
            'transferred': self.transferred,
            'status': self.status.value,
            'progress_percent': self.progress_percent,
            'speed_bytes_per_sec': self.speed_bytes_per_sec,
            'error': self.error,
            'insight': self.insight,
            'local_path': self.local_path,
            'created_at': self.created_at,
            'completed_at': self.completed_at,
        }
