from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"


@dataclass   # one per backup / SRP run
class BackupState:
    tag: str                     # backup tag carried into every stepBackup call
    has_run: bool = False        # last HasRun flag seen
    steps: int = 0               # number of step events emitted
    data: Any = None             # last decoded response
    status: str = RUNNING

    @property
    def done(self) -> bool:
        return self.status != RUNNING


@dataclass   # one per chunked or direct download
class DownloadState:
    backup_id: int
    destination: str
    part_id: int = 1
    segment_id: int = 1          # unused by direct downloads
    requests: int = 0            # download calls sent so far
    bytes_written: int = 0
    status: str = RUNNING

    @property
    def done(self) -> bool:
        return self.status != RUNNING

    def next_segment(self) -> None:
        self.segment_id += 1

    def next_part(self) -> None:
        self.part_id += 1
        self.segment_id = 1


class UpdateStage(Enum):
    DOWNLOAD = "updateDownload"
    EXTRACT = "updateExtract"
    INSTALL = "updateInstall"
    COMPLETED = "completed"

    def next(self) -> "UpdateStage":
        order = list(UpdateStage)
        return order[min(order.index(self) + 1, len(order) - 1)]


@dataclass   # position of one update pipeline run
class UpdateState:
    stage: UpdateStage = UpdateStage.DOWNLOAD
    responses: Dict[str, Any] = field(default_factory=dict)   # stage method -> payload
    status: str = RUNNING
    error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.status != RUNNING
