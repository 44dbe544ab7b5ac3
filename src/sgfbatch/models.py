from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _default_max_workers() -> int:
    """Choose a conservative default that keeps one core free."""
    return max(1, (os.cpu_count() or 2) - 1)


class BatchConfig(BaseModel):
    """Configuration for the batch converter."""

    model_config = ConfigDict(validate_assignment=True, extra="ignore", populate_by_name=True)

    tool_command: List[str] = Field(
        default_factory=lambda: ["./sgfutils.sh"],
        validation_alias=AliasChoices("tool_command", "tool"),
    )
    tool_cwd: str = Field(default="/app")
    max_workers: int = Field(
        default_factory=_default_max_workers,
        ge=1,
        validation_alias=AliasChoices("max_workers", "thread_count"),
    )
    item_timeout: Optional[float] = Field(default=None, gt=0)
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)
    cpu_threshold: float = Field(default=85.0, ge=0, le=100)
    cpu_sample_interval: float = Field(default=1.0, gt=0)
    monitor_cpu: bool = Field(default=True)
    report: bool = Field(default=True)
    dry_run: bool = Field(default=False)

    @field_validator("tool_command", mode="before")
    @classmethod
    def _normalize_tool_command(cls, value: Any) -> List[str]:
        if isinstance(value, (str, Path)):
            return [str(value)]
        return [str(v) for v in value]

    @field_validator("tool_command")
    @classmethod
    def _require_tool(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("tool_command must name an executable")
        return value

    @field_validator("tool_cwd", "log_file", mode="before")
    @classmethod
    def _normalize_path(cls, value: Any) -> Any:
        if value is None:
            return None
        return Path(value).as_posix()

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()


class WorkItem(BaseModel):
    """One source entry paired with the directory its conversion lands in."""

    model_config = ConfigDict(frozen=True)

    source_path: str
    dest_dir: str

    @property
    def name(self) -> str:
        return Path(self.source_path).name

    def command(self, tool_command: List[str]) -> List[str]:
        return [*tool_command, self.source_path, self.dest_dir]


class ConversionResult(BaseModel):
    """Outcome of a single work item."""

    source_path: str
    dest_dir: str
    status: str = "pending"
    exit_code: Optional[int] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_sec: Optional[float] = None
    error_message: Optional[str] = None

    @classmethod
    def for_item(cls, item: WorkItem, **fields: Any) -> "ConversionResult":
        return cls(source_path=item.source_path, dest_dir=item.dest_dir, **fields)

    @property
    def name(self) -> str:
        return Path(self.source_path).name


class BatchSummary(BaseModel):
    """Summary of the batch run."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    total_files: int
    completed_files: int
    failed_files: int
    nonzero_exit_files: int = 0
    duration_sec: float
    avg_cpu_usage: Optional[float] = None
    peak_workers: int = 0
    errors: List[str] = Field(default_factory=list)
    started_at: str
    completed_at: str

    @classmethod
    def from_results(
        cls,
        results: List[ConversionResult],
        started_at: datetime,
        completed_at: datetime,
        avg_cpu: Optional[float] = None,
        peak_workers: int = 0,
        status_override: Optional[str] = None,
    ) -> "BatchSummary":
        completed = sum(1 for r in results if r.status == "completed")
        failed = sum(1 for r in results if r.status == "failed")
        nonzero = sum(
            1 for r in results if r.exit_code is not None and r.exit_code != 0
        )
        total = len(results)

        if status_override:
            status = status_override
        elif total == 0:
            status = "empty"
        elif failed == 0:
            status = "success"
        elif completed > 0:
            status = "partial"
        else:
            status = "failed"

        errors = [
            f"{r.name}: {r.error_message}" for r in results if r.error_message
        ]

        duration_sec = max(0.0, (completed_at - started_at).total_seconds())

        return cls(
            status=status,
            total_files=total,
            completed_files=completed,
            failed_files=failed,
            nonzero_exit_files=nonzero,
            duration_sec=duration_sec,
            avg_cpu_usage=avg_cpu,
            peak_workers=peak_workers,
            errors=errors,
            started_at=started_at.isoformat(),
            completed_at=completed_at.isoformat(),
        )
