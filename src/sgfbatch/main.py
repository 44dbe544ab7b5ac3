from __future__ import annotations

import logging
import re
import subprocess
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Union

import psutil
import trio
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .models import BatchConfig, BatchSummary, ConversionResult, WorkItem

logger = logging.getLogger(__name__)
console = Console(stderr=True)

PathLike = Union[str, Path]
_LINE_BREAK = re.compile(r"\r\n|\r|\n")
ToolRunner = Callable[[WorkItem, BatchConfig], Awaitable[subprocess.CompletedProcess]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def setup_logging(config: BatchConfig) -> None:
    """Route log records to stderr and, if configured, a log file.

    Raises OSError before touching the root logger when the log file
    cannot be opened.
    """
    numeric_level = getattr(logging, config.log_level.upper(), logging.INFO)

    file_handler = None
    if config.log_file:
        file_handler = logging.FileHandler(config.log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        )

    logging.getLogger().handlers.clear()

    # stdout is reserved for the tool output pass-through
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    )
    logging.getLogger().addHandler(console_handler)
    if file_handler is not None:
        logging.getLogger().addHandler(file_handler)

    logging.getLogger().setLevel(numeric_level)


def load_config(config_path: Optional[str]) -> BatchConfig:
    if not config_path:
        return BatchConfig()
    try:
        with open(config_path, "r") as fh:
            data = yaml.safe_load(fh) or {}
        return BatchConfig(**data)
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", config_path)
    except Exception as exc:
        logger.warning("Config load failed (%s); using defaults", exc)
    return BatchConfig()


class CompletionBarrier:
    """Count-down latch that releases its waiters once every item has reported.

    Each worker calls :meth:`count_down` exactly once, whatever happened to
    its item. All calls happen on the trio loop, so the counter needs no lock.
    """

    def __init__(self, count: int) -> None:
        if count < 0:
            raise ValueError("count must be >= 0")
        self._remaining = count
        self._released = trio.Event()
        if count == 0:
            self._released.set()

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def released(self) -> bool:
        return self._released.is_set()

    def count_down(self) -> None:
        if self._remaining == 0:
            raise RuntimeError("count_down called more times than items submitted")
        self._remaining -= 1
        if self._remaining == 0:
            self._released.set()

    async def wait(self) -> None:
        await self._released.wait()


class WorkerPool:
    """Bounded set of worker slots with an active-count high-water mark."""

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError("Worker pool size must be >= 1")
        self.size = size
        self.active = 0
        self.peak = 0
        self._semaphore = trio.Semaphore(size)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._semaphore:
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                yield
            finally:
                self.active -= 1


def list_source_entries(source_dir: PathLike) -> List[Path]:
    """Every direct entry of ``source_dir``, files and directories alike."""
    return sorted(Path(source_dir).iterdir())


def build_work_items(entries: List[Path], dest_dir: PathLike) -> List[WorkItem]:
    dest = str(Path(dest_dir).absolute())
    return [
        WorkItem(source_path=str(entry.absolute()), dest_dir=dest)
        for entry in entries
    ]


def join_output(raw: Optional[bytes]) -> str:
    text = (raw or b"").decode("utf-8", errors="replace")
    lines = _LINE_BREAK.split(text)
    if lines[-1] == "":
        lines.pop()
    return "\n".join(lines)


def emit_output(text: str) -> None:
    print(text, flush=True)


async def run_conversion_tool(
    item: WorkItem, config: BatchConfig
) -> subprocess.CompletedProcess:
    # stderr is left inherited; only stdout is captured
    return await trio.run_process(
        item.command(config.tool_command),
        cwd=config.tool_cwd,
        capture_stdout=True,
        check=False,
        stdin=subprocess.DEVNULL,
    )


async def process_work_item(
    item: WorkItem,
    config: BatchConfig,
    pool: WorkerPool,
    barrier: CompletionBarrier,
    results: List[ConversionResult],
    run_tool: ToolRunner = run_conversion_tool,
) -> ConversionResult:
    result = ConversionResult.for_item(item)
    try:
        async with pool.slot():
            result.status = "running"
            result.started_at = utcnow().isoformat()
            start_perf = time.perf_counter()
            logger.debug("[START] %s", item.name)
            try:
                if config.item_timeout is not None:
                    with trio.fail_after(config.item_timeout):
                        completed = await run_tool(item, config)
                else:
                    completed = await run_tool(item, config)
                emit_output(join_output(completed.stdout))
            except Exception as exc:
                result.status = "failed"
                result.error_message = (
                    f"Timed out after {config.item_timeout}s"
                    if isinstance(exc, trio.TooSlowError)
                    else f"{type(exc).__name__}: {exc}"
                )
                logger.exception("[FAIL] %s", item.source_path)
            else:
                result.status = "completed"
                result.exit_code = completed.returncode
                if completed.returncode != 0:
                    logger.warning(
                        "[DONE] %s (tool exited with code %s)",
                        item.name,
                        completed.returncode,
                    )
                else:
                    logger.debug("[DONE] %s", item.name)
            finally:
                result.completed_at = utcnow().isoformat()
                result.duration_sec = time.perf_counter() - start_perf
    finally:
        results.append(result)
        barrier.count_down()
    return result


async def monitor_cpu_usage(config: BatchConfig, cpu_readings: List[float]) -> None:
    """Sample system CPU load until the surrounding scope is cancelled."""
    psutil.cpu_percent(interval=None)
    high_load = False
    while True:
        await trio.sleep(config.cpu_sample_interval)
        cpu = psutil.cpu_percent(interval=None)
        cpu_readings.append(cpu)

        if cpu > config.cpu_threshold and not high_load:
            logger.warning("[CPU] High load detected (%.1f%%)", cpu)
            high_load = True
        elif cpu <= config.cpu_threshold and high_load:
            logger.info("[CPU] Load normalized (%.1f%%)", cpu)
            high_load = False


def render_reports(summary: BatchSummary, results: List[ConversionResult]) -> None:
    status_colors = {
        "success": "green",
        "completed": "green",
        "partial": "yellow",
        "failed": "red",
        "empty": "blue",
        "dry_run": "blue",
    }

    summary_table = Table(title="Batch Summary", show_header=True)
    summary_table.add_column("Metric", style="cyan", no_wrap=True)
    summary_table.add_column("Value", style="magenta")

    summary_table.add_row("Total Files", str(summary.total_files))
    summary_table.add_row(
        "Completed", f"[green]{summary.completed_files}[/green]"
    )
    summary_table.add_row("Failed", f"[red]{summary.failed_files}[/red]")
    summary_table.add_row(
        "Nonzero Exit", f"[yellow]{summary.nonzero_exit_files}[/yellow]"
    )
    summary_table.add_row("Peak Workers", str(summary.peak_workers))
    summary_table.add_row("Duration (s)", f"{summary.duration_sec:.2f}")
    if summary.avg_cpu_usage is not None:
        summary_table.add_row("Avg CPU (%)", f"{summary.avg_cpu_usage:.1f}")
    color = status_colors.get(summary.status, "white")
    summary_table.add_row("Status", f"[{color}]{summary.status}[/{color}]")

    console.print(summary_table)
    if not results:
        return

    file_table = Table(title="Per-File Results", show_header=True)
    file_table.add_column("Entry", style="cyan")
    file_table.add_column("Status", style="magenta")
    file_table.add_column("Exit", justify="right")
    file_table.add_column("Duration (s)", justify="right")
    file_table.add_column("Error", style="red")

    for result in sorted(results, key=lambda r: r.source_path):
        r_color = status_colors.get(result.status, "white")
        duration_str = (
            f"{result.duration_sec:.2f}"
            if result.duration_sec is not None
            else "-"
        )
        exit_str = str(result.exit_code) if result.exit_code is not None else "-"
        error_excerpt = result.error_message or ""
        if len(error_excerpt) > 80:
            error_excerpt = error_excerpt[:80] + "..."
        file_table.add_row(
            result.name,
            f"[{r_color}]{result.status}[/{r_color}]",
            exit_str,
            duration_str,
            error_excerpt,
        )

    console.print(file_table)


async def convert_async(
    source_dir: PathLike,
    dest_dir: PathLike,
    concurrency: int,
    config: Optional[BatchConfig] = None,
    run_tool: ToolRunner = run_conversion_tool,
) -> BatchSummary:
    """Run the tool once per entry of ``source_dir``, ``concurrency`` at a time.

    Returns once every item has completed or failed. Per-item failures are
    logged and recorded in the summary, never raised.
    """
    if config is None:
        config = BatchConfig(max_workers=concurrency)
    items = build_work_items(list_source_entries(source_dir), dest_dir)
    logger.info("file count : %d", len(items))

    started_at = utcnow()

    if config.dry_run:
        console.print(
            Panel(
                "\n".join(f"- {item.source_path}" for item in items)
                or "No entries found.",
                title="Dry Run: entries that would be converted",
                style="blue",
            )
        )
        summary = BatchSummary.from_results(
            [],
            started_at=started_at,
            completed_at=utcnow(),
            status_override="dry_run",
        )
        summary.total_files = len(items)
        return summary

    pool = WorkerPool(concurrency)
    barrier = CompletionBarrier(len(items))
    results: List[ConversionResult] = []
    cpu_readings: List[float] = []

    async with trio.open_nursery() as nursery:
        if config.monitor_cpu and items:
            nursery.start_soon(monitor_cpu_usage, config, cpu_readings)
        for item in items:
            nursery.start_soon(
                process_work_item, item, config, pool, barrier, results, run_tool
            )
        await barrier.wait()
        nursery.cancel_scope.cancel()

    avg_cpu = sum(cpu_readings) / len(cpu_readings) if cpu_readings else None
    summary = BatchSummary.from_results(
        results,
        started_at=started_at,
        completed_at=utcnow(),
        avg_cpu=avg_cpu,
        peak_workers=pool.peak,
    )
    logger.info(
        "Batch %s: %d completed, %d failed of %d",
        summary.status,
        summary.completed_files,
        summary.failed_files,
        summary.total_files,
    )
    if config.report:
        render_reports(summary, results)
    return summary


def convert(
    source_dir: PathLike,
    dest_dir: PathLike,
    concurrency: int,
    config: Optional[BatchConfig] = None,
    run_tool: ToolRunner = run_conversion_tool,
) -> BatchSummary:
    return trio.run(
        partial(convert_async, source_dir, dest_dir, concurrency, config, run_tool)
    )


async def main_async(config: BatchConfig, source_dir: Path, dest_dir: Path) -> int:
    try:
        await convert_async(source_dir, dest_dir, config.max_workers, config)
    except Exception as exc:
        logger.error("Batch failed: %s", exc, exc_info=True)
        return 1
    return 0
