"""Audit history of analysis measurements.

Every MetricResult is kept in memory per analysis run and, when a history
directory is configured, appended to ``<dir>/<run_id>.jsonl``.
"""
import asyncio
import json
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from src.canary.models.analysis import MetricResult


class AnalysisHistoryStore:
    """Bounded in-memory store with optional JSON-lines persistence."""

    def __init__(self, directory: Optional[str] = None, max_runs: int = 1000):
        self._lock = asyncio.Lock()
        self._results: "OrderedDict[str, List[MetricResult]]" = OrderedDict()
        self.max_runs = max_runs
        self.directory = Path(directory) if directory else None
        if self.directory:
            self.directory.mkdir(parents=True, exist_ok=True)

    async def record(self, run_id: str, result: MetricResult) -> None:
        async with self._lock:
            self._results.setdefault(run_id, []).append(result)
            self._results.move_to_end(run_id)
            while len(self._results) > self.max_runs:
                evicted, _ = self._results.popitem(last=False)
                logger.debug(f"Evicted analysis history for run {evicted}")

        if self.directory:
            await asyncio.to_thread(self._append, run_id, result)

    def _append(self, run_id: str, result: MetricResult) -> None:
        path = self.directory / f"{run_id}.jsonl"
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(result.to_dict()) + "\n")

    async def history(self, run_id: str) -> List[MetricResult]:
        async with self._lock:
            results = list(self._results.get(run_id, []))
        if not results and self.directory:
            results = await asyncio.to_thread(self._load, run_id)
        return results

    def _load(self, run_id: str) -> List[MetricResult]:
        path = self.directory / f"{run_id}.jsonl"
        if not path.exists():
            return []
        with open(path, encoding="utf-8") as f:
            return [MetricResult.from_dict(json.loads(line)) for line in f if line.strip()]

    async def summary(self) -> Dict[str, int]:
        """Measurement count per run id."""
        async with self._lock:
            return {run_id: len(results) for run_id, results in self._results.items()}
