"""
Run Record Writer
=================
Serializes PipelineRun records into one JSON file per run so the run
history survives a restart of the orchestrator.

Layout:
    <directory>/<run_id>.json

Writes go to a temporary file first and are moved into place with
os.replace, so a reader never sees a half-written record.
"""
import json
import logging
import os
from typing import List

from app.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)


class RunRecordWriter:
    """Persists and reloads PipelineRun JSON records."""

    def __init__(self, directory: str) -> None:
        self.directory = os.path.abspath(directory)
        os.makedirs(self.directory, exist_ok=True)

    def path_for(self, run_id: str) -> str:
        return os.path.join(self.directory, f"{run_id}.json")

    def write_run(self, run: PipelineRun) -> bool:
        """Write one run record. Returns False (and logs) on I/O failure."""
        target = self.path_for(run.id)
        tmp = f"{target}.tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(run.model_dump(mode="json"), f, indent=2)
            os.replace(tmp, target)
            return True
        except OSError as e:
            logger.error("Failed to write run record %s: %s", target, e, exc_info=True)
            return False

    def load_all(self) -> List[PipelineRun]:
        """Load every readable record, oldest first. Corrupt files are skipped."""
        runs: List[PipelineRun] = []
        for name in sorted(os.listdir(self.directory)):
            if not name.endswith(".json"):
                continue
            path = os.path.join(self.directory, name)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    runs.append(PipelineRun.model_validate(json.load(f)))
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable run record %s: %s", path, e)
        runs.sort(key=lambda r: r.created_at)
        logger.info("Loaded %d run record(s) from %s", len(runs), self.directory)
        return runs
