import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.exceptions import DuplicateBatchError, PipelineException
from models.base import DataKind
from ingestion.runner import PipelineRunner

logger = logging.getLogger(__name__)

# <COMPANY>_<KIND>[anything].csv, e.g. KM_PRODUCT_20251020.csv
INBOUND_PATTERN = re.compile(r"^(?P<company>[A-Za-z0-9]+)_(?P<kind>PRODUCT|EVENT)(?:[_\-.].*)?\.csv$", re.IGNORECASE)


def parse_inbound_name(name: str) -> Optional[Tuple[str, DataKind]]:
    """(company_cd, data_kind) encoded in an inbound file name, or None"""
    match = INBOUND_PATTERN.match(name)
    if not match:
        return None
    return match.group("company").upper(), DataKind(match.group("kind").upper())


class PipelineScheduler:
    def __init__(self, runner: Optional[PipelineRunner] = None, inbound_dir: Optional[str] = None):
        self.scheduler = AsyncIOScheduler()
        self.runner = runner or PipelineRunner()
        self.inbound_dir = Path(inbound_dir or settings.INBOUND_DIR)

    def scan(self) -> List[Path]:
        if not self.inbound_dir.is_dir():
            logger.warning(f"Scheduler: inbound directory {self.inbound_dir} does not exist")
            return []
        return sorted(
            p for p in self.inbound_dir.iterdir()
            if p.is_file() and parse_inbound_name(p.name) is not None
        )

    async def run_pipeline_job(self):
        """Job: resume abandoned batches, then ingest every new inbound file"""
        logger.info("Scheduler: Starting pipeline job")

        try:
            while await self.runner.run_next() is not None:
                pass
        except PipelineException as e:
            logger.error(f"Scheduler: resuming a batch failed - {e}")

        for path in self.scan():
            company_cd, data_kind = parse_inbound_name(path.name)
            try:
                result = await self.runner.run_file(path, company_cd, data_kind)
                logger.info(f"Scheduler: {path.name} → {result['batch_id']} {result['status']}")
            except DuplicateBatchError:
                logger.debug(f"Scheduler: {path.name} already ingested")
            except PipelineException as e:
                logger.error(f"Scheduler: {path.name} failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_pipeline_job,
            trigger=IntervalTrigger(minutes=settings.SCHEDULER_INTERVAL_MINUTES),
            id="pipeline_job",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info("Pipeline Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Pipeline Scheduler stopped")
