"""
Quart app exposing run control over the proximity pipeline.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import time

from quart import Quart
from quart_cors import cors

from school_proximity.config import get_config, setup_logging
from school_proximity.models import RunReport
from school_proximity.pipeline import Pipeline
from school_proximity.services.orchestrator import BatchOrchestrator, CancellationToken
from school_proximity.services.persistence import SaveReport
from school_proximity.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

config = get_config()

app = Quart(__name__)
app = cors(app, allow_origin=config.cors_origin, allow_methods=["GET", "POST", "DELETE", "OPTIONS"])

session_manager = SessionManager(config)

# Built in before_serving; tests swap in their own
pipeline: Optional[Pipeline] = None


@dataclass
class RunHandle:
    run_id: str
    orchestrator: BatchOrchestrator
    token: CancellationToken
    category: str
    travel_mode: str
    created_at: float = field(default_factory=time.time)
    task: Optional[asyncio.Task] = None
    report: Optional[RunReport] = None
    save_report: Optional[SaveReport] = None
    finished_at: Optional[float] = None

    @property
    def done(self) -> bool:
        return self.report is not None

    @property
    def finished(self) -> bool:
        """The background task is over, whether it completed, crashed or was cancelled."""
        return self.finished_at is not None or (self.task is not None and self.task.done())

    @property
    def last_activity(self) -> float:
        return self.finished_at if self.finished_at is not None else self.created_at


# run_id -> RunHandle for running runs and recently finished ones
active_runs: Dict[str, RunHandle] = {}


def prune_runs(runs: Dict[str, RunHandle], retention_sec: float, max_finished: int,
               now: Optional[float] = None) -> List[str]:
    """Forget finished runs past their retention, then the oldest beyond ``max_finished``.

    Runs still in progress are never removed. Returns the removed run ids.
    """
    now = time.time() if now is None else now
    finished = sorted((h for h in runs.values() if h.finished), key=lambda h: h.last_activity)
    expired = [h.run_id for h in finished if now - h.last_activity > retention_sec]
    kept = [h.run_id for h in finished if h.run_id not in expired]
    overflow = kept[:max(0, len(kept) - max_finished)]

    removed = expired + overflow
    for run_id in removed:
        del runs[run_id]
    if removed:
        logger.info("Pruned %d finished runs (%d expired, %d over limit)", len(removed), len(expired), len(overflow))
    return removed


@app.before_serving
async def startup():
    global pipeline
    setup_logging(config)
    session = await session_manager.get_session()
    pipeline = Pipeline(session, config)
    logger.info("Pipeline ready (routing=%s, %d Overpass instances)",
                config.routing_config.provider, len(config.discovery_config.overpass_urls))


@app.after_serving
async def shutdown():
    for handle in active_runs.values():
        if handle.task is not None and not handle.task.done():
            handle.token.cancel()
    pending = [h.task for h in active_runs.values() if h.task is not None and not h.task.done()]
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    await session_manager.close()


from school_proximity.routes import register_blueprints  # noqa: E402

register_blueprints(app)
