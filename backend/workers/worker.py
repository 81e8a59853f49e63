"""
Worker process hosting the analysis dispatcher.

Reads analysis requests from JSON files, runs them through the dispatcher and writes each
result next to the others in the output directory. SIGTERM/SIGINT trigger a graceful
dispatcher shutdown that snapshots unfinished work to Redis for the next start.
"""
import asyncio
import json
import logging
import signal
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from personality_engine.config import settings
from personality_engine.database import create_engine_instance, get_session_factory, init_db
from personality_engine.dispatcher import Dispatcher, WorkKind
from personality_engine.job_store import SqlJobStore
from personality_engine.llm_client import TextGenerationClient
from personality_engine.observability import MetricsCollector
from personality_engine.pipeline_orchestrator import PipelineOrchestrator
from personality_engine.queue_state import QueueStateStore
from personality_engine.rate_limiter import RateLimiter
from personality_engine.utils.io import write_json_atomic

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)

logger = logging.getLogger(__name__)

class AnalysisWorker:
    """Owns the dispatcher and everything it depends on for one process lifetime."""

    def __init__(self, output_dir: Path, redis_client=None, client: Optional[TextGenerationClient] = None):
        self.output_dir = Path(output_dir)
        self.metrics = MetricsCollector()

        if settings.DATABASE_URL.startswith("sqlite:///"):
            Path(settings.DATABASE_URL[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        engine = init_db(create_engine_instance())
        self.job_store = SqlJobStore(get_session_factory(engine))

        self.client = client or TextGenerationClient(metrics=self.metrics)
        self.orchestrator = PipelineOrchestrator(self.client, self.job_store, metrics=self.metrics)
        self.dispatcher = Dispatcher(
            self.orchestrator,
            self.client,
            RateLimiter(),
            state_store=QueueStateStore(redis_client),
            metrics=self.metrics,
        )
        self.dispatcher.add_cleanup_handler(self._log_metrics)
        self._outstanding: Dict[str, float] = {}
        self._idle: Optional[asyncio.Event] = None
        self._stop: Optional[asyncio.Event] = None

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop):
        def handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            loop.call_soon_threadsafe(self._stop.set)

        signal.signal(signal.SIGTERM, handler)
        signal.signal(signal.SIGINT, handler)

    def _log_metrics(self):
        logger.info(json.dumps({'event': 'worker_metrics', **self.metrics.get_metrics_summary()}))

    def _result_path(self, item_id: str) -> Path:
        return self.output_dir / f"{item_id}.json"

    def _track(self, item_id: str):
        self._outstanding[item_id] = time.time()
        self._idle.clear()

    def _settle(self, item_id: str, document: Dict[str, Any]):
        started = self._outstanding.pop(item_id, time.time())
        document['duration_ms'] = int((time.time() - started) * 1000)
        document['finished_at'] = datetime.now(timezone.utc).isoformat()
        write_json_atomic(self._result_path(item_id), document)
        if not self._outstanding:
            self._idle.set()

    def _callbacks(self, item_id_ref: List[str]):
        def on_complete(result):
            item_id = item_id_ref[0]
            self._settle(item_id, {'item_id': item_id, 'status': 'completed', 'result': result})

        def on_error(exc):
            item_id = item_id_ref[0]
            logger.error(f"Item {item_id} failed: {exc}")
            self._settle(item_id, {
                'item_id': item_id,
                'status': 'failed',
                'error': str(exc),
                'error_type': type(exc).__name__,
                'missing_fields': getattr(exc, 'missing_fields', None),
            })

        return on_complete, on_error

    def submit_request(self, request: Dict[str, Any]) -> str:
        """Enqueue one request document: {"kind", "identity", ...payload}."""
        kind = WorkKind(request.get('kind', WorkKind.ANALYZE.value))
        identity = request.get('identity') or 'anonymous'
        payload = {k: v for k, v in request.items() if k not in ('kind', 'identity')}
        ref: List[str] = []
        on_complete, on_error = self._callbacks(ref)
        item_id = self.dispatcher.enqueue(kind, payload, identity, on_complete=on_complete, on_error=on_error)
        ref.append(item_id)
        self._track(item_id)
        return item_id

    async def run(self, request_files: List[Path]) -> int:
        """Run until every request has settled or a shutdown signal arrives. Returns how many items never settled."""
        loop = asyncio.get_running_loop()
        self._idle = asyncio.Event()
        self._idle.set()
        self._stop = asyncio.Event()
        self._install_signal_handlers(loop)

        def restored_complete(result):
            logger.info(f"Restored item finished: {type(result).__name__}")

        def restored_error(exc):
            logger.error(f"Restored item failed: {exc}")

        restored = await self.dispatcher.start(restored_complete, restored_error)
        logger.info(json.dumps({
            'event': 'worker_start',
            'restored_items': restored,
            'requests': [str(p) for p in request_files],
            'started_at': datetime.now(timezone.utc).isoformat(),
        }))

        for path in request_files:
            request = json.loads(Path(path).read_text(encoding='utf-8'))
            item_id = self.submit_request(request)
            logger.info(f"Submitted {path} as {item_id}")

        idle = asyncio.ensure_future(self._idle.wait())
        stop = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({idle, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            idle.cancel()
            stop.cancel()
            await self.dispatcher.shutdown()

        logger.info(json.dumps({
            'event': 'worker_stop',
            'outstanding': len(self._outstanding),
            'stopped_at': datetime.now(timezone.utc).isoformat(),
        }))
        return len(self._outstanding)

def main():
    """Main entry point for the worker."""
    import argparse

    parser = argparse.ArgumentParser(description='Personality analysis worker')
    parser.add_argument('requests', nargs='*', type=Path, help='Request JSON files to analyze')
    parser.add_argument('--output-dir', type=Path, default=Path('results'),
                        help='Directory for result documents')
    parser.add_argument('--log-level', default='INFO', help='Logging level')

    args = parser.parse_args()
    logging.getLogger().setLevel(args.log_level.upper())

    worker = AnalysisWorker(args.output_dir)
    asyncio.run(worker.run(args.requests))

if __name__ == '__main__':
    main()
