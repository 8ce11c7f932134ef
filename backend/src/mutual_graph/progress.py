"""Progress reporting: in-process publish/subscribe plus per-job trackers."""
import asyncio
import logging
from dataclasses import dataclass, field, asdict
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError


logger = logging.getLogger(__name__)

TOTAL_STEPS = 4


class Stage:
    INITIALIZING = "initializing"
    COLLECTING = "collecting"
    ANALYZING = "analyzing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


# Event types published alongside progress updates
CREATED = "created"
STARTED = "started"
PROGRESS = "progress"
RETRYING = "retrying"
COMPLETED = "completed"
FAILED = "failed"
RATE_LIMITED = "rate_limited"

FINAL_EVENTS = (COMPLETED, FAILED, RATE_LIMITED)


@dataclass
class ProgressDetails:
    processedNodes: int = 0
    processedEdges: int = 0
    discoveredCommunities: int = 0


@dataclass
class ProgressUpdate:
    stage: str
    current: int
    total: int = TOTAL_STEPS
    message: str = ""
    details: ProgressDetails = field(default_factory=ProgressDetails)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def initial(cls) -> "ProgressUpdate":
        return cls(Stage.INITIALIZING, 0, message="Starting network analysis")


class ProgressBroker:
    """Fan-out of job events to live subscribers.

    publish() never blocks and never raises: with no subscriber the event is
    dropped, and a full subscriber queue loses its oldest event.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: dict[Optional[str], list[asyncio.Queue]] = {}

    def subscribe(self, job_id: Optional[str] = None) -> asyncio.Queue:
        """Queue receiving events for job_id, or for every job when None."""
        queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.setdefault(job_id, []).append(queue)
        return queue

    def unsubscribe(self, job_id: Optional[str], queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(job_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(job_id, None)

    def subscriber_count(self, job_id: Optional[str] = None) -> int:
        return len(self._subscribers.get(job_id, []))

    def publish(self, job_id, event_type: str, data: dict = None) -> int:
        """Deliver an event; returns the number of subscribers reached."""
        event = {"type": event_type, "jobId": str(job_id), "data": data or {}}
        delivered = 0
        for key in (str(job_id), None):
            for queue in list(self._subscribers.get(key, [])):
                if queue.full():
                    try:
                        queue.get_nowait()
                    except asyncio.QueueEmpty:
                        pass
                try:
                    queue.put_nowait(event)
                    delivered += 1
                except asyncio.QueueFull:
                    logger.warning(f"Dropped {event_type} event for job {job_id}")
        return delivered


class ProgressTracker:
    """Persists and publishes progress for one job; current never goes down."""

    def __init__(self, job_id, store, broker: ProgressBroker, last: dict = None):
        self.job_id = job_id
        self.store = store
        self.broker = broker
        self.current = (last or {}).get("current", 0)
        self.last: Optional[ProgressUpdate] = None

    def update(
        self,
        stage: str,
        current: int,
        message: str,
        processed_nodes: int = 0,
        processed_edges: int = 0,
        discovered_communities: int = 0,
    ) -> ProgressUpdate:
        if current < self.current:
            logger.debug(
                f"Job {self.job_id}: progress {current} below {self.current}, holding"
            )
            current = self.current
        self.current = current

        update = ProgressUpdate(
            stage=stage,
            current=current,
            message=message,
            details=ProgressDetails(
                processedNodes=processed_nodes,
                processedEdges=processed_edges,
                discoveredCommunities=discovered_communities,
            ),
        )
        self.last = update
        payload = update.to_dict()

        try:
            self.store.save_progress(self.job_id, payload)
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist progress for job {self.job_id}: {e}")

        self.broker.publish(self.job_id, PROGRESS, payload)
        return update

    def error(self, message: str) -> ProgressUpdate:
        """Terminal error stage, keeping the last reached step."""
        details = self.last.details if self.last else ProgressDetails()
        return self.update(
            Stage.ERROR,
            self.current,
            f"Analysis failed: {message}",
            details.processedNodes,
            details.processedEdges,
            details.discoveredCommunities,
        )
