"""Network analysis job handler: fetch, resolve mutuals, build graph, detect communities."""
import asyncio
import logging
from typing import Callable

from .bsky_client import Account
from .cache import CacheService, MEDIUM
from .communities import Community, detect_communities
from .config import Settings, settings as default_settings
from .errors import AuthenticationError, ProviderError
from .graph import Connection, Graph, GraphEdge, build_graph
from .models import Job, utc_now
from .mutuals import resolve_mutuals
from .progress import ProgressTracker, Stage


logger = logging.getLogger(__name__)


class NetworkAnalyzer:
    """
    Handler for network_analysis jobs.

    Progress steps: initializing (0) -> collecting (1) -> analyzing (2) ->
    processing (3) -> completed (4).
    """

    def __init__(
        self,
        cache: CacheService,
        config: Settings = None,
        detect: Callable[[Graph], list[Community]] = detect_communities,
    ):
        self.cache = cache
        self.config = config or default_settings
        self.detect = detect
        self.sample_size = self.config.interconnect_sample_size

    async def process_job(self, job: Job, tracker: ProgressTracker) -> dict:
        handle = job.handle
        force = bool(job.payload.get("force"))
        logger.info(f"Analyzing network for {handle} (job {job.id}, force={force})")

        tracker.update(Stage.INITIALIZING, 0, f"Starting network analysis for {handle}")

        profile = await self.cache.get_profile(handle, force=force)

        if not force:
            cached = self.cache.get_analysis(handle)
            if cached is not None:
                logger.info(f"Using cached analysis for {handle}")
                tracker.update(
                    Stage.COMPLETED, 4, "Analysis complete (cached)",
                    discovered_communities=len(cached["communities"]),
                )
                return cached

        followers = await self.cache.get_connections(handle, "followers", force)
        following = await self.cache.get_connections(handle, "following", force)
        mutuals = resolve_mutuals(followers, following)
        self.cache.set(f"mutuals:{handle}", [m.to_dict() for m in mutuals], MEDIUM)
        processed_nodes = len(followers) + len(following)
        logger.info(
            f"{handle}: {len(followers)} followers, {len(following)} following, "
            f"{len(mutuals)} mutuals"
        )

        tracker.update(
            Stage.COLLECTING, 1, "Processing connections",
            processed_nodes=processed_nodes,
        )

        extra_edges = await self.collect_interconnections(mutuals, force)

        tracker.update(
            Stage.ANALYZING, 2, "Analyzing mutual connections",
            processed_nodes=processed_nodes,
            processed_edges=len(mutuals) + len(extra_edges),
        )

        graph = build_graph(
            profile.did,
            [Connection(profile.did, mutual, "mutual") for mutual in mutuals],
            extra_edges,
            subject=profile,
        )
        # CPU-bound; keep the event loop free for other jobs
        communities = await asyncio.to_thread(self.detect, graph)

        tracker.update(
            Stage.PROCESSING, 3, "Processing final results",
            processed_nodes=processed_nodes,
            processed_edges=len(graph.edges),
            discovered_communities=len(communities),
        )

        analysis = {
            "subjectId": profile.did,
            "handle": handle,
            "stats": {
                "followers": len(followers),
                "following": len(following),
                "mutuals": len(mutuals),
            },
            "communities": [community.to_dict() for community in communities],
            "lastUpdated": utc_now().isoformat(),
        }
        self.cache.store_analysis(analysis)

        tracker.update(
            Stage.COMPLETED, 4, "Analysis complete",
            processed_nodes=processed_nodes,
            processed_edges=len(graph.edges),
            discovered_communities=len(communities),
        )
        return analysis

    async def collect_interconnections(
        self, mutuals: list[Account], force: bool = False
    ) -> list[GraphEdge]:
        """Edges between mutuals, from the following lists of the first N of them.

        A pair is ``mutual`` when both sampled accounts follow each other and
        ``follows`` otherwise.
        """
        if not self.sample_size or not mutuals:
            return []

        mutual_ids = {mutual.did for mutual in mutuals}
        follows: dict[str, set[str]] = {}
        for mutual in mutuals[:self.sample_size]:
            try:
                following = await self.cache.get_connections(mutual.handle, "following", force)
            except AuthenticationError:
                raise
            except ProviderError as e:
                logger.warning(f"Skipping interconnections for {mutual.handle}: {e}")
                continue
            follows[mutual.did] = {
                account.did for account in following
                if account.did in mutual_ids and account.did != mutual.did
            }

        edges = []
        seen = set()
        for source, targets in follows.items():
            for target in targets:
                pair = frozenset((source, target))
                if pair in seen:
                    continue
                seen.add(pair)
                reciprocal = source in follows.get(target, ())
                edges.append(GraphEdge(source, target, "mutual" if reciprocal else "follows"))

        logger.info(f"Found {len(edges)} edges between {len(follows)} sampled mutuals")
        return edges
