"""
Topic routing between canonical and concrete topic names.

Multi-datacenter deployments prefix every canonical topic with a cluster
name ("north.mediawiki.revision-create"). Offsets are kept per concrete
topic, so identical canonical topics in different clusters are independent
partitions.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Set, Tuple


@dataclass(frozen=True)
class ClusterTopic:
    """A canonical topic as seen in one cluster (or without a cluster)."""
    cluster: Optional[str]
    canonical_topic: str

    @property
    def concrete(self) -> str:
        if self.cluster:
            return f"{self.cluster}.{self.canonical_topic}"
        return self.canonical_topic


class ClusterRouter:
    """Expands canonical topics per cluster and maps concrete names back."""

    def __init__(self, clusters: Iterable[str] = ()):
        self.clusters: Tuple[str, ...] = tuple(sorted(set(clusters)))

    def topics(self, canonical: Iterable[str]) -> Set[str]:
        """Concrete topic names to subscribe to."""
        return expand_topics(self.clusters, canonical)

    def split(self, concrete_topic: str) -> ClusterTopic:
        """Separate a known cluster prefix from the canonical topic name."""
        for cluster in self.clusters:
            prefix = f"{cluster}."
            if concrete_topic.startswith(prefix):
                return ClusterTopic(cluster, concrete_topic[len(prefix):])
        return ClusterTopic(None, concrete_topic)

    def canonical_of(self, concrete_topic: str) -> str:
        return self.split(concrete_topic).canonical_topic

    def cluster_of(self, concrete_topic: str) -> Optional[str]:
        return self.split(concrete_topic).cluster


def expand_topics(clusters: Iterable[str], canonical: Iterable[str]) -> Set[str]:
    """
    Cross product of clusters and canonical topics.

    With no clusters configured (single-cluster deployment) the canonical
    topic names are returned unchanged.
    """
    canonical = set(canonical)
    clusters = set(clusters)
    if not clusters:
        return canonical
    return {
        ClusterTopic(cluster, topic).concrete
        for cluster in clusters
        for topic in canonical
    }
