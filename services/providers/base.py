"""Cluster provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
import time
from typing import Callable, Mapping

from core.errors import ProviderError
from core.logging import logger as LOGGER
from core.models import ClusterHandle, ClusterState


_TERMINAL_STATES = {
    ClusterState.ERROR,
    ClusterState.UNINSTALLING,
    ClusterState.DEPROVISIONED,
}


class ClusterProvider(ABC):
    """Capabilities the orchestrator needs from a cluster backend.

    Every call may raise ``ProviderError``. ``hibernate`` reports failure through
    its return value because the orchestrator treats it as best effort.
    """

    type: str = "abstract"

    @property
    def environment(self) -> str:
        return "local"

    @abstractmethod
    def provision(self, *, name: str, version: str) -> ClusterHandle:
        """Request a new cluster and return its handle immediately."""

    @abstractmethod
    def get_cluster(self, cluster_id: str) -> ClusterHandle:
        """Return the current view of a cluster."""

    def get_state(self, cluster_id: str) -> ClusterState:
        return self.get_cluster(cluster_id).state

    @abstractmethod
    def get_kubeconfig(self, cluster_id: str) -> bytes:
        """Return admin kubeconfig contents for the cluster."""

    @abstractmethod
    def delete(self, cluster_id: str) -> None:
        """Delete the cluster."""

    @abstractmethod
    def hibernate(self, cluster_id: str) -> bool:
        """Hibernate the cluster, returning False when it could not be hibernated."""

    @abstractmethod
    def extend_expiry(self, cluster_id: str, hours: int) -> None:
        """Push the cluster expiration out by ``hours``."""

    @abstractmethod
    def expire(self, cluster_id: str) -> None:
        """Mark the cluster to expire as soon as possible."""

    @abstractmethod
    def upgrade(self, cluster_id: str, *, release_name: str, image: str) -> None:
        """Upgrade the cluster and block until the upgrade finishes."""

    def logs(self, cluster_id: str) -> Mapping[str, bytes]:
        """Return provider-side logs keyed by log name."""

        return {}

    def add_property(self, cluster_id: str, key: str, value: str) -> None:
        """Attach a key/value property to the cluster record."""

    def inspect_state(self, cluster_id: str) -> Mapping[str, object]:
        """Return a snapshot of cluster resources keyed by resource type."""

        return {}

    def default_version(self) -> str | None:
        """Version installed when none is configured, if the backend has one."""

        return None


def wait_for_ready(
    provider: ClusterProvider,
    cluster_id: str,
    *,
    timeout_s: float,
    poll_interval_s: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ClusterHandle:
    """Poll the provider until the cluster reports Ready."""

    deadline = clock() + timeout_s
    last_state: ClusterState | None = None
    while True:
        cluster = provider.get_cluster(cluster_id)
        if cluster.state != last_state:
            LOGGER.info("[Provider] Cluster %s is %s", cluster_id, cluster.state.value)
            last_state = cluster.state
        if cluster.state == ClusterState.READY:
            return cluster
        if cluster.state in _TERMINAL_STATES:
            raise ProviderError(
                "wait_for_ready",
                cluster_id,
                f"cluster entered state {cluster.state.value}",
            )
        if clock() >= deadline:
            raise ProviderError(
                "wait_for_ready",
                cluster_id,
                f"cluster not ready after {timeout_s:.0f}s (state {cluster.state.value})",
            )
        sleep(poll_interval_s)
