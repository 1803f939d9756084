"""In-memory cluster provider for local runs and tests."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
import itertools
from typing import Mapping

from core.errors import ProviderError
from core.logging import logger as LOGGER
from core.models import ClusterHandle, ClusterState
from services.providers.base import ClusterProvider


DEFAULT_MOCK_VERSION = "4.0.0-mock"


class MockProvider(ClusterProvider):
    """Provider that keeps clusters in memory and can be told to fail."""

    type = "mock"

    def __init__(
        self,
        *,
        failing_operations: set[str] | None = None,
        hibernate_result: bool = True,
        kubeconfig: bytes = b"apiVersion: v1\nkind: Config\n",
        logs: Mapping[str, bytes] | None = None,
        state_snapshot: Mapping[str, object] | None = None,
        default_version: str | None = DEFAULT_MOCK_VERSION,
        lifetime_hours: int = 6,
    ) -> None:
        self.failing_operations = set(failing_operations or ())
        self.hibernate_result = hibernate_result
        self.kubeconfig = kubeconfig
        self.cluster_logs = dict(logs or {})
        self.state_snapshot = dict(state_snapshot or {})
        self.calls: list[tuple[str, str]] = []
        self.properties: dict[str, dict[str, str]] = {}
        self._default_version = default_version
        self._lifetime = timedelta(hours=lifetime_hours)
        self._clusters: dict[str, ClusterHandle] = {}
        self._ids = itertools.count(1)

    @property
    def environment(self) -> str:
        return "mock"

    def add_cluster(self, cluster: ClusterHandle) -> None:
        self._clusters[cluster.id] = cluster

    def _check(self, operation: str, cluster_id: str = "") -> None:
        self.calls.append((operation, cluster_id))
        if operation in self.failing_operations:
            raise ProviderError(operation, cluster_id or None, "injected mock failure")

    def _require(self, operation: str, cluster_id: str) -> ClusterHandle:
        self._check(operation, cluster_id)
        cluster = self._clusters.get(cluster_id)
        if cluster is None:
            raise ProviderError(operation, cluster_id, "no such cluster")
        return cluster

    def provision(self, *, name: str, version: str) -> ClusterHandle:
        self._check("provision")
        cluster_id = f"mock-{next(self._ids)}"
        created_at = datetime.now(timezone.utc)
        cluster = ClusterHandle(
            id=cluster_id,
            name=name or cluster_id,
            version=version,
            cloud_provider="mock",
            region="mock-region-1",
            state=ClusterState.READY,
            created_at=created_at,
            expires_at=created_at + self._lifetime,
        )
        self._clusters[cluster_id] = cluster
        LOGGER.info("[MockProvider] Provisioned %s (%s)", cluster_id, version)
        return cluster

    def get_cluster(self, cluster_id: str) -> ClusterHandle:
        return self._require("get_cluster", cluster_id)

    def get_kubeconfig(self, cluster_id: str) -> bytes:
        self._require("get_kubeconfig", cluster_id)
        return self.kubeconfig

    def delete(self, cluster_id: str) -> None:
        cluster = self._require("delete", cluster_id)
        self._clusters[cluster_id] = replace(cluster, state=ClusterState.DEPROVISIONED)

    def hibernate(self, cluster_id: str) -> bool:
        try:
            cluster = self._require("hibernate", cluster_id)
        except ProviderError as exc:
            LOGGER.warning("[MockProvider] %s", exc)
            return False
        if self.hibernate_result:
            self._clusters[cluster_id] = replace(cluster, state=ClusterState.HIBERNATING)
        return self.hibernate_result

    def extend_expiry(self, cluster_id: str, hours: int) -> None:
        cluster = self._require("extend_expiry", cluster_id)
        if cluster.expires_at is not None:
            self._clusters[cluster_id] = replace(
                cluster,
                expires_at=cluster.expires_at + timedelta(hours=hours),
            )

    def expire(self, cluster_id: str) -> None:
        cluster = self._require("expire", cluster_id)
        self._clusters[cluster_id] = replace(cluster, expires_at=datetime.now(timezone.utc))

    def upgrade(self, cluster_id: str, *, release_name: str, image: str) -> None:
        cluster = self._require("upgrade", cluster_id)
        target = release_name or image
        self._clusters[cluster_id] = replace(cluster, version=target)

    def logs(self, cluster_id: str) -> Mapping[str, bytes]:
        self._require("logs", cluster_id)
        return dict(self.cluster_logs)

    def add_property(self, cluster_id: str, key: str, value: str) -> None:
        self._require("add_property", cluster_id)
        self.properties.setdefault(cluster_id, {})[key] = value

    def inspect_state(self, cluster_id: str) -> Mapping[str, object]:
        self._require("inspect_state", cluster_id)
        return dict(self.state_snapshot)

    def default_version(self) -> str | None:
        return self._default_version

    def operations(self) -> list[str]:
        return [operation for operation, _ in self.calls]
