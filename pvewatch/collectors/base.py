"""Base collector interface for upstream cluster sources."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from ..data.models import (
    Alert,
    BackupJob,
    ClusterSnapshot,
    HistoricalMetrics,
    LogEntry,
    MetricsSeries,
    ServiceStatus,
    TimeRange,
    VmAction,
    VmList,
)


class UpstreamClient(ABC):
    """Abstract base class for cluster data sources.

    The event engine only needs :meth:`get_cluster_summary`; the remaining
    operations back the REST endpoints. Every data operation is a coroutine
    so the caller can bound it with a timeout or cancel it.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this collector.

        Returns:
            A short, lowercase identifier (e.g., 'proxmox', 'mock')
        """
        pass

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable name for UI display."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this collector has what it needs to run."""
        pass

    @abstractmethod
    async def get_cluster_summary(self) -> ClusterSnapshot:
        """Fetch the current state of every node.

        Raises:
            CollectorError: If the upstream cannot be reached or answers badly.
        """
        pass

    @abstractmethod
    async def get_node_metrics(self, node: str, range_seconds: float) -> MetricsSeries:
        pass

    @abstractmethod
    async def get_historical_metrics(
        self,
        node: str,
        time_range: Union[TimeRange, str],
        vmid: Optional[int] = None,
    ) -> HistoricalMetrics:
        pass

    @abstractmethod
    async def get_vm_list(self) -> VmList:
        pass

    @abstractmethod
    async def perform_vm_action(self, node: str, vmid: int, action: Union[VmAction, str]) -> Dict[str, Any]:
        """Ask the hypervisor to run a power action.

        Returns:
            ``{"success": bool, "message": str}``
        """
        pass

    @abstractmethod
    async def get_system_logs(self, node: str, limit: int = 50, since: Optional[int] = None) -> List[LogEntry]:
        pass

    @abstractmethod
    async def get_backup_jobs(self, node: Optional[str] = None) -> List[BackupJob]:
        pass

    @abstractmethod
    async def get_service_status(self, node: str) -> List[ServiceStatus]:
        pass

    @abstractmethod
    async def get_active_alerts(self) -> List[Alert]:
        pass

    @abstractmethod
    async def acknowledge_alert(self, alert_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_version(self) -> Dict[str, Any]:
        pass

    def close(self) -> None:
        """Release any held resources."""

    def get_status(self) -> Dict[str, Any]:
        """Get collector status information.

        Returns:
            Dictionary with status details including availability.
        """
        return {
            "name": self.name,
            "display_name": self.display_name,
            "available": self.is_available(),
        }


class CollectorError(Exception):
    """Exception raised when a collector fails to collect data."""

    def __init__(self, collector_name: str, message: str, cause: Optional[Exception] = None):
        self.collector_name = collector_name
        self.message = message
        self.cause = cause
        super().__init__(f"[{collector_name}] {message}")
