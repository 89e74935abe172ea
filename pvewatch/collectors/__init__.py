"""Data collectors - Proxmox REST API and a simulated cluster."""

from .base import UpstreamClient, CollectorError
from .proxmox import ProxmoxCollector
from .mock import MockCollector

__all__ = [
    "UpstreamClient",
    "CollectorError",
    "ProxmoxCollector",
    "MockCollector",
]
