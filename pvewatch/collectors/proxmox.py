"""Proxmox VE REST API collector.

Talks to ``<base_url>/api2/json`` with API token authentication and turns
the responses into :mod:`pvewatch.data.models` objects.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import logging
import re
import threading
import warnings
from typing import Any, Dict, List, Optional, Set, Union
from urllib.parse import quote, urlsplit

import certifi
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
import urllib3

from .. import __version__
from ..data.models import (
    Alert,
    BackupJob,
    ClusterSnapshot,
    HistoricalMetrics,
    LogEntry,
    MetricsSeries,
    ServiceStatus,
    TimeRange,
    ValidationError,
    VmAction,
    VmList,
    validate_node_name,
)
from ..data.normalization import (
    build_cluster_snapshot,
    derive_alerts,
    normalize_backup_jobs,
    normalize_historical_metrics,
    normalize_log_entries,
    normalize_metrics_series,
    normalize_services,
    normalize_vm_list,
    rrd_timeframe,
)
from .base import CollectorError, UpstreamClient

logger = logging.getLogger(__name__)

API_PREFIX = "/api2/json"
DEFAULT_TIMEOUT = 10.0
DEFAULT_CA_BUNDLE = certifi.where()

# Power actions that Proxmox names differently
ACTION_VERBS = {
    VmAction.START: "start",
    VmAction.STOP: "stop",
    VmAction.RESTART: "reboot",
    VmAction.PAUSE: "suspend",
    VmAction.RESUME: "resume",
    VmAction.SHUTDOWN: "shutdown",
    VmAction.RESET: "reset",
}


def auth_header(token_id: Optional[str], token_secret: Optional[str]) -> Optional[str]:
    if not token_id or not token_secret:
        return None
    return f"PVEAPIToken={token_id}={token_secret}"


class ProxmoxCollector(UpstreamClient):
    """Collector for a Proxmox VE cluster.

    Blocking ``requests`` calls run in a worker thread so the event loop is
    never held up by the upstream. TLS verification belongs to this
    instance's session only.
    """

    def __init__(
        self,
        base_url: str,
        token_id: Optional[str] = None,
        token_secret: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        verify: bool = True,
        ca_bundle: Optional[str] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.token_id = token_id
        self.token_secret = token_secret
        self.timeout = timeout
        self._verify = self._determine_verify(not verify, ca_bundle)
        self._session: Optional[requests.Session] = None
        self._session_lock = threading.Lock()
        self._acknowledged: Set[str] = set()

        if self._verify is False:
            self._ignore_insecure_warnings()

    @property
    def name(self) -> str:
        return "proxmox"

    @property
    def display_name(self) -> str:
        return "Proxmox VE"

    @property
    def verify(self) -> Union[bool, str]:
        return self._verify

    def is_available(self) -> bool:
        """Available once a base URL and a complete API token are configured."""
        return bool(self.base_url) and auth_header(self.token_id, self.token_secret) is not None

    def api_url(self, path: str) -> str:
        return f"{self.base_url}{API_PREFIX}{path}"

    def _determine_verify(self, insecure: bool, ca_bundle: Optional[str]):
        """Determine SSL verification setting."""
        if insecure:
            return False
        if ca_bundle:
            return ca_bundle
        return DEFAULT_CA_BUNDLE

    def _ignore_insecure_warnings(self) -> None:
        """Silence urllib3's unverified-HTTPS warning for this host only."""
        host = urlsplit(self.base_url).hostname
        if host:
            warnings.filterwarnings(
                "ignore",
                message=rf".*host '{re.escape(host)}'",
                category=urllib3.exceptions.InsecureRequestWarning,
            )

    def _get_session(self) -> requests.Session:
        """Get or create a requests session with retry configuration.

        Only idempotent reads are retried; power actions are sent once.
        """
        with self._session_lock:
            if self._session is None:
                self._session = self._build_session()
            return self._session

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        retry = Retry(
            total=3,
            connect=3,
            read=3,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=("GET", "HEAD"),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(
            max_retries=retry,
            pool_connections=5,
            pool_maxsize=10,
        )
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        session.verify = self._verify
        session.headers.update({"User-Agent": f"pvewatch/{__version__}"})
        authorization = auth_header(self.token_id, self.token_secret)
        if authorization:
            session.headers["Authorization"] = authorization
        return session

    def close(self) -> None:
        """Close the session and release resources."""
        with self._session_lock:
            session, self._session = self._session, None
        if session is not None:
            session.close()

    # --- Transport ---

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = self.api_url(path)
        resp = self._get_session().request(method, url, params=params, data=data, timeout=self.timeout)
        if not resp.ok:
            detail = (resp.text or "").strip()[:200]
            message = f"HTTP {resp.status_code} {resp.reason} for {url}"
            raise CollectorError(self.name, f"{message}: {detail}" if detail else message)
        payload = resp.json()
        # Proxmox wraps every payload as {"data": ...}
        if isinstance(payload, dict) and "data" in payload:
            return payload["data"]
        return payload

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(self._request, method, path, **kwargs)
        except CollectorError:
            raise
        except requests.exceptions.SSLError as e:
            raise CollectorError(
                self.name,
                "TLS/SSL error: certificate verify failed. Consider using --insecure or --ca-bundle.",
                e,
            )
        except requests.exceptions.Timeout as e:
            raise CollectorError(self.name, f"Request timed out after {self.timeout}s: {path}", e)
        except (requests.exceptions.RequestException, ValueError) as e:
            raise CollectorError(self.name, str(e), e)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._call("GET", path, params=params)

    # --- Cluster ---

    async def get_cluster_summary(self) -> ClusterSnapshot:
        status, nodes = await asyncio.gather(self._get("/cluster/status"), self._get("/nodes"))
        try:
            return build_cluster_snapshot(nodes or [], status or [])
        except ValidationError as e:
            raise CollectorError(self.name, f"Malformed cluster payload: {e}", e)

    async def get_node_metrics(self, node: str, range_seconds: float) -> MetricsSeries:
        validate_node_name(node)
        params = {"timeframe": rrd_timeframe(range_seconds), "ds": "cpu,mem"}
        rows = await self._get(f"/nodes/{quote(node, safe='')}/rrddata", params)
        return normalize_metrics_series(node, rows or [])

    async def get_historical_metrics(
        self,
        node: str,
        time_range: Union[TimeRange, str],
        vmid: Optional[int] = None,
    ) -> HistoricalMetrics:
        validate_node_name(node)
        time_range = TimeRange(time_range)
        params = {"timeframe": rrd_timeframe(time_range.seconds), "cf": "AVERAGE"}
        path = f"/nodes/{quote(node, safe='')}"
        if vmid is not None:
            guest = await self._find_guest(vmid)
            path += f"/{guest.type.value}/{vmid}"
        rows = await self._get(f"{path}/rrddata", params)
        return normalize_historical_metrics(node, time_range, rows or [], vmid=vmid)

    # --- Guests ---

    async def get_vm_list(self) -> VmList:
        rows = await self._get("/cluster/resources", {"type": "vm"})
        return normalize_vm_list(rows or [])

    async def _find_guest(self, vmid: int):
        guest = (await self.get_vm_list()).find(vmid)
        if guest is None:
            raise CollectorError(self.name, f"VM {vmid} not found")
        return guest

    async def perform_vm_action(self, node: str, vmid: int, action: Union[VmAction, str]) -> Dict[str, Any]:
        validate_node_name(node)
        action = VmAction(action)
        guest = await self._find_guest(vmid)
        verb = ACTION_VERBS[action]
        path = f"/nodes/{quote(node, safe='')}/{guest.type.value}/{vmid}/status/{verb}"
        task = await self._call("POST", path)
        logger.info("[proxmox] %s requested for %s %s on %s", verb, guest.type.value, vmid, node)
        return {
            "success": True,
            "message": f"{action.value} requested for VM {vmid}",
            "task": task,
        }

    # --- Monitoring ---

    async def get_system_logs(self, node: str, limit: int = 50, since: Optional[int] = None) -> List[LogEntry]:
        validate_node_name(node)
        params: Dict[str, Any] = {"limit": limit}
        if since is not None:
            # syslog expects a local "YYYY-MM-DD HH:MM:SS" timestamp
            params["since"] = dt.datetime.fromtimestamp(since / 1000).strftime("%Y-%m-%d %H:%M:%S")
        rows = await self._get(f"/nodes/{quote(node, safe='')}/syslog", params)
        return normalize_log_entries(rows or [])

    async def get_backup_jobs(self, node: Optional[str] = None) -> List[BackupJob]:
        rows = await self._get("/cluster/backup")
        return normalize_backup_jobs(rows or [], node=node)

    async def get_service_status(self, node: str) -> List[ServiceStatus]:
        validate_node_name(node)
        rows = await self._get(f"/nodes/{quote(node, safe='')}/services")
        return normalize_services(node, rows or [])

    async def get_active_alerts(self) -> List[Alert]:
        alerts = derive_alerts(await self.get_cluster_summary())
        active = {alert.id for alert in alerts}
        # Forget acknowledgements for conditions that have cleared
        self._acknowledged &= active
        return [
            dataclasses.replace(alert, acknowledged=True) if alert.id in self._acknowledged else alert
            for alert in alerts
        ]

    async def acknowledge_alert(self, alert_id: str) -> Dict[str, Any]:
        self._acknowledged.add(alert_id)
        return {"success": True, "alertId": alert_id}

    async def get_version(self) -> Dict[str, Any]:
        return await self._get("/version") or {}
