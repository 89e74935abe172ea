"""Tests for upstream collectors."""

import time
import warnings
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import certifi
import pytest
import requests
from urllib3.exceptions import InsecureRequestWarning

from pvewatch.collectors.base import CollectorError
from pvewatch.collectors.mock import MockCollector
from pvewatch.collectors.proxmox import ProxmoxCollector, auth_header
from pvewatch.data.models import NodeStatus, TimeRange, ValidationError, VmAction, VmStatus


def make_response(data=None, status=200, reason="OK", text=""):
    resp = MagicMock()
    resp.ok = status < 400
    resp.status_code = status
    resp.reason = reason
    resp.text = text
    resp.json.return_value = {"data": data}
    return resp


def route_responses(routes):
    """Build a request side effect that answers by URL path suffix."""

    def request(method, url, **kwargs):
        for (route_method, suffix), response in routes.items():
            if method == route_method and url.endswith(suffix):
                return response
        raise AssertionError(f"unexpected {method} {url}")

    return request


@pytest.fixture
def collector():
    collector = ProxmoxCollector("https://pve.lan:8006/", "root@pam!watch", "secret")
    collector._session = MagicMock()
    return collector


class TestAuth:
    def test_header_format(self):
        assert auth_header("root@pam!watch", "abc") == "PVEAPIToken=root@pam!watch=abc"

    def test_incomplete_token(self):
        assert auth_header("root@pam!watch", None) is None
        assert auth_header(None, "abc") is None


class TestProxmoxCollectorSetup:
    def test_name_property(self):
        assert ProxmoxCollector("https://pve").name == "proxmox"

    def test_base_url_normalized(self):
        collector = ProxmoxCollector("https://pve:8006/")
        assert collector.api_url("/nodes") == "https://pve:8006/api2/json/nodes"

    def test_is_available(self):
        assert ProxmoxCollector("https://pve", "id", "secret").is_available()
        assert not ProxmoxCollector("https://pve").is_available()
        assert not ProxmoxCollector("", "id", "secret").is_available()

    def test_verify_defaults_to_certifi(self):
        assert ProxmoxCollector("https://pve").verify == certifi.where()

    def test_verify_per_instance(self):
        insecure = ProxmoxCollector("https://a", verify=False)
        secure = ProxmoxCollector("https://b")
        custom = ProxmoxCollector("https://c", ca_bundle="/etc/ssl/lab.pem")
        assert insecure.verify is False
        assert secure.verify == certifi.where()
        assert custom.verify == "/etc/ssl/lab.pem"

    def test_session_configuration(self):
        collector = ProxmoxCollector("https://pve", "id", "secret", verify=False)
        session = collector._get_session()
        assert session.headers["Authorization"] == "PVEAPIToken=id=secret"
        assert session.headers["User-Agent"].startswith("pvewatch/")
        assert session.verify is False
        retry = session.get_adapter("https://pve").max_retries
        assert "GET" in retry.allowed_methods
        assert "POST" not in retry.allowed_methods
        assert collector._get_session() is session
        collector.close()
        assert collector._session is None

    def test_session_created_once_across_threads(self):
        collector = ProxmoxCollector("https://pve", "id", "secret")

        def slow_session():
            time.sleep(0.02)
            return MagicMock()

        with patch("pvewatch.collectors.proxmox.requests.Session", side_effect=slow_session) as factory:
            with ThreadPoolExecutor(max_workers=8) as pool:
                sessions = list(pool.map(lambda _: collector._get_session(), range(8)))

        assert factory.call_count == 1
        assert all(session is sessions[0] for session in sessions)

    def test_insecure_warning_silenced_for_own_host_only(self):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            with patch("urllib3.disable_warnings") as disable:
                ProxmoxCollector("https://pve-lab.test:8006", verify=False)
            disable.assert_not_called()

            for host in ("pve-lab.test", "other.test"):
                warnings.warn(InsecureRequestWarning(
                    f"Unverified HTTPS request is being made to host '{host}'. "
                    "Adding certificate verification is strongly advised."
                ))

        assert len(caught) == 1
        assert "other.test" in str(caught[0].message)

    def test_get_status(self):
        status = ProxmoxCollector("https://pve").get_status()
        assert status == {"name": "proxmox", "display_name": "Proxmox VE", "available": False}


class TestProxmoxRequests:
    @pytest.mark.asyncio
    async def test_cluster_summary(self, collector, sample_nodes_payload, sample_cluster_status_payload):
        collector._session.request.side_effect = route_responses({
            ("GET", "/cluster/status"): make_response(sample_cluster_status_payload),
            ("GET", "/nodes"): make_response(sample_nodes_payload),
        })

        snapshot = await collector.get_cluster_summary()

        assert snapshot.names() == ["pve-1", "pve-2", "pve-3"]
        assert snapshot.get("pve-3").status == NodeStatus.OFFLINE
        url = collector._session.request.call_args_list[0].args[1]
        assert url.startswith("https://pve.lan:8006/api2/json/")

    @pytest.mark.asyncio
    async def test_http_error(self, collector):
        collector._session.request.return_value = make_response(
            status=401, reason="Unauthorized", text="authentication failure"
        )

        with pytest.raises(CollectorError) as excinfo:
            await collector.get_vm_list()

        assert "HTTP 401 Unauthorized" in excinfo.value.message
        assert "authentication failure" in excinfo.value.message
        assert excinfo.value.collector_name == "proxmox"

    @pytest.mark.asyncio
    async def test_timeout(self, collector):
        collector._session.request.side_effect = requests.exceptions.ReadTimeout("slow")

        with pytest.raises(CollectorError, match="timed out"):
            await collector.get_vm_list()

    @pytest.mark.asyncio
    async def test_tls_error_hint(self, collector):
        collector._session.request.side_effect = requests.exceptions.SSLError("CERTIFICATE_VERIFY_FAILED")

        with pytest.raises(CollectorError, match="--insecure"):
            await collector.get_version()

    @pytest.mark.asyncio
    async def test_invalid_json(self, collector):
        resp = make_response()
        resp.json.side_effect = ValueError("Expecting value")
        collector._session.request.return_value = resp

        with pytest.raises(CollectorError):
            await collector.get_version()

    @pytest.mark.asyncio
    async def test_malformed_cluster_payload(self, collector):
        collector._session.request.side_effect = route_responses({
            ("GET", "/cluster/status"): make_response([]),
            ("GET", "/nodes"): make_response([{"node": "x" * 80}]),
        })

        with pytest.raises(CollectorError, match="Malformed"):
            await collector.get_cluster_summary()

    @pytest.mark.asyncio
    async def test_node_metrics_timeframe(self, collector, sample_rrd_payload):
        collector._session.request.return_value = make_response(sample_rrd_payload)

        series = await collector.get_node_metrics("pve-1", 3600)

        args, kwargs = collector._session.request.call_args
        assert args[1].endswith("/nodes/pve-1/rrddata")
        assert kwargs["params"] == {"timeframe": "hour", "ds": "cpu,mem"}
        assert len(series.series) == 3

    @pytest.mark.asyncio
    async def test_node_name_validated(self, collector):
        with pytest.raises(ValidationError):
            await collector.get_node_metrics("", 60)
        collector._session.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_vm_action_uses_proxmox_verb(self, collector, sample_resources_payload):
        collector._session.request.side_effect = route_responses({
            ("GET", "/cluster/resources"): make_response(sample_resources_payload),
            ("POST", "/nodes/pve-1/qemu/101/status/reboot"): make_response("UPID:pve-1:0001"),
        })

        result = await collector.perform_vm_action("pve-1", 101, VmAction.RESTART)

        assert result["success"] is True
        assert result["task"] == "UPID:pve-1:0001"
        assert "restart" in result["message"]

    @pytest.mark.asyncio
    async def test_vm_action_unknown_guest(self, collector, sample_resources_payload):
        collector._session.request.return_value = make_response(sample_resources_payload)

        with pytest.raises(CollectorError, match="VM 555 not found"):
            await collector.perform_vm_action("pve-1", 555, "start")

    @pytest.mark.asyncio
    async def test_historical_metrics_for_guest(self, collector, sample_resources_payload):
        collector._session.request.side_effect = route_responses({
            ("GET", "/cluster/resources"): make_response(sample_resources_payload),
            ("GET", "/nodes/pve-2/lxc/100/rrddata"): make_response([]),
        })

        metrics = await collector.get_historical_metrics("pve-2", "24h", vmid=100)

        assert metrics.time_range == TimeRange.DAY
        assert metrics.vmid == 100
        _, kwargs = collector._session.request.call_args
        assert kwargs["params"]["timeframe"] == "day"

    @pytest.mark.asyncio
    async def test_system_logs_params(self, collector):
        collector._session.request.return_value = make_response([{"n": 1, "t": "Oct 27 10:00:00 pve-1 hello"}])

        logs = await collector.get_system_logs("pve-1", limit=10, since=1700000000000)

        _, kwargs = collector._session.request.call_args
        assert kwargs["params"]["limit"] == 10
        assert len(kwargs["params"]["since"]) == len("2023-11-14 22:13:20")
        assert logs[0].msg == "pve-1 hello"

    @pytest.mark.asyncio
    async def test_alert_acknowledgement(self, collector, sample_nodes_payload, sample_cluster_status_payload):
        collector._session.request.side_effect = route_responses({
            ("GET", "/cluster/status"): make_response(sample_cluster_status_payload),
            ("GET", "/nodes"): make_response(sample_nodes_payload),
        })

        await collector.acknowledge_alert("pve-3:offline")
        await collector.acknowledge_alert("gone:cpu")
        alerts = {alert.id: alert for alert in await collector.get_active_alerts()}

        assert alerts["pve-3:offline"].acknowledged is True
        assert alerts["pve-2:cpu"].acknowledged is False
        assert collector._acknowledged == {"pve-3:offline"}


class TestMockCollector:
    def test_properties(self):
        collector = MockCollector(seed=1)
        assert collector.name == "mock"
        assert collector.is_available()

    def test_rejects_bad_node_names(self):
        with pytest.raises(ValidationError):
            MockCollector(nodes=[""])

    @pytest.mark.asyncio
    async def test_cluster_summary(self):
        collector = MockCollector(seed=1)
        snapshot = await collector.get_cluster_summary()
        assert snapshot.names() == ["pve-1", "pve-2", "pve-3"]
        assert all(node.is_online for node in snapshot)
        assert collector.calls["get_cluster_summary"] == 1

    @pytest.mark.asyncio
    async def test_drift_keeps_status(self):
        collector = MockCollector(seed=1)
        first = await collector.get_cluster_summary()
        second = await collector.get_cluster_summary()
        assert [n.status for n in first] == [n.status for n in second]

    @pytest.mark.asyncio
    async def test_fixed_without_drift(self):
        collector = MockCollector(seed=1, drift=False)
        assert await collector.get_cluster_summary() == await collector.get_cluster_summary()

    @pytest.mark.asyncio
    async def test_status_controls(self):
        collector = MockCollector(seed=1, drift=False)
        collector.set_node_status("pve-2", "offline")
        collector.remove_node("pve-3")
        snapshot = await collector.get_cluster_summary()
        assert snapshot.names() == ["pve-1", "pve-2"]
        assert snapshot.get("pve-2").status == NodeStatus.OFFLINE

    @pytest.mark.asyncio
    async def test_fail_next(self):
        collector = MockCollector(seed=1)
        collector.fail_next = 1
        with pytest.raises(CollectorError, match="Simulated"):
            await collector.get_cluster_summary()
        assert await collector.get_cluster_summary()

    @pytest.mark.asyncio
    async def test_unknown_node(self):
        with pytest.raises(CollectorError, match="no such node"):
            await MockCollector(seed=1).get_node_metrics("pve-9", 3600)

    @pytest.mark.asyncio
    async def test_metrics(self):
        collector = MockCollector(seed=1)
        series = await collector.get_node_metrics("pve-1", 3600)
        assert len(series.series) == 60
        historical = await collector.get_historical_metrics("pve-1", "1h")
        assert historical.data
        assert historical.data[0].network is not None

    @pytest.mark.asyncio
    async def test_vm_action_changes_status(self):
        collector = MockCollector(seed=1)
        vms = await collector.get_vm_list()
        target = vms.vms[0]
        await collector.perform_vm_action(target.node, target.vmid, VmAction.PAUSE)
        assert (await collector.get_vm_list()).find(target.vmid).status == VmStatus.PAUSED

    @pytest.mark.asyncio
    async def test_vm_action_unknown_guest(self):
        with pytest.raises(CollectorError):
            await MockCollector(seed=1).perform_vm_action("pve-1", 999, "start")

    @pytest.mark.asyncio
    async def test_services_backups_version(self):
        collector = MockCollector(seed=1)
        services = await collector.get_service_status("pve-1")
        assert {s.name for s in services} >= {"pveproxy", "pvedaemon"}
        backups = await collector.get_backup_jobs("pve-1")
        assert [job.node for job in backups] == ["pve-1"]
        assert (await collector.get_version())["version"] == "8.2.4"

    @pytest.mark.asyncio
    async def test_logs_limit(self):
        collector = MockCollector(seed=1)
        for _ in range(50):
            collector._append_log("pve-1")
        logs = await collector.get_system_logs("pve-1", limit=5)
        assert len(logs) == 5
        assert logs[-1].n == 50

    @pytest.mark.asyncio
    async def test_alert_acknowledgement_cleared_with_condition(self):
        collector = MockCollector(seed=1, drift=False)
        collector.set_node_status("pve-2", NodeStatus.OFFLINE)
        await collector.acknowledge_alert("pve-2:offline")
        alerts = await collector.get_active_alerts()
        assert [a.acknowledged for a in alerts if a.id == "pve-2:offline"] == [True]

        collector.set_node_status("pve-2", NodeStatus.ONLINE)
        await collector.get_active_alerts()
        collector.set_node_status("pve-2", NodeStatus.OFFLINE)
        alerts = await collector.get_active_alerts()
        assert [a.acknowledged for a in alerts if a.id == "pve-2:offline"] == [False]
