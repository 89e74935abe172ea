"""HTTP request handlers for the dashboard API.

Provides JSON endpoints over the Proxmox collector and the server-sent
event stream fed by the EventMultiplexer.
"""

from __future__ import annotations

import functools
import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web

from .. import __version__
from ..collectors.base import UpstreamClient
from ..data.cache import CacheKeys, SnapshotCache
from ..data.models import (
    PROTOCOL_VERSION,
    ErrorEvent,
    TimeRange,
    ValidationError,
    VmAction,
    validate_node_name,
)
from ..data.normalization import now_ms
from ..events.framing import SSE_HEADERS, SSETransport, connected_comment
from ..events.sessions import SubscriberLimitError
from .config import Config
from .workers import EventMultiplexer

logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", Config)
CLIENT_KEY = web.AppKey("client", UpstreamClient)
CACHE_KEY = web.AppKey("cache", SnapshotCache)
MULTIPLEXER_KEY = web.AppKey("multiplexer", EventMultiplexer)
STARTED_AT_KEY = web.AppKey("started_at", float)

DEFAULT_RANGE_SECONDS = 3600
DEFAULT_LOG_LIMIT = 50
MAX_LOG_LIMIT = 1000

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


# --- Envelope helpers ---


def json_ok(**fields: Any) -> web.Response:
    return web.json_response({"ok": True, **fields, "timestamp": now_ms()})


def json_error(message: str, status: int) -> web.Response:
    return web.json_response({"ok": False, "error": message, "timestamp": now_ms()}, status=status)


def api_handler(handler: Handler) -> Handler:
    """Map validation errors to 400 and anything else to 500."""

    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except ValueError as exc:
            return json_error(str(exc), 400)
        except Exception as exc:
            logger.warning("[api] %s %s failed: %s", request.method, request.path, exc)
            return json_error(str(exc) or type(exc).__name__, 500)

    return wrapper


# --- Parameter parsing ---


def _node_param(request: web.Request, required: bool = True) -> Optional[str]:
    node = request.query.get("node")
    if not node:
        if required:
            raise ValidationError("Missing required query param: node")
        return None
    return validate_node_name(node)


def _int_param(value: Optional[str], name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"Invalid {name} parameter")


def _range_seconds(request: web.Request) -> float:
    raw = request.query.get("rangeSeconds", str(DEFAULT_RANGE_SECONDS))
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError("Invalid rangeSeconds")
    if not math.isfinite(value) or value <= 0:
        raise ValidationError("Invalid rangeSeconds")
    return value


def _time_range(raw: str) -> TimeRange:
    try:
        return TimeRange(raw)
    except ValueError:
        allowed = ", ".join(member.value for member in TimeRange)
        raise ValidationError(f"Invalid timeRange. Must be one of: {allowed}")


def _vm_action(raw: Any) -> VmAction:
    try:
        return VmAction(raw)
    except ValueError:
        allowed = ", ".join(member.value for member in VmAction)
        raise ValidationError(f"Invalid action. Must be one of: {allowed}")


async def _cached(request: web.Request, key: str, fetcher):
    cache = request.app[CACHE_KEY]
    ttl = request.app[CONFIG_KEY].stream.cache_ttl
    return await cache.get_or_compute(key, fetcher, ttl=ttl)


# --- Handlers ---


async def handle_health(request: web.Request) -> web.Response:
    multiplexer = request.app[MULTIPLEXER_KEY]
    client = request.app[CLIENT_KEY]
    return web.json_response({
        "status": "degraded" if multiplexer.last_error else "healthy",
        "timestamp": now_ms(),
        "uptime": round(time.time() - request.app[STARTED_AT_KEY], 3),
        "version": __version__,
        "protocol_version": PROTOCOL_VERSION,
        "collector": client.get_status(),
        "multiplexer": multiplexer.status(),
        "cache": request.app[CACHE_KEY].stats(),
    })


async def handle_config(request: web.Request) -> web.Response:
    return json_ok(data=request.app[CONFIG_KEY].to_dict())


@api_handler
async def handle_summary(request: web.Request) -> web.Response:
    client = request.app[CLIENT_KEY]
    snapshot = await _cached(request, CacheKeys.cluster_summary(), client.get_cluster_summary)
    return json_ok(data=snapshot.to_dict())


@api_handler
async def handle_metrics(request: web.Request) -> web.Response:
    node = _node_param(request)
    range_seconds = _range_seconds(request)
    client = request.app[CLIENT_KEY]
    series = await _cached(
        request,
        CacheKeys.node_metrics(node, range_seconds),
        lambda: client.get_node_metrics(node, range_seconds),
    )
    return json_ok(data=series.to_dict())


@api_handler
async def handle_historical_metrics(request: web.Request) -> web.Response:
    node = _node_param(request)
    time_range = _time_range(request.query.get("timeRange", TimeRange.HOUR.value))
    vmid = _int_param(request.query.get("vmid"), "vmid")
    client = request.app[CLIENT_KEY]
    metrics = await _cached(
        request,
        CacheKeys.api_response("metrics/historical", {"node": node, "timeRange": time_range.value, "vmid": vmid}),
        lambda: client.get_historical_metrics(node, time_range, vmid),
    )
    return json_ok(data=metrics.to_dict())


@api_handler
async def handle_vms(request: web.Request) -> web.Response:
    client = request.app[CLIENT_KEY]
    vms = await _cached(request, CacheKeys.api_response("vms"), client.get_vm_list)
    return json_ok(data=vms.to_dict())


@api_handler
async def handle_vm_action(request: web.Request) -> web.Response:
    vmid = _int_param(request.match_info["vmid"], "VM ID")
    if vmid is None or vmid <= 0:
        raise ValidationError("Invalid VM ID")
    body = await request.json()
    if not isinstance(body, dict) or not body.get("node") or not body.get("action"):
        raise ValidationError("Missing required fields: node and action")
    node = validate_node_name(body["node"])
    action = _vm_action(body["action"])

    result = await request.app[CLIENT_KEY].perform_vm_action(node, vmid, action)
    if not result.get("success"):
        return json_error(result.get("message") or "Action failed", 500)
    request.app[CACHE_KEY].invalidate(CacheKeys.api_response("vms"))
    return json_ok(data={"vmid": vmid, "node": node, "action": action.value, "message": result.get("message")})


@api_handler
async def handle_logs(request: web.Request) -> web.Response:
    node = _node_param(request)
    limit = _int_param(request.query.get("limit"), "limit")
    limit = DEFAULT_LOG_LIMIT if limit is None else limit
    if not 0 < limit <= MAX_LOG_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LOG_LIMIT}")
    since = _int_param(request.query.get("since"), "since")
    client = request.app[CLIENT_KEY]
    logs = await _cached(
        request,
        CacheKeys.api_response("logs", {"node": node, "limit": limit, "since": since}),
        lambda: client.get_system_logs(node, limit, since),
    )
    return json_ok(logs=[entry.to_dict() for entry in logs])


@api_handler
async def handle_backups(request: web.Request) -> web.Response:
    node = _node_param(request, required=False)
    client = request.app[CLIENT_KEY]
    jobs = await _cached(
        request,
        CacheKeys.api_response("backups", {"node": node}),
        lambda: client.get_backup_jobs(node),
    )
    return json_ok(backups=[job.to_dict() for job in jobs])


@api_handler
async def handle_services(request: web.Request) -> web.Response:
    node = _node_param(request)
    client = request.app[CLIENT_KEY]
    services = await _cached(
        request,
        CacheKeys.api_response("services", {"node": node}),
        lambda: client.get_service_status(node),
    )
    return json_ok(services=[service.to_dict() for service in services])


@api_handler
async def handle_alerts(request: web.Request) -> web.Response:
    client = request.app[CLIENT_KEY]
    alerts = await _cached(request, CacheKeys.api_response("alerts"), client.get_active_alerts)
    return json_ok(alerts=[alert.to_dict() for alert in alerts])


@api_handler
async def handle_acknowledge_alert(request: web.Request) -> web.Response:
    alert_id = request.match_info["alert_id"]
    result = await request.app[CLIENT_KEY].acknowledge_alert(alert_id)
    request.app[CACHE_KEY].invalidate(CacheKeys.api_response("alerts"))
    return json_ok(data=result)


@api_handler
async def handle_version(request: web.Request) -> web.Response:
    client = request.app[CLIENT_KEY]
    version = await _cached(request, CacheKeys.api_response("version"), client.get_version)
    return json_ok(data=version)


async def handle_events(request: web.Request) -> web.StreamResponse:
    """Stream heartbeat, status and error events until the client goes away."""
    multiplexer = request.app[MULTIPLEXER_KEY]
    if multiplexer.at_capacity():
        return json_error(f"Subscriber limit reached ({multiplexer.max_sessions})", 503)

    response = web.StreamResponse(status=200, headers=SSE_HEADERS)
    await response.prepare(request)
    transport = SSETransport(response)
    await transport.send_raw(connected_comment())

    try:
        session = multiplexer.attach(transport)
    except SubscriberLimitError as exc:
        await transport.send(ErrorEvent(message=str(exc)))
        return response

    try:
        await session.wait_closed()
    finally:
        multiplexer.detach(session)
    return response


# --- Application ---


def _route_table(prefix: str):
    return [
        web.get(f"{prefix}/api/health", handle_health),
        web.get(f"{prefix}/api/config", handle_config),
        web.get(f"{prefix}/api/proxmox/summary", handle_summary),
        web.get(f"{prefix}/api/proxmox/metrics", handle_metrics),
        web.get(f"{prefix}/api/proxmox/metrics/historical", handle_historical_metrics),
        web.get(f"{prefix}/api/proxmox/vms", handle_vms),
        web.post(f"{prefix}/api/proxmox/vms/{{vmid}}/action", handle_vm_action),
        web.get(f"{prefix}/api/proxmox/logs", handle_logs),
        web.get(f"{prefix}/api/proxmox/backups", handle_backups),
        web.get(f"{prefix}/api/proxmox/services", handle_services),
        web.get(f"{prefix}/api/proxmox/alerts", handle_alerts),
        web.post(f"{prefix}/api/proxmox/alerts/{{alert_id}}/acknowledge", handle_acknowledge_alert),
        web.get(f"{prefix}/api/proxmox/version", handle_version),
        web.get(f"{prefix}/api/proxmox/events", handle_events),
    ]


def create_app(
    config: Config,
    client: UpstreamClient,
    *,
    cache: Optional[SnapshotCache] = None,
    multiplexer: Optional[EventMultiplexer] = None,
) -> web.Application:
    """Build the aiohttp application and wire its lifecycle hooks."""
    stream = config.stream
    if cache is None:
        cache = SnapshotCache(
            ttl=stream.cache_ttl,
            max_entries=stream.cache_max_entries,
            cleanup_interval=stream.cache_cleanup_interval,
        )
    if multiplexer is None:
        multiplexer = EventMultiplexer(
            client,
            cache,
            poll_interval=stream.poll_interval,
            request_timeout=stream.request_timeout,
            cache_ttl=stream.cache_ttl,
            write_timeout=stream.write_timeout,
            max_sessions=stream.max_sessions,
        )

    app = web.Application()
    app[CONFIG_KEY] = config
    app[CLIENT_KEY] = client
    app[CACHE_KEY] = cache
    app[MULTIPLEXER_KEY] = multiplexer
    app[STARTED_AT_KEY] = time.time()

    prefix = "/" + config.server.url_prefix.strip("/") if config.server.url_prefix.strip("/") else ""
    app.add_routes(_route_table(prefix))

    app.on_startup.append(_on_startup)
    app.on_shutdown.append(_on_shutdown)
    app.on_cleanup.append(_on_cleanup)
    return app


async def _on_startup(app: web.Application) -> None:
    app[CACHE_KEY].start()


async def _on_shutdown(app: web.Application) -> None:
    # Closing every session lets open event streams return
    await app[MULTIPLEXER_KEY].stop()


async def _on_cleanup(app: web.Application) -> None:
    await app[CACHE_KEY].close()
    app[CLIENT_KEY].close()
