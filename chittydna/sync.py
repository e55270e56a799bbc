"""Remote sync for chittydna.

Remote services are optional. Every call here degrades to local-only
operation: failures are caught at the call site, recorded in the result's
``errors`` list, and the payload is queued in ``sync/pending-uploads.json``
until ``retry_pending()`` is invoked. Nothing is retried automatically.

Only pattern hashes and statistics leave the machine; raw workflow
patterns never do.
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from chittydna.config import DEFAULT_SERVICES
from chittydna.logging_config import log_sync
from chittydna.protocols import Clock, RemoteServices, StoragePort
from chittydna.types import ChittyDNA, iso, parse_datetime, utc_now

logger = logging.getLogger(__name__)

PENDING_KEY = "sync/pending-uploads.json"
STATUS_KEY = "sync/status.json"
SYNC_LOG_KEY = "pipeline/sync.jsonl"
REFLECTIONS_KEY = "pipeline/reflections.jsonl"


class HttpRemoteServices:
    """RemoteServices over HTTP (httpx).

    Args:
        services: Service name -> base URL.
        token: API token presented to the auth service.
        timeout: Per-request timeout in seconds.
        health_timeout: Timeout for health probes.
        transport: Optional httpx transport (tests use httpx.MockTransport).
        clock: Time source for token expiry.
    """

    def __init__(
        self,
        services: Optional[Dict[str, str]] = None,
        token: Optional[str] = None,
        timeout: float = 10.0,
        health_timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Clock = utc_now,
    ):
        self.services = dict(services or DEFAULT_SERVICES)
        self.token = token
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.clock = clock
        self._client = httpx.Client(timeout=timeout, transport=transport)
        self._validated_until = None

    def close(self) -> None:
        self._client.close()

    def _url(self, service: str, path: str) -> str:
        return self.services[service].rstrip("/") + path

    def _headers(self, authenticated: bool = True) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if authenticated and self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(
        self,
        method: str,
        service: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Any]:
        """Issue a request. Returns the decoded JSON body ({} when empty), or None on any failure."""
        try:
            response = self._client.request(
                method,
                self._url(service, path),
                json=payload,
                headers=self._headers(),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning(f"{service} request failed: {e}")
            return None
        if response.status_code >= 400:
            logger.warning(f"{service} returned HTTP {response.status_code} for {path}")
            return None
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            logger.warning(f"{service} returned a non-JSON body for {path}")
            return None

    def authenticate(self) -> Optional[str]:
        if not self.token:
            return None
        now = self.clock()
        if self._validated_until is not None and self._validated_until > now:
            return self.token

        data = self._request("POST", "auth", "/api/v1/token/validate")
        if data is None:
            return None
        expires = parse_datetime(data.get("expiresAt")) if isinstance(data, dict) else None
        self._validated_until = expires or now + timedelta(hours=1)
        return self.token

    def register_learned_items(self, items: List[Dict[str, Any]]) -> bool:
        ok = True
        for item in items:
            body = {"name": item.get("id"), "type": "learned", "metadata": item}
            if self._request("POST", "registry", "/api/v1/tools", body) is None:
                ok = False
        return ok

    def fetch_community_patterns(self) -> Optional[List[Dict[str, Any]]]:
        data = self._request("GET", "registry", "/api/v1/patterns/community")
        if not isinstance(data, dict):
            return None
        return list(data.get("patterns") or [])

    def log_event(self, entry: Dict[str, Any]) -> bool:
        return self._request("POST", "chronicle", "/log", entry) is not None

    def discover_tools(self) -> Optional[List[Dict[str, Any]]]:
        data = self._request("GET", "connect", "/api/v1/mcp/tools")
        if not isinstance(data, dict):
            return None
        return list(data.get("tools") or [])

    def service_health(self) -> Dict[str, bool]:
        health = {}
        for name in self.services:
            try:
                response = self._client.get(
                    self._url(name, "/health"), timeout=self.health_timeout
                )
                health[name] = response.is_success
            except httpx.HTTPError as e:
                logger.debug(f"Health check for {name} failed: {e}")
                health[name] = False
        return health

    def health_check(self) -> bool:
        return any(self.service_health().values())


@dataclass
class SyncResult:
    success: bool = False
    synced: Dict[str, bool] = field(
        default_factory=lambda: {"registry": False, "chronicle": False, "connect": False}
    )
    registered: List[str] = field(default_factory=list)
    fetched: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    timestamp: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def learned_items(state: ChittyDNA) -> List[Dict[str, Any]]:
    """Registry payload for the learned workflows: hashes and statistics only."""
    return [
        {
            "id": wf.id,
            "pattern_hash": wf.pattern.hash,
            "confidence": wf.confidence,
            "usage_count": wf.usage_count,
            "success_rate": wf.success_rate,
            "tags": list(wf.tags),
        }
        for wf in state.workflows
    ]


class SyncClient:
    """Runs the sync phase against optional remote services.

    Args:
        storage: Local storage for the pending list, status and sync log.
        remote: Remote services, or None to run offline.
        clock: Time source.
        log_dir: Data directory for vault event logging (None disables it).
    """

    def __init__(
        self,
        storage: StoragePort,
        remote: Optional[RemoteServices] = None,
        clock: Clock = utc_now,
        log_dir: Optional[Path] = None,
    ):
        self.storage = storage
        self.remote = remote
        self.clock = clock
        self.log_dir = log_dir
        self._lock = threading.Lock()

    # === Pending uploads ===

    def pending(self) -> List[Dict[str, Any]]:
        raw = self.storage.read_bytes(PENDING_KEY)
        if raw is None:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Pending upload list is unreadable; ignoring it")
            return []
        return data if isinstance(data, list) else []

    def _save_pending(self, items: List[Dict[str, Any]]) -> None:
        self.storage.write_bytes(PENDING_KEY, json.dumps(items, indent=2).encode("utf-8"))

    def queue_for_later(self, service: str, data: Dict[str, Any]) -> None:
        with self._lock:
            items = self.pending()
            items.append({"service": service, "data": data, "queued_at": iso(self.clock())})
            self._save_pending(items)
        logger.info(f"Queued {service} upload for later")

    # === Sync ===

    def _chronicle_entries(self) -> List[Dict[str, Any]]:
        entries = []
        for line in self.storage.read_lines(REFLECTIONS_KEY)[-10:]:
            try:
                reflection = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(reflection, dict):
                continue
            entries.append(
                {
                    "timestamp": iso(self.clock()),
                    "source": "chittydna",
                    "type": "learning",
                    "action": "reflection",
                    "data": {
                        "reflected_at": reflection.get("timestamp"),
                        "pattern_count": len(reflection.get("patterns") or []),
                        "failure_count": len(reflection.get("failures") or []),
                        "insight_count": len(reflection.get("insights") or []),
                    },
                }
            )
        return entries

    def sync(self, state: ChittyDNA) -> SyncResult:
        """Push learned items and reflections, discover tools, fetch patterns.

        Never raises. Every failure lands in ``result.errors``.
        """
        result = SyncResult(timestamp=iso(self.clock()))

        try:
            items = learned_items(state)
            entries = self._chronicle_entries()
            token = self.remote.authenticate() if self.remote is not None else None
            if token is None:
                result.errors.append("Authentication failed - running in offline mode")
                if items:
                    self.queue_for_later("registry", {"items": items})
                for entry in entries:
                    self.queue_for_later("chronicle", entry)
                return self._finish(result)

            if self.remote.register_learned_items(items):
                result.synced["registry"] = True
                result.registered = [item["id"] for item in items]
            else:
                result.errors.append("Registry sync failed: service unavailable")
                self.queue_for_later("registry", {"items": items})

            failed = 0
            for entry in entries:
                if not self.remote.log_event(entry):
                    failed += 1
                    self.queue_for_later("chronicle", entry)
            if failed:
                result.errors.append(f"Chronicle sync failed: {failed} event(s) queued")
            else:
                result.synced["chronicle"] = True

            if self.remote.discover_tools() is not None:
                result.synced["connect"] = True
            else:
                result.errors.append("Connect sync failed: service unavailable")

            patterns = self.remote.fetch_community_patterns()
            if patterns is None:
                result.errors.append("Community pattern fetch failed")
            else:
                result.fetched = [str(p.get("id")) for p in patterns if isinstance(p, dict)]
        except Exception as e:
            logger.error(f"Sync failed: {e}", exc_info=True)
            result.errors.append(f"Sync failed: {e}")

        result.success = any(result.synced.values())
        return self._finish(result)

    def _finish(self, result: SyncResult) -> SyncResult:
        try:
            entry = {"type": "sync_result"}
            entry.update(result.to_dict())
            self.storage.append_line(SYNC_LOG_KEY, json.dumps(entry, sort_keys=True))
            status = {"last_sync": result.timestamp, "last_result": result.to_dict()}
            self.storage.write_bytes(STATUS_KEY, json.dumps(status, indent=2).encode("utf-8"))
            if self.log_dir is not None:
                synced = sum(1 for ok in result.synced.values() if ok)
                log_sync(synced, len(result.errors), data_dir=self.log_dir)
        except Exception as e:
            logger.error(f"Could not record sync result: {e}")
            result.errors.append(f"Could not record sync result: {e}")
        return result

    def fetch_community_patterns(self) -> List[Dict[str, Any]]:
        if self.remote is None:
            return []
        try:
            return self.remote.fetch_community_patterns() or []
        except Exception as e:
            logger.warning(f"Community pattern fetch failed: {e}")
            return []

    def retry_pending(self) -> Dict[str, int]:
        """Retry queued uploads once. Items that fail again stay queued."""
        with self._lock:
            items = self.pending()
            if not items:
                return {"success": 0, "failed": 0}

            token = None
            if self.remote is not None:
                try:
                    token = self.remote.authenticate()
                except Exception as e:
                    logger.warning(f"Authentication failed during retry: {e}")
            if token is None:
                return {"success": 0, "failed": len(items)}

            still_pending = []
            success = 0
            for item in items:
                service = item.get("service")
                data = item.get("data") or {}
                try:
                    if service == "registry":
                        ok = self.remote.register_learned_items(data.get("items") or [])
                    elif service == "chronicle":
                        ok = self.remote.log_event(data)
                    else:
                        ok = False
                except Exception as e:
                    logger.warning(f"Retry of {service} upload failed: {e}")
                    ok = False
                if ok:
                    success += 1
                else:
                    still_pending.append(item)
            self._save_pending(still_pending)

        logger.info(f"Retried pending uploads: {success} ok, {len(still_pending)} failed")
        return {"success": success, "failed": len(still_pending)}

    def get_status(self) -> Dict[str, Any]:
        services: Dict[str, bool] = {}
        if self.remote is not None:
            try:
                services = self.remote.service_health()
            except Exception as e:
                logger.warning(f"Service health check failed: {e}")
        last_sync = None
        raw = self.storage.read_bytes(STATUS_KEY)
        if raw:
            try:
                last_sync = json.loads(raw).get("last_sync")
            except (ValueError, AttributeError):
                last_sync = None
        return {
            "connected": any(services.values()),
            "services": services,
            "last_sync": last_sync,
            "pending_uploads": len(self.pending()),
        }
