"""
Sync Dispatcher

Translates store changes into calls against the live backend's REST surface.
Sync is advisory: the store write has already committed, so every failure is
reported as a SyncResult and logged, never raised. No retries here; callers
decide whether to re-invoke.
"""

import enum
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from panel.errors import LiveBackendUnreachable, ValidationFailure
from panel.events import ChangeAction, ChangeEvent
from panel.services.live_client import LiveBackendClient, LiveResponse

logger = logging.getLogger(__name__)


class SyncTable(str, enum.Enum):
    """Tables mirrored to the live backend. Anything else is not synced."""
    STREAMING_USERS = "streaming_users"
    STREAMS = "streams"
    LIVE_CATEGORIES = "live_categories"
    VOD_CONTENT = "vod_content"
    SERIES = "series"

    @property
    def endpoint(self) -> str:
        return _ENDPOINTS[self]

    @property
    def snapshot_key(self) -> str:
        return _SNAPSHOT_KEYS[self]

    @classmethod
    def lookup(cls, name: Any) -> Optional["SyncTable"]:
        try:
            return cls(str(name))
        except ValueError:
            return None


_ENDPOINTS = {
    SyncTable.STREAMING_USERS: "/api/streaming-users",
    SyncTable.STREAMS: "/api/streams",
    SyncTable.LIVE_CATEGORIES: "/api/categories",
    SyncTable.VOD_CONTENT: "/api/vod",
    SyncTable.SERIES: "/api/series",
}

_SNAPSHOT_KEYS = {
    SyncTable.STREAMING_USERS: "users",
    SyncTable.STREAMS: "streams",
    SyncTable.LIVE_CATEGORIES: "categories",
    SyncTable.VOD_CONTENT: "vod",
    SyncTable.SERIES: "series",
}

_VERBS = {
    ChangeAction.INSERT: "POST",
    ChangeAction.UPDATE: "PUT",
    ChangeAction.DELETE: "DELETE",
}


@dataclass
class SyncResult:
    success: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    status_code: Optional[int] = None
    detail: Optional[str] = None
    table: Optional[str] = None
    action: Optional[str] = None
    record_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_proxy_request(action: str, data: Any) -> Tuple[str, str, Any]:
    """
    Map a sync proxy action to (method, path, body).

    Raises:
        ValidationFailure: unknown action or missing payload fields
    """
    data = data if data is not None else {}

    if action == "sync-streams":
        return "POST", "/api/streams/sync", {"streams": data}
    if action == "sync-stream":
        return "POST", "/api/streams/sync-one", data
    if action == "delete-stream":
        stream_id = data.get("id") if isinstance(data, dict) else None
        if stream_id is None:
            raise ValidationFailure("delete-stream requires data.id")
        return "DELETE", f"/api/streams/sync/{stream_id}", None
    if action == "cleanup-streams":
        valid_ids = data.get("validIds") if isinstance(data, dict) else None
        if not isinstance(valid_ids, list):
            raise ValidationFailure("cleanup-streams requires data.validIds")
        return "POST", "/api/streams/cleanup", {"validIds": valid_ids}
    if action == "sync-users":
        return "POST", "/api/streaming-users/sync", {"users": data}
    if action == "health":
        return "GET", "/api/health", None

    raise ValidationFailure("Invalid action")


class SyncDispatcher:
    """
    Stateless translator from ChangeEvent to live backend request.
    """

    def __init__(self, client: LiveBackendClient):
        self.client = client

    def dispatch(self, event: ChangeEvent, base_url: str) -> SyncResult:
        table = SyncTable.lookup(event.table)
        if table is None:
            logger.debug(f"No endpoint mapping for table: {event.table}")
            return SyncResult(skipped=True, reason="table not synced", table=event.table, action=event.action.value)

        record_id = event.record_id
        result = SyncResult(table=table.value, action=event.action.value, record_id=record_id)

        if event.action == ChangeAction.INSERT:
            path = table.endpoint
        elif record_id is None:
            result.detail = f"{event.action.value} on {table.value} has no record id"
            logger.warning(f"Sync skipped: {result.detail}")
            return result
        else:
            path = f"{table.endpoint}/{record_id}"

        method = _VERBS[event.action]
        body = event.after if event.action != ChangeAction.DELETE else None

        logger.info(f"Sync {event.action.value} on {table.value} -> {method} {base_url}{path}")
        try:
            resp = self.client.request(method, base_url, path, json_body=body)
        except LiveBackendUnreachable as exc:
            result.detail = str(exc)
            logger.warning(f"Sync failed for {table.value}/{record_id}: {exc}")
            return result

        return self._finish(result, resp)

    def sync_snapshot(self, table: SyncTable, records: Iterable[Dict[str, Any]], base_url: str) -> SyncResult:
        """Push a full collection snapshot (manual "sync all")."""
        records = list(records)
        result = SyncResult(table=table.value, action="sync-all")
        logger.info(f"Sync snapshot of {len(records)} {table.value} rows to {base_url}")
        try:
            resp = self.client.request("POST", base_url, f"{table.endpoint}/sync", json_body={table.snapshot_key: records})
        except LiveBackendUnreachable as exc:
            result.detail = str(exc)
            logger.warning(f"Snapshot sync of {table.value} failed: {exc}")
            return result
        return self._finish(result, resp)

    def cleanup(self, table: SyncTable, valid_ids: Iterable[Any], base_url: str) -> SyncResult:
        """
        Ask the live backend to drop every entity whose id is not in valid_ids.
        """
        valid_ids = [str(i) for i in valid_ids]
        result = SyncResult(table=table.value, action="cleanup")
        try:
            resp = self.client.request("POST", base_url, f"{table.endpoint}/cleanup", json_body={"validIds": valid_ids})
        except LiveBackendUnreachable as exc:
            result.detail = str(exc)
            logger.warning(f"Cleanup of {table.value} failed: {exc}")
            return result
        return self._finish(result, resp)

    def reconcile(self, table: SyncTable, records: List[Dict[str, Any]], base_url: str) -> List[SyncResult]:
        snapshot = self.sync_snapshot(table, records, base_url)
        if not snapshot.success:
            return [snapshot]
        return [snapshot, self.cleanup(table, [r.get("id") for r in records if r.get("id") is not None], base_url)]

    def proxy(self, action: str, base_url: str, data: Any) -> LiveResponse:
        """
        Forward a sync proxy action verbatim.

        Raises:
            ValidationFailure: before any HTTP call, for unknown actions
            LiveBackendUnreachable: on transport failure
        """
        method, path, body = build_proxy_request(action, data)
        logger.info(f"[Backend Sync] Calling: {method} {base_url}{path}")
        resp = self.client.request(method, base_url, path, json_body=body)
        logger.info(f"[Backend Sync] Response: {resp.status_code}")
        return resp

    @staticmethod
    def _finish(result: SyncResult, resp: LiveResponse) -> SyncResult:
        result.status_code = resp.status_code
        result.detail = resp.text
        result.success = resp.ok
        if not resp.ok:
            logger.warning(f"Sync {result.action} on {result.table} rejected: HTTP {resp.status_code} {resp.text[:200]}")
        return result
