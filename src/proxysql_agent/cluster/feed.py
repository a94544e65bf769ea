"""
Kubernetes membership feed.

Lists and watches the pods matching the core selector through the API
server's REST interface and turns pod changes into membership events:

- initial list: one `MemberObserved` per pod
- ADDED (unknown pod): `MemberObserved`
- MODIFIED: `MemberTransitioned(old, new)`
- DELETED: evicted from the local cache
- 410 Gone: relist; known pods that changed meanwhile emit `MemberTransitioned`
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from proxysql_agent.core.config import PodSelectorConfig
from proxysql_agent.core.errors import CacheSyncTimeoutError, FeedError
from proxysql_agent.core.types import (
    Member,
    MemberObserved,
    MemberPhase,
    MemberRole,
    MembershipEvent,
    MemberTransitioned,
)

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")

EventSink = Callable[[MembershipEvent], None]


@dataclass
class KubeConfig:
    """Connection details for the Kubernetes API server."""
    api_server: str
    token: str = ""
    verify: bool | str = True

    @classmethod
    def in_cluster(cls, account_dir: Path = SERVICE_ACCOUNT_DIR) -> "KubeConfig":
        """
        Build from the pod's service account.

        Raises:
            FeedError: if not running inside a cluster
        """
        host = os.environ.get("KUBERNETES_SERVICE_HOST")
        port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
        if not host:
            raise FeedError("KUBERNETES_SERVICE_HOST not set; not running in a cluster")

        token_file = account_dir / "token"
        try:
            token = token_file.read_text().strip()
        except OSError as e:
            raise FeedError(f"failed to read service account token {token_file}: {e}") from e

        ca_file = account_dir / "ca.crt"
        verify: bool | str = str(ca_file) if ca_file.is_file() else True

        if ":" in host:
            host = f"[{host}]"
        return cls(api_server=f"https://{host}:{port}", token=token, verify=verify)


def member_from_pod(pod: dict[str, Any], primary_component: str) -> Member:
    """Convert a pod object to a `Member`."""
    metadata = pod.get("metadata") or {}
    status = pod.get("status") or {}
    labels = metadata.get("labels") or {}

    role = MemberRole.PRIMARY if labels.get("component") == primary_component else MemberRole.SECONDARY
    return Member(
        name=metadata.get("name", ""),
        address=status.get("podIP") or "",
        role=role,
        phase=MemberPhase.parse(status.get("phase")),
        uid=metadata.get("uid", ""),
    )


class MembershipFeed:
    """
    Ordered member-lifecycle events for one label selector.

    Usage:
        feed = MembershipFeed(KubeConfig.in_cluster(), settings.core.podselector, reconciler.submit)
        await feed.sync(timeout=30.0)  # blocks startup
        await feed.watch()             # runs until cancelled
    """

    def __init__(
        self,
        kube: KubeConfig,
        selector: PodSelectorConfig,
        sink: EventSink | None = None,
        client: httpx.AsyncClient | None = None,
        reconnect_delay: float = 1.0,
    ):
        self._kube = kube
        self._selector = selector
        self._sink = sink
        self._client = client
        self._owns_client = client is None
        self._reconnect_delay = reconnect_delay

        self._cache: dict[str, Member] = {}
        self._resource_version: str | None = None
        self.synced = False

    @property
    def members(self) -> list[Member]:
        return list(self._cache.values())

    @property
    def _pods_path(self) -> str:
        return f"/api/v1/namespaces/{self._selector.namespace}/pods"

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers: dict[str, str] = {}
            if self._kube.token:
                headers["Authorization"] = f"Bearer {self._kube.token}"
            self._client = httpx.AsyncClient(
                base_url=self._kube.api_server,
                headers=headers,
                timeout=httpx.Timeout(10.0, read=None),
                verify=self._kube.verify,
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _emit(self, event: MembershipEvent) -> None:
        if self._sink is not None:
            self._sink(event)

    # ------------------------------------------------------------------
    # One-shot list
    # ------------------------------------------------------------------

    async def _list(self) -> tuple[list[Member], str | None]:
        client = self._ensure_client()
        try:
            r = await client.get(self._pods_path, params={"labelSelector": self._selector.label_selector})
        except httpx.HTTPError as e:
            raise FeedError(f"failed to list pods: {e}") from e
        if r.status_code != 200:
            raise FeedError(f"failed to list pods: HTTP {r.status_code}: {r.text[:200]}")

        data = r.json()
        members = [member_from_pod(pod, self._selector.component) for pod in data.get("items") or []]
        version = (data.get("metadata") or {}).get("resourceVersion")
        return members, version

    async def list_members(self) -> list[Member]:
        """List the matching members once, without touching the watch cache."""
        members, _ = await self._list()
        return members

    # ------------------------------------------------------------------
    # Cache sync and watch
    # ------------------------------------------------------------------

    async def _relist(self) -> None:
        members, version = await self._list()
        previous = self._cache if self.synced else {}
        self._cache = {m.uid or m.name: m for m in members}
        self._resource_version = version

        # Known pods changed during the gap surface as transitions, like watch updates.
        for key, member in self._cache.items():
            old = previous.get(key)
            if old is None:
                self._emit(MemberObserved(member))
            elif old != member:
                self._emit(MemberTransitioned(old, member))

        for key in previous.keys() - self._cache.keys():
            logger.debug(f"Pod {previous[key].name} gone after relist")

    async def sync(self, timeout: float) -> None:
        """
        Fill the cache and emit `MemberObserved` for every current member.

        Raises:
            CacheSyncTimeoutError: if the list did not complete within `timeout`
            FeedError: if the API server rejected the request
        """
        try:
            await asyncio.wait_for(self._relist(), timeout=timeout)
        except TimeoutError as e:
            raise CacheSyncTimeoutError(timeout) from e

        self.synced = True
        logger.info(
            "Pod cache synced",
            extra={"extra_fields": {"members": len(self._cache), "selector": self._selector.label_selector}},
        )

    def apply(self, event_type: str, pod: dict[str, Any]) -> None:
        """Fold one watch event into the cache and emit the matching membership event."""
        member = member_from_pod(pod, self._selector.component)
        key = member.uid or member.name
        version = (pod.get("metadata") or {}).get("resourceVersion")
        if version:
            self._resource_version = version

        if event_type == "DELETED":
            self._cache.pop(key, None)
            logger.debug(f"Pod {member.name} deleted")
            return

        old = self._cache.get(key)
        self._cache[key] = member
        if old is None:
            self._emit(MemberObserved(member))
        elif event_type == "MODIFIED" or old != member:
            self._emit(MemberTransitioned(old, member))

    async def _watch_once(self) -> None:
        client = self._ensure_client()
        params = {
            "labelSelector": self._selector.label_selector,
            "watch": "true",
            "allowWatchBookmarks": "true",
        }
        if self._resource_version:
            params["resourceVersion"] = self._resource_version

        async with client.stream("GET", self._pods_path, params=params) as r:
            if r.status_code == 410:
                raise _Expired()
            if r.status_code != 200:
                raise FeedError(f"watch failed: HTTP {r.status_code}")

            async for line in r.aiter_lines():
                if not line.strip():
                    continue
                event = json.loads(line)
                event_type = event.get("type")
                obj = event.get("object") or {}

                if event_type == "BOOKMARK":
                    version = (obj.get("metadata") or {}).get("resourceVersion")
                    if version:
                        self._resource_version = version
                elif event_type == "ERROR":
                    if obj.get("code") == 410:
                        raise _Expired()
                    raise FeedError(f"watch error: {obj.get('message')}")
                elif event_type in ("ADDED", "MODIFIED", "DELETED"):
                    self.apply(event_type, obj)

    async def watch(self) -> None:
        """Stream pod changes until cancelled, reconnecting as needed."""
        if not self.synced:
            raise FeedError("watch() called before sync()")

        while True:
            try:
                await self._watch_once()
                logger.debug("Watch stream ended, reconnecting")
            except _Expired:
                logger.info("Watch resource version expired, relisting")
                try:
                    await self._relist()
                except FeedError as e:
                    logger.warning(f"Relist failed: {e}")
                    await asyncio.sleep(self._reconnect_delay)
                continue
            except (httpx.HTTPError, FeedError, json.JSONDecodeError) as e:
                logger.warning(f"Watch interrupted: {e}")

            await asyncio.sleep(self._reconnect_delay)


class _Expired(Exception):
    """The watch resource version is too old."""
