# src/trialrunner/metastore/store.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Mapping, cast

from kazoo.client import KazooClient
from kazoo.exceptions import NoNodeError, BadVersionError, NodeExistsError

from trialrunner.exceptions import ObjectExistsError, TrialRunnerError
from trialrunner.serialization import json_packb, json_unpackb
from .helpers import ZkConnectionManager
from .leader import LeaderElection

logger = logging.getLogger(__name__)


class MetastoreError(TrialRunnerError):
    """Base exception for Metastore-related errors."""


class MetastoreStoppedError(MetastoreError):
    """The underlying connection has been stopped."""


class MetastoreConflictError(MetastoreError):
    """A versioned write found the node changed or gone since it was read."""


@dataclass(frozen=True, slots=True)
class VersionToken:
    """The `stat.version` of a node at the time it was read."""
    value: int


class Metastore:
    """
    Documents stored as ZooKeeper nodes, addressed by slash-separated keys.

    Keys are relative: a configured `group` places every key under
    '/<group>', otherwise directly under the client's chroot. Values are
    JSON by default because workload, unit and service documents come from
    producers outside this process. Every successful write bumps the node
    version; `update_key(..., expected=token)` only writes when the version
    still matches `token`.
    """

    def __init__(
            self,
            connection: ZkConnectionManager,
            group: Optional[str] = None,
            packb: Callable[[Any], bytes] = json_packb,
            unpackb: Callable[[bytes], Any] = json_unpackb,
            base_structure: Optional[list[str]] = None,
    ) -> None:
        self._connection = connection
        self._group = group
        self._packb = packb
        self._unpackb = unpackb

        self.ensure_structure(base_structure or [])

    @property
    def group(self) -> Optional[str]:
        return self._group

    @property
    def stopped(self) -> bool:
        return self._connection.stopped

    def _live_connection(self) -> ZkConnectionManager:
        if self.stopped:
            raise MetastoreStoppedError("Metastore connection has been stopped.")
        return self._connection

    @property
    def client(self) -> KazooClient:
        return self._live_connection().client

    def _full_path(self, key: str) -> str:
        parts = [p for p in (self._group, (key or "").strip("/")) if p]
        return "/" + "/".join(parts)

    def ensure_structure(self, roots: list[str]) -> None:
        """Create the given keys as empty nodes where they are missing."""
        for key in roots:
            self.client.ensure_path(self._full_path(key))

    # --- watches ----------------------------------------------------------

    def watch_with_callback(self, path: str, callback: Callable[[Any, str], bool]) -> uuid.UUID:
        """
        Call `callback(value, full_path)` with the decoded value of `path`
        now and on every change. The watch ends when the node is deleted or
        the callback returns False.
        """
        connection = self._live_connection()
        full_path = self._full_path(path)

        def _decoded(raw: Optional[bytes], p: str) -> bool:
            return raw is not None and callback(self._unpackb(raw), p)

        return connection.watch_data(full_path, _decoded)

    def watch_members_with_callback(self, path: str, callback: Callable[[list[str], str], bool]) -> uuid.UUID:
        """Like `watch_with_callback`, for the child names of `path`."""
        connection = self._live_connection()
        full_path = self._full_path(path)

        def _present(children: Optional[list[str]], p: str) -> bool:
            return children is not None and callback(children, p)

        return connection.watch_children(full_path, _present)

    # --- documents --------------------------------------------------------

    def get_key_with_version(self, path: str) -> tuple[Any, Optional[VersionToken]]:
        """(value, token) of `path`; (None, None) when the node does not exist."""
        try:
            data, stat = self.client.get(self._full_path(path))
        except NoNodeError:
            return None, None
        token = VersionToken(int(stat.version))
        return (self._unpackb(data) if data else None), token

    def get_key(self, path: str) -> Any:
        return self.get_key_with_version(path)[0]

    def update_key(
            self,
            path: str,
            value: Any,
            ephemeral: bool = False,
            *,
            expected: Optional[VersionToken] = None,
    ) -> None:
        """
        Write `value` to `path`. Without `expected` a missing node is
        created. With it, the write is refused with MetastoreConflictError
        if the node moved past that version or no longer exists.
        """
        client = self.client
        full_path = self._full_path(path)
        data = self._packb(value)

        if expected is None:
            try:
                client.set(full_path, data)
            except NoNodeError:
                client.create(full_path, data, makepath=True, ephemeral=ephemeral)
            return

        try:
            client.set(full_path, data, version=expected.value)
        except (BadVersionError, NoNodeError) as exc:
            raise MetastoreConflictError(f"{full_path} changed since version {expected.value} was read") from exc

    def create_key(self, path: str, value: Any) -> None:
        """Create `path`; raises ObjectExistsError if it is already there."""
        full_path = self._full_path(path)
        try:
            self.client.create(full_path, self._packb(value), makepath=True)
        except NodeExistsError as exc:
            raise ObjectExistsError(f"{full_path} already exists") from exc

    def drop_key(self, path: str) -> bool:
        """Delete `path` and everything below it. False if it was not there."""
        client = self.client
        full_path = self._full_path(path)
        if not client.exists(full_path):
            return False
        client.delete(full_path, recursive=True)
        return True

    def list_members(self, path: str) -> list[str]:
        try:
            return cast(list[str], self.client.get_children(self._full_path(path)))
        except NoNodeError:
            return []

    # --- leader election --------------------------------------------------

    def make_leader_election(
        self,
        *,
        root_path: str,
        candidate_id: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> LeaderElection:
        full_root = self._full_path(root_path)
        self.client.ensure_path(full_root)
        return LeaderElection(
            client=self.client,
            root_path=full_root,
            candidate_id=candidate_id,
            metadata=metadata,
            packb=self._packb,
        )
