# src/trialrunner/metastore/leader.py
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from threading import Event
from time import sleep
from typing import Any, Callable, Mapping

from kazoo.client import KazooClient
from kazoo.exceptions import KazooException, NodeExistsError, NoNodeError
from kazoo.recipe.election import Election

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LeaderRecord:
    candidate_id: str
    metadata: Mapping[str, Any]

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "LeaderRecord":
        return LeaderRecord(candidate_id=str(d["candidate_id"]), metadata=dict(d.get("metadata") or {}))


class LeaderElection:
    """
    ZooKeeper leader election (Kazoo Election).

    Paths:
      - <root>/election : Kazoo election namespace
      - <root>/leader   : ephemeral leader record (observable for clients)

    Only the leading controller runs reconcile workers; standbys block in run().
    """

    def __init__(
        self,
        *,
        client: KazooClient,
        root_path: str,
        candidate_id: str,
        metadata: Mapping[str, Any] | None,
        packb: Callable[[Any], bytes],
        retry_delay_s: float = 0.2,
    ) -> None:
        self._client = client
        self._root = root_path.rstrip("/") or "/"
        self._candidate_id = candidate_id
        self._metadata = dict(metadata or {})
        self._packb = packb
        self._retry_delay_s = retry_delay_s

        self._cancelled = Event()

        self._election_path = f"{self._root}/election"
        self._leader_path = f"{self._root}/leader"
        self._election = Election(self._client, self._election_path, identifier=candidate_id)

        self._client.ensure_path(self._election_path)

    @property
    def candidate_id(self) -> str:
        return self._candidate_id

    def cancel(self) -> None:
        self._cancelled.set()
        try:
            self._election.cancel()
        except KazooException as exc:
            logger.debug("Cancelling election for %s failed: %r", self._candidate_id, exc)

        # Best-effort cleanup of leader key (ephemeral will disappear on session loss anyway).
        try:
            self._client.delete(self._leader_path)
        except NoNodeError:
            pass
        except KazooException as exc:
            logger.debug("Removing leader record %s failed: %r", self._leader_path, exc)

    def run(self, on_lead: Callable[[], None]) -> None:
        """
        Block until cancelled; campaign for leadership. When leading, publish leader record and run on_lead().
        """
        while not self._cancelled.is_set():
            try:
                self._election.run(self._run_as_leader, on_lead)
            except KazooException as exc:
                if self._cancelled.is_set():
                    return
                logger.warning(
                    "Leader election error (candidate_id=%s, root=%s): %r",
                    self._candidate_id,
                    self._root,
                    exc,
                )
                sleep(self._retry_delay_s)

    def _run_as_leader(self, on_lead: Callable[[], None]) -> None:
        if self._cancelled.is_set():
            return

        record = LeaderRecord(candidate_id=self._candidate_id, metadata=self._metadata)
        data = self._packb(asdict(record))

        try:
            self._client.create(self._leader_path, data, ephemeral=True, makepath=True)
        except NodeExistsError:
            # Stale persistent node from an earlier crash: replace it with an ephemeral one.
            stat = self._client.exists(self._leader_path)
            if stat is not None and getattr(stat, "ephemeralOwner", 0) == 0:
                self._client.delete(self._leader_path)
                self._client.create(self._leader_path, data, ephemeral=True, makepath=True)
            else:
                self._client.set(self._leader_path, data)

        logger.info("Controller %s acquired leadership.", self._candidate_id)
        try:
            on_lead()
        finally:
            try:
                self._client.delete(self._leader_path)
            except NoNodeError:
                pass
            except KazooException as exc:
                logger.debug("Removing leader record %s failed: %r", self._leader_path, exc)
