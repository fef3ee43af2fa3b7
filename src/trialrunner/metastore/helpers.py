# src/trialrunner/metastore/helpers.py
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from kazoo.client import KazooClient, KazooState, KazooRetry
from kazoo.recipe.watchers import DataWatch, ChildrenWatch

from trialrunner.config import ZookeeperSettings

logger = logging.getLogger(__name__)

DataCallback = Callable[[Optional[bytes], str], bool]
ChildrenCallback = Callable[[Optional[list[str]], str], bool]


def create_zk_client(settings: ZookeeperSettings) -> KazooClient:
    """
    Build a KazooClient for `settings`: the chroot is appended to the host
    list and one retry policy covers both connecting and commands. Auth is
    added before the client is started.
    """
    def retry() -> KazooRetry:
        return KazooRetry(max_tries=settings.max_retries, delay=settings.retry_delay_s)

    client = KazooClient(
        hosts=settings.hosts + (settings.chroot or ""),
        timeout=settings.session_timeout_s,
        connection_timeout=settings.connection_timeout_s,
        connection_retry=retry(),
        command_retry=retry(),
        use_ssl=settings.use_tls,
    )
    if settings.auth_scheme and settings.auth_credentials:
        client.add_auth(settings.auth_scheme, settings.auth_credentials)
    return client


@dataclass(frozen=True, slots=True)
class _Watch:
    path: str
    callback: Callable[..., bool]
    children: bool = False


class ZkConnectionManager:
    """
    Owns the KazooClient the metastore, the trial triggers and the leader
    election share. Watches registered here outlive a ZooKeeper session:
    after a LOST session is re-established every watch still in the
    registry is installed again on the new session.

    A watch leaves the registry once its callback returns False.
    """

    def __init__(self, settings: ZookeeperSettings) -> None:
        self._settings = settings
        self._client: Optional[KazooClient] = None
        self._watches: Dict[uuid.UUID, _Watch] = {}
        self._lock = threading.RLock()
        self._needs_reinstall = False
        self._stopped = False

    @property
    def client(self) -> KazooClient:
        if self._client is None:
            raise RuntimeError("ZooKeeper connection has not been started.")
        return self._client

    @property
    def settings(self) -> ZookeeperSettings:
        return self._settings

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        if self._client is not None:
            return

        client = create_zk_client(self._settings)
        client.add_listener(self._on_state_change)
        client.start()
        with self._lock:
            self._client = client
            self._needs_reinstall = False
            self._stopped = False

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            client = self._client
        if client is not None:
            client.stop()
            client.close()

    def _on_state_change(self, state: KazooState) -> None:
        # Runs on kazoo's event thread; watches are installed from here too.
        if state == KazooState.LOST:
            with self._lock:
                self._needs_reinstall = True
            logger.warning("ZooKeeper session lost; watches will be reinstalled on reconnect")
            return

        if state != KazooState.CONNECTED:
            return

        with self._lock:
            if not self._needs_reinstall or self._stopped:
                return
            self._needs_reinstall = False
            pending = list(self._watches.items())

        logger.info("ZooKeeper session re-established; reinstalling %d watch(es)", len(pending))
        for watch_id, watch in pending:
            logger.debug("Reinstalling watch %s on %s", watch_id, watch.path)
            self._install(watch_id, watch)

    def watch_data(self, path: str, callback: DataCallback) -> uuid.UUID:
        """
        Watch the data of `path`. `callback(data, path)` gets None once the
        node is gone; returning False ends the watch.
        """
        return self._register(_Watch(path, callback))

    def watch_children(self, path: str, callback: ChildrenCallback) -> uuid.UUID:
        """Watch the child names of `path`; same contract as `watch_data`."""
        return self._register(_Watch(path, callback, children=True))

    def _register(self, watch: _Watch) -> uuid.UUID:
        watch_id = uuid.uuid4()
        with self._lock:
            self._watches[watch_id] = watch
        self._install(watch_id, watch)
        return watch_id

    def _keep(self, watch_id: uuid.UUID, keep: bool) -> bool:
        if not keep:
            with self._lock:
                self._watches.pop(watch_id, None)
        return keep

    def _install(self, watch_id: uuid.UUID, watch: _Watch) -> None:
        if watch.children:
            ChildrenWatch(
                self.client, watch.path,
                func=lambda children: self._keep(watch_id, watch.callback(children, watch.path)),
            )
        else:
            DataWatch(
                self.client, watch.path,
                func=lambda data, stat, event: self._keep(watch_id, watch.callback(data, watch.path)),
            )
