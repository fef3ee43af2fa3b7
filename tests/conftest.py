"""
Shared in-memory fakes for the kazoo client and the connection manager.

FakeKazooClient keeps node payloads and a per-node `version` that increments
on every successful `set()`, which is all the metastore needs for CAS
writes. FakeConnectionManager records watch registrations instead of
installing them, so tests can fire the callbacks by hand.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Tuple

import pytest
from kazoo.exceptions import BadVersionError, NoNodeError, NodeExistsError

from trialrunner.metastore import Metastore

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Timestamp `seconds` after the fixed test epoch T0."""
    return T0 + timedelta(seconds=seconds)


@dataclass(slots=True)
class FakeStat:
    version: int
    ephemeralOwner: int = 0


class FakeKazooClient:
    def __init__(self) -> None:
        self.data: Dict[str, bytes] = {}
        self.versions: Dict[str, int] = {}
        self.ensure_calls: List[str] = []

    def ensure_path(self, path: str) -> None:
        self.ensure_calls.append(path)

    def exists(self, path: str) -> FakeStat | None:
        prefix = path.rstrip("/") or "/"
        if prefix in self.data:
            return FakeStat(self.versions.get(prefix, 0))
        if any(p.startswith(prefix + "/") for p in self.data):
            return FakeStat(0)
        return None

    def get(self, path: str) -> Tuple[bytes, FakeStat]:
        if path not in self.data:
            raise NoNodeError()
        return self.data[path], FakeStat(self.versions.get(path, 0))

    def set(self, path: str, value: bytes, version: int = -1) -> None:
        if path not in self.data:
            raise NoNodeError()
        current = self.versions.get(path, 0)
        if version != -1 and version != current:
            raise BadVersionError()
        self.data[path] = value
        self.versions[path] = current + 1

    # noinspection PyUnusedLocal
    def create(self, path: str, value: bytes, makepath: bool = False, ephemeral: bool = False, **_kw: Any) -> None:
        if path in self.data:
            raise NodeExistsError()
        self.data[path] = value
        self.versions[path] = 0

    # noinspection PyUnusedLocal
    def delete(self, path: str, recursive: bool = False) -> None:
        prefix = path.rstrip("/") or "/"
        doomed = [p for p in list(self.data) if p == prefix or p.startswith(prefix + "/")]
        if not doomed:
            raise NoNodeError()
        for p in doomed:
            self.data.pop(p, None)
            self.versions.pop(p, None)

    def get_children(self, path: str) -> list[str]:
        prefix = path.rstrip("/") or "/"
        if not self.exists(prefix):
            raise NoNodeError()
        children = set()
        for p in self.data:
            if p.startswith(prefix + "/"):
                children.add(p[len(prefix) + 1:].split("/", 1)[0])
        return sorted(children)


class FakeConnectionManager:
    def __init__(self, client: FakeKazooClient) -> None:
        self._client = client
        self.watch_registrations: list[tuple[str, Callable]] = []
        self.children_watch_registrations: list[tuple[str, Callable]] = []
        self._stopped = False

    @property
    def client(self) -> FakeKazooClient:
        return self._client

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        self._stopped = True

    def watch_data(self, path: str, callback: Callable[[bytes | None, str], bool]):
        self.watch_registrations.append((path, callback))
        return f"watch-{len(self.watch_registrations)}"

    def watch_children(self, path: str, callback: Callable[[list[str] | None, str], bool]):
        self.children_watch_registrations.append((path, callback))
        return f"child-watch-{len(self.children_watch_registrations)}"


@pytest.fixture
def fake_client():
    return FakeKazooClient()


@pytest.fixture
def connection(fake_client):
    return FakeConnectionManager(fake_client)


# noinspection PyTypeChecker
@pytest.fixture
def metastore(connection):
    return Metastore(connection=connection, group="g")
