from __future__ import annotations

import json
from typing import Any

import pytest

from trialrunner.exceptions import ObjectExistsError
from trialrunner.metastore.store import Metastore, MetastoreConflictError, MetastoreStoppedError, VersionToken


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList, PyUnusedLocal
def test_init_ensures_base_structure_without_group(connection, fake_client):
    _m = Metastore(connection=connection, group=None, base_structure=["/base", "/nested/path"])
    assert "/base" in fake_client.ensure_calls
    assert "/nested/path" in fake_client.ensure_calls


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList, PyUnusedLocal
def test_init_ensures_base_structure_with_group(connection, fake_client):
    _m = Metastore(connection=connection, group="g1", base_structure=["/base", "/nested/path"])
    assert "/g1/base" in fake_client.ensure_calls
    assert "/g1/nested/path" in fake_client.ensure_calls


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_update_and_get_key_default_json(connection, fake_client):
    m = Metastore(connection=connection, group=None)

    value = {"a": 1, "b": [1, 2, 3]}
    m.update_key("/foo/bar", value)

    assert json.loads(fake_client.data["/foo/bar"]) == value
    assert m.get_key("/foo/bar") == value


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_update_and_get_key_with_group(connection, fake_client):
    m = Metastore(connection=connection, group="trials")

    m.update_key("foo", 42)
    assert "/trials/foo" in fake_client.data

    assert m.get_key("foo") == 42


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_custom_serialization(connection, fake_client):
    calls: list[str] = []

    def packb(obj: Any) -> bytes:
        calls.append("pack")
        return str(obj).encode("utf-8")

    def unpackb(data: bytes) -> Any:
        calls.append("unpack")
        return int(data.decode("utf-8"))

    m = Metastore(connection=connection, group=None, packb=packb, unpackb=unpackb)

    m.update_key("/num", 123)
    assert fake_client.data["/num"] == b"123"
    assert m.get_key("/num") == 123
    assert calls == ["pack", "unpack"]


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_watch_with_callback_wraps_and_registers(connection):
    m = Metastore(connection=connection, group="g")

    received: list[tuple[Any, str]] = []

    def user_cb(value: Any, path: str) -> bool:
        received.append((value, path))
        return True

    watch_id = m.watch_with_callback("/foo", user_cb)
    assert watch_id == "watch-1"

    path, wrapped = connection.watch_registrations[0]
    assert path == "/g/foo"

    wrapped(json.dumps({"x": 1}).encode(), "/g/foo")
    assert received == [({"x": 1}, "/g/foo")]

    # Node deleted: the watch stops without calling back.
    assert wrapped(None, "/g/foo") is False
    assert len(received) == 1


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_watch_members_with_callback_wraps_and_registers(connection):
    m = Metastore(connection=connection, group="g")

    received: list[tuple[list[str], str]] = []

    watch_id = m.watch_members_with_callback("root", lambda c, p: received.append((c, p)) or True)
    assert watch_id == "child-watch-1"

    full_path, wrapped = connection.children_watch_registrations[0]
    assert full_path == "/g/root"

    assert wrapped(["a", "b"], full_path) is True
    assert received == [(["a", "b"], "/g/root")]
    assert wrapped(None, full_path) is False
    assert len(received) == 1


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_list_members(connection, fake_client):
    m = Metastore(connection=connection, group=None)

    m.update_key("/root/a", 1)
    m.update_key("/root/b", 2)
    m.update_key("/root/sub/c", 3)

    assert set(m.list_members("root")) == {"a", "b", "sub"}


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_list_members_of_missing_path_is_empty(connection):
    m = Metastore(connection=connection, group=None)
    assert m.list_members("/nothing/here") == []


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_drop_key(connection, fake_client):
    m = Metastore(connection=connection, group=None)

    m.update_key("/root/a", 1)
    m.update_key("/root/sub/b", 2)

    assert m.drop_key("/root")
    assert not fake_client.data
    assert not m.drop_key("/root")


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_create_key_refuses_existing(connection):
    m = Metastore(connection=connection, group=None)

    m.create_key("/w/1", {"n": 1})
    with pytest.raises(ObjectExistsError):
        m.create_key("/w/1", {"n": 2})
    assert m.get_key("/w/1") == {"n": 1}


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_operations_after_stop_raise(connection):
    m = Metastore(connection=connection, group=None)
    connection.stop()

    with pytest.raises(MetastoreStoppedError):
        m.get_key("/k")


# ---------------------------------------------------------------------------
# Versioning / CAS
# ---------------------------------------------------------------------------

# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_get_key_with_version_missing_returns_none(connection):
    m = Metastore(connection=connection, group=None)
    assert m.get_key_with_version("/missing") == (None, None)


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_get_key_with_version_returns_version_and_increments(connection):
    m = Metastore(connection=connection, group=None)

    m.update_key("/k", {"a": 1})
    v1, tok1 = m.get_key_with_version("/k")
    assert v1 == {"a": 1}
    assert tok1 == VersionToken(0)

    m.update_key("/k", {"a": 2})
    v2, tok2 = m.get_key_with_version("/k")
    assert v2 == {"a": 2}
    assert tok2 == VersionToken(1)


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_update_key_expected_enforces_cas_and_raises_conflict_on_stale(connection):
    m = Metastore(connection=connection, group=None)

    m.update_key("/k", 1)
    _, tok = m.get_key_with_version("/k")

    m.update_key("/k", 2, expected=tok)
    assert m.get_key("/k") == 2

    with pytest.raises(MetastoreConflictError):
        m.update_key("/k", 3, expected=tok)
    assert m.get_key("/k") == 2


# noinspection PyTypeChecker,PyUnresolvedReferences,PyArgumentList
def test_update_key_expected_conflicts_if_missing(connection):
    m = Metastore(connection=connection, group=None)
    with pytest.raises(MetastoreConflictError):
        m.update_key("/missing", 1, expected=VersionToken(0))

