from .helpers import ZkConnectionManager, create_zk_client
from .store import (
    Metastore,
    MetastoreConflictError,
    MetastoreError,
    MetastoreStoppedError,
    VersionToken,
)
from .leader import LeaderElection, LeaderRecord

__all__ = [
    "ZkConnectionManager",
    "create_zk_client",
    "Metastore",
    "MetastoreError",
    "MetastoreConflictError",
    "MetastoreStoppedError",
    "VersionToken",
    "LeaderElection",
    "LeaderRecord",
]
