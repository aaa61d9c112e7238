"""
App Store - Persistence seam for apps, versions and deployment records

The pipeline only needs a handful of operations, so persistence is an abstract
interface with an in-memory implementation. A database-backed store implements
the same methods.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from overskill.services.source_file_set import SourceFileSet


@dataclass
class AppContext:
    """What the pipeline needs to know about an app"""
    app_id: str
    owner_id: str
    subdomain: str
    env_vars: Dict[str, str] = field(default_factory=dict)
    name: str = ""


@dataclass
class AppVersion:
    app_id: str
    version_number: int
    changelog: str
    snapshot: SourceFileSet
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class DeploymentRecord:
    app_id: str
    target: str
    url: Optional[str]
    worker_name: str
    build_id: str
    version_number: Optional[int] = None
    deployed_at: datetime = field(default_factory=datetime.utcnow)


class AppStore(ABC):

    @abstractmethod
    async def get_files(self, app_id: str) -> Optional[SourceFileSet]:
        ...

    @abstractmethod
    async def save_files(self, app_id: str, files: SourceFileSet) -> None:
        ...

    @abstractmethod
    async def save_version(self, app_id: str, files: SourceFileSet, changelog: str) -> AppVersion:
        ...

    @abstractmethod
    async def list_versions(self, app_id: str) -> List[AppVersion]:
        ...

    @abstractmethod
    async def record_deployment(self, record: DeploymentRecord) -> None:
        ...

    @abstractmethod
    async def get_deployment(self, app_id: str, target: str) -> Optional[DeploymentRecord]:
        ...


class InMemoryAppStore(AppStore):
    """Process-local store; snapshots are copied in and out"""

    def __init__(self):
        self._files: Dict[str, SourceFileSet] = {}
        self._versions: Dict[str, List[AppVersion]] = {}
        self._deployments: Dict[tuple, DeploymentRecord] = {}
        self._lock = asyncio.Lock()

    async def get_files(self, app_id: str) -> Optional[SourceFileSet]:
        files = self._files.get(app_id)
        return files.copy() if files is not None else None

    async def save_files(self, app_id: str, files: SourceFileSet) -> None:
        self._files[app_id] = files.copy()

    async def save_version(self, app_id: str, files: SourceFileSet, changelog: str) -> AppVersion:
        async with self._lock:
            versions = self._versions.setdefault(app_id, [])
            version = AppVersion(
                app_id=app_id,
                version_number=len(versions) + 1,
                changelog=changelog,
                snapshot=files.copy(),
            )
            versions.append(version)
            self._files[app_id] = files.copy()
            return version

    async def list_versions(self, app_id: str) -> List[AppVersion]:
        return list(self._versions.get(app_id, []))

    async def record_deployment(self, record: DeploymentRecord) -> None:
        self._deployments[(record.app_id, record.target)] = record

    async def get_deployment(self, app_id: str, target: str) -> Optional[DeploymentRecord]:
        return self._deployments.get((app_id, target))
