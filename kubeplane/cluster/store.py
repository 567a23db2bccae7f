from __future__ import annotations

import json
import logging
import os
from typing import List, Optional, Protocol

import fasteners

from kubeplane.errors import AlreadyExistsError, ClusterNotFoundError
from kubeplane.logger import logger as default_logger
from kubeplane.model.cluster import ClusterRecord
from kubeplane.model.status import StatusChange
from kubeplane.utils import read_yaml_file, to_yaml, utcnow, write_file_atomic


class ClusterStore(Protocol):
    """
    Persistence of cluster records and their status history.
    """

    def find_by_organization(self, organization_id: int) -> List[ClusterRecord]: ...

    def find_all(self) -> List[ClusterRecord]: ...

    def exists(self, organization_id: int, name: str) -> bool: ...

    def get(self, cluster_id: int) -> ClusterRecord: ...

    def get_by_name(self, organization_id: int, name: str) -> ClusterRecord: ...

    def create(self, record: ClusterRecord) -> ClusterRecord: ...

    def save(self, record: ClusterRecord) -> None: ...

    def delete(self, cluster_id: int) -> None: ...

    def append_status_change(self, change: StatusChange) -> None: ...

    def status_history(self, cluster_id: int) -> List[StatusChange]: ...


class FileClusterStore:
    """
    Keeps cluster records as YAML files and status history as JSON lines.

    Layout under ``root``::

        records/<id>.yaml
        history/<id>.jsonl
        sequence

    Status history files are only ever appended to. Deleting a record keeps
    its history for auditing.
    """

    def __init__(self, root: str, logger: Optional[logging.Logger] = None) -> None:
        self._root = root
        self._records_dir = os.path.join(root, "records")
        self._history_dir = os.path.join(root, "history")
        os.makedirs(self._records_dir, exist_ok=True)
        os.makedirs(self._history_dir, exist_ok=True)
        self._logger = logger or default_logger
        self._lock = fasteners.ReaderWriterLock()
        # Guards the id sequence against other processes sharing the data dir
        self._sequence_lock = fasteners.InterProcessLock(os.path.join(root, "sequence.lock"))

    def _record_path(self, cluster_id: int) -> str:
        return os.path.join(self._records_dir, f"{cluster_id}.yaml")

    def _history_path(self, cluster_id: int) -> str:
        return os.path.join(self._history_dir, f"{cluster_id}.jsonl")

    def _load_all(self) -> List[ClusterRecord]:
        records = []
        for file_name in os.listdir(self._records_dir):
            if not file_name.endswith(".yaml"):
                continue
            data = read_yaml_file(os.path.join(self._records_dir, file_name))
            if data:
                records.append(ClusterRecord.model_validate(data))
        return sorted(records, key=lambda r: r.id or 0)

    def _write(self, cluster_id: int, record: ClusterRecord) -> None:
        write_file_atomic(
            self._record_path(cluster_id), to_yaml(record.model_dump(mode="json"))
        )

    def _next_id(self) -> int:
        sequence_path = os.path.join(self._root, "sequence")
        with self._sequence_lock:
            try:
                with open(sequence_path, "r") as f:
                    current = int(f.read().strip() or 0)
            except FileNotFoundError:
                current = 0
            next_id = current + 1
            write_file_atomic(sequence_path, str(next_id))
        return next_id

    @fasteners.read_locked(lock="_lock")
    def find_by_organization(self, organization_id: int) -> List[ClusterRecord]:
        return [r for r in self._load_all() if r.organization_id == organization_id]

    @fasteners.read_locked(lock="_lock")
    def find_all(self) -> List[ClusterRecord]:
        return self._load_all()

    @fasteners.read_locked(lock="_lock")
    def exists(self, organization_id: int, name: str) -> bool:
        return any(
            r.organization_id == organization_id and r.name == name
            for r in self._load_all()
        )

    @fasteners.read_locked(lock="_lock")
    def get(self, cluster_id: int) -> ClusterRecord:
        data = read_yaml_file(self._record_path(cluster_id))
        if not data:
            raise ClusterNotFoundError(f"cluster {cluster_id} not found")
        return ClusterRecord.model_validate(data)

    @fasteners.read_locked(lock="_lock")
    def get_by_name(self, organization_id: int, name: str) -> ClusterRecord:
        for record in self._load_all():
            if record.organization_id == organization_id and record.name == name:
                return record
        raise ClusterNotFoundError(
            f"cluster {name} not found in organization {organization_id}"
        )

    @fasteners.write_locked(lock="_lock")
    def create(self, record: ClusterRecord) -> ClusterRecord:
        """
        Persist a new record and assign its id.

        Raises:
            AlreadyExistsError: If the organization already has a cluster with this name.
        """
        for existing in self._load_all():
            if (
                existing.organization_id == record.organization_id
                and existing.name == record.name
            ):
                raise AlreadyExistsError()

        cluster_id = self._next_id()
        record.id = cluster_id
        record.created_at = record.updated_at = utcnow()
        self._write(cluster_id, record)
        self._logger.debug(f"Created cluster record {record.id} ({record.name})")
        return record

    @fasteners.write_locked(lock="_lock")
    def save(self, record: ClusterRecord) -> None:
        if record.id is None or not os.path.exists(self._record_path(record.id)):
            raise ClusterNotFoundError(f"cluster {record.id} not found")
        record.updated_at = utcnow()
        self._write(record.id, record)

    @fasteners.write_locked(lock="_lock")
    def delete(self, cluster_id: int) -> None:
        try:
            os.remove(self._record_path(cluster_id))
        except FileNotFoundError:
            raise ClusterNotFoundError(f"cluster {cluster_id} not found")

    @fasteners.write_locked(lock="_lock")
    def append_status_change(self, change: StatusChange) -> None:
        with open(self._history_path(change.cluster_id), "a") as f:
            f.write(json.dumps(change.model_dump(mode="json")) + "\n")

    @fasteners.read_locked(lock="_lock")
    def status_history(self, cluster_id: int) -> List[StatusChange]:
        try:
            with open(self._history_path(cluster_id), "r") as f:
                return [
                    StatusChange.model_validate(json.loads(line))
                    for line in f
                    if line.strip()
                ]
        except FileNotFoundError:
            return []
