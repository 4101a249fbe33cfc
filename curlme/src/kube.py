from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from curlme.src.errors import ConflictError, ObjectNotFound, PersistError, StoreError

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw.items()
        if isinstance(k, str)
    }


@dataclass(frozen=True)
class ConfigurationObject:
    """Immutable snapshot of a ConfigMap as seen by the controller.

    The controller never edits a snapshot in place; changes are made on a copy
    and sent through :meth:`ConfigMapStore.update`, which returns the new
    authoritative snapshot.
    """

    namespace: str
    name: str
    annotations: dict[str, str] = field(default_factory=dict)
    data: dict[str, str] = field(default_factory=dict)
    creation_time: datetime | None = None
    resource_version: str | None = None

    @classmethod
    def from_kube(cls, obj: Any) -> ConfigurationObject:
        """Build a snapshot from a ``V1ConfigMap`` (or any object shaped like one)."""
        metadata = getattr(obj, "metadata", None)
        return cls(
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
            annotations=_string_map(getattr(metadata, "annotations", None)),
            data=_string_map(getattr(obj, "data", None)),
            creation_time=getattr(metadata, "creation_timestamp", None),
            resource_version=getattr(metadata, "resource_version", None),
        )

    def with_data_entry(self, key: str, value: str) -> ConfigurationObject:
        return replace(self, data={**self.data, key: value})

    def to_patch(self) -> dict[str, Any]:
        """Merge-patch body carrying only the data map.

        Fields the controller does not own (labels, binaryData, owner
        references, finalizers) are left out so the API server keeps them.
        """
        body: dict[str, Any] = {"data": dict(self.data)}
        if self.resource_version:
            body["metadata"] = {"resourceVersion": self.resource_version}
        return body


class ConfigMapStore:
    """Authoritative read/update access to ConfigMaps through the API server.

    Updates carry the snapshot's ``resourceVersion`` so the API server rejects
    writes based on stale reads with ``409 Conflict``.
    """

    def __init__(self, core_api: CoreV1Api) -> None:
        self.core_api = core_api

    def get(self, namespace: str, name: str) -> ConfigurationObject:
        try:
            obj = self.core_api.read_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                raise ObjectNotFound(f"configmap {namespace}/{name} not found") from exc
            raise StoreError(
                f"failed to read configmap {namespace}/{name}: {exc.reason}",
                status=exc.status,
            ) from exc
        return ConfigurationObject.from_kube(obj)

    def update(self, obj: ConfigurationObject) -> ConfigurationObject:
        try:
            updated = self.core_api.patch_namespaced_config_map(
                name=obj.name,
                namespace=obj.namespace,
                body=obj.to_patch(),
            )
        except ApiException as exc:
            if exc.status == 409:
                raise ConflictError(
                    f"conflicting write to configmap {obj.namespace}/{obj.name}",
                    status=exc.status,
                ) from exc
            raise PersistError(
                f"failed to update configmap {obj.namespace}/{obj.name}: {exc.reason}",
                status=exc.status,
            ) from exc
        return ConfigurationObject.from_kube(updated)
