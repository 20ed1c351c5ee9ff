"""
Container registry.

The authoritative snapshot of known containers, keyed by name. It changes
only through a full refresh from the API or through the optimistic update
applied when an operation succeeds.
"""

import logging
from collections.abc import Iterable
from dataclasses import replace

from lxc_common.models import Container, ContainerDiff, Operation

logger = logging.getLogger(__name__)

# Status a container is expected to have after a successful operation
RESULT_STATUS = {
    "start": "Running",
    "restart": "Running",
    "stop": "Stopped",
}


def _copy(container: Container) -> Container:
    return replace(container, ipv4=list(container.ipv4), ipv6=list(container.ipv6))


class ContainerRegistry:
    """Snapshot of containers, one entry per name."""

    def __init__(self) -> None:
        self._containers: dict[str, Container] = {}

    def __len__(self) -> int:
        return len(self._containers)

    def __contains__(self, name: str) -> bool:
        return name in self._containers

    def get(self, name: str) -> Container | None:
        container = self._containers.get(name)
        return _copy(container) if container else None

    def all(self) -> list[Container]:
        """All containers, sorted by name."""
        return [_copy(self._containers[name]) for name in sorted(self._containers)]

    def refresh(
        self,
        containers: Iterable[Container],
        preserve: Iterable[str] = (),
        drop: Iterable[str] = (),
    ) -> ContainerDiff:
        """
        Replace the snapshot with a fresh container list.

        Args:
            containers: Full list returned by the API
            preserve: Names whose current entry is kept as-is (containers
                      with an active operation or a newer optimistic update)
            drop: Names left out even if listed (removed by an optimistic
                  update newer than the list)

        Returns:
            Names added, removed and changed compared to the previous snapshot
        """
        fresh: dict[str, Container] = {}
        for container in containers:
            if container.name in fresh:
                logger.warning(f"Duplicate container '{container.name}' in refresh")
            fresh[container.name] = _copy(container)

        for name in preserve:
            if name in self._containers:
                fresh[name] = self._containers[name]
        for name in drop:
            fresh.pop(name, None)

        previous = self._containers
        diff = ContainerDiff(
            added=sorted(set(fresh) - set(previous)),
            removed=sorted(set(previous) - set(fresh)),
            changed=sorted(
                name
                for name in set(fresh) & set(previous)
                if fresh[name] != previous[name]
            ),
        )
        self._containers = fresh

        if diff:
            logger.debug(
                f"Refresh: +{len(diff.added)} -{len(diff.removed)} ~{len(diff.changed)}"
            )
        return diff

    def apply_operation_result(self, operation: Operation) -> ContainerDiff:
        """
        Apply the expected effect of a successful operation.

        The change is optimistic: the next full refresh corrects any drift.
        Operations that did not succeed leave the registry untouched.

        Returns:
            The names affected
        """
        diff = ContainerDiff()
        if operation.state != "succeeded":
            return diff

        kind = operation.kind
        name = operation.target

        if kind in RESULT_STATUS:
            container = self._containers.get(name)
            status = RESULT_STATUS[kind]
            if container is not None and container.status != status:
                self._containers[name] = replace(container, status=status)
                diff.changed.append(name)

        elif kind == "delete":
            if self._containers.pop(name, None) is not None:
                diff.removed.append(name)

        elif kind == "create":
            spec = operation.params["spec"]
            status = "Running" if spec.start else "Stopped"
            existing = self._containers.get(spec.name)
            if existing is None:
                self._containers[spec.name] = Container(
                    name=spec.name,
                    status=status,
                    instance_type=spec.instance_type,
                    image=spec.image,
                    created_at=operation.finished_at,
                )
                diff.added.append(spec.name)
            elif existing.status != status:
                self._containers[spec.name] = replace(existing, status=status)
                diff.changed.append(spec.name)

        elif kind == "clone":
            new_name = operation.params["new_name"]
            if new_name not in self._containers:
                source = self._containers.get(name)
                self._containers[new_name] = Container(
                    name=new_name,
                    status="Stopped",
                    instance_type=source.instance_type if source else "container",
                    image=source.image if source else None,
                    created_at=operation.finished_at,
                )
                diff.added.append(new_name)

        return diff
