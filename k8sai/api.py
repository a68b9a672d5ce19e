"""Resource types of the ai.k8s-ai.albertzhong.com/v1alpha1 API group."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


@dataclass(frozen=True)
class GroupVersion:
    """An API group together with one of its versions."""

    group: str
    version: str

    def api_version(self) -> str:
        """Return the value used in the ``apiVersion`` field of objects."""
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"


GROUP_VERSION = GroupVersion(group="ai.k8s-ai.albertzhong.com", version="v1alpha1")
TASK_KIND = "Task"
TASK_LIST_KIND = "TaskList"
TASK_PLURAL = "tasks"


class TaskStatusState(str, Enum):
    """Lifecycle state of a task."""

    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    def __str__(self) -> str:
        return self.value


StateValue = Union[TaskStatusState, str]


def _coerce_state(raw: Any) -> StateValue:
    text = "" if raw is None else str(raw)
    try:
        return TaskStatusState(text)
    except ValueError:
        return text


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise TypeError(f"{what} must be a mapping, got {type(data).__name__}")
    return data


@dataclass
class TaskSpec:
    """Desired state of a task."""

    prompt: str = ""

    @classmethod
    def _from_dict(cls, data: Any) -> TaskSpec:
        data = _require_mapping(data, "spec")
        return cls(prompt=str(data.get("prompt") or ""))

    def _to_dict(self) -> dict[str, Any]:
        return {"prompt": self.prompt} if self.prompt else {}


@dataclass
class TaskStatus:
    """Observed state of a task."""

    iteration: int = 0
    human_explanation: str = ""
    last_error: str = ""
    state: StateValue = ""

    @classmethod
    def _from_dict(cls, data: Any) -> TaskStatus:
        data = _require_mapping(data, "status")
        return cls(
            iteration=int(data.get("iteration") or 0),
            human_explanation=str(data.get("explanation") or ""),
            last_error=str(data.get("lastError") or ""),
            state=_coerce_state(data.get("state")),
        )

    def _to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.iteration:
            result["iteration"] = self.iteration
        if self.human_explanation:
            result["explanation"] = self.human_explanation
        if self.last_error:
            result["lastError"] = self.last_error
        if self.state:
            result["state"] = str(self.state)
        return result


@dataclass
class Task:
    """A Task custom resource."""

    metadata: dict[str, Any] = field(default_factory=dict)
    spec: TaskSpec = field(default_factory=TaskSpec)
    status: TaskStatus = field(default_factory=TaskStatus)
    api_version: str = field(default_factory=GROUP_VERSION.api_version)
    kind: str = TASK_KIND

    @property
    def name(self) -> str:
        return str(self.metadata.get("name") or "")

    @property
    def namespace(self) -> str:
        return str(self.metadata.get("namespace") or "")

    @classmethod
    def from_dict(cls, data: Any) -> Task:
        """Build a task from its decoded JSON form."""
        data = _require_mapping(data, "task")
        return cls(
            metadata=copy.deepcopy(dict(_require_mapping(data.get("metadata"), "metadata"))),
            spec=TaskSpec._from_dict(data.get("spec")),
            status=TaskStatus._from_dict(data.get("status")),
            api_version=str(data.get("apiVersion") or ""),
            kind=str(data.get("kind") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of the task, leaving out empty optional fields."""
        result: dict[str, Any] = {}
        if self.api_version:
            result["apiVersion"] = self.api_version
        if self.kind:
            result["kind"] = self.kind
        result["metadata"] = copy.deepcopy(self.metadata)
        result["spec"] = self.spec._to_dict()
        result["status"] = self.status._to_dict()
        return result

    def deep_copy(self) -> Task:
        """Return an independent copy of the task."""
        return copy.deepcopy(self)


@dataclass
class TaskList:
    """A list of Task resources."""

    items: list[Task] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    api_version: str = field(default_factory=GROUP_VERSION.api_version)
    kind: str = TASK_LIST_KIND

    @classmethod
    def from_dict(cls, data: Any) -> TaskList:
        """Build a task list from its decoded JSON form."""
        data = _require_mapping(data, "task list")
        return cls(
            items=[Task.from_dict(item) for item in data.get("items") or []],
            metadata=copy.deepcopy(dict(_require_mapping(data.get("metadata"), "metadata"))),
            api_version=str(data.get("apiVersion") or ""),
            kind=str(data.get("kind") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of the list."""
        result: dict[str, Any] = {}
        if self.api_version:
            result["apiVersion"] = self.api_version
        if self.kind:
            result["kind"] = self.kind
        result["metadata"] = copy.deepcopy(self.metadata)
        result["items"] = [item.to_dict() for item in self.items]
        return result