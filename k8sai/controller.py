"""Reconciliation of Task resources through a chat completion model."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, TextIO

import httpx

from k8sai.api import Task, TaskStatusState
from k8sai.clients import NamespacedName

log = logging.getLogger("k8sai.controller")

REQUEUE_AFTER = 5 * 60.0
MAX_ITERATIONS = 10
MODEL = "gpt-4"
TOOL_NAME = "put_kubernetes_api"
TOOL_TYPE_FUNCTION = "function"

PODS_PATH = "/api/v1/namespaces/default/pods"
NODES_PATH = "/api/v1/nodes"
DEPLOYMENTS_PATH = "/apis/apps/v1/namespaces/default/deployments"
REPLICA_SETS_PATH = "/apis/apps/v1/namespaces/default/replicasets"
CONFIG_MAPS_PATH = "/api/v1/namespaces/default/configmaps"

BASE_CONTENT = """You are k8s-ai, an LLM agent managing a Kubernetes cluster. You are extremely skilled in Kubernetes. Human users will submit task prompts in plain English. These are high-level requests like "figure out why my deployment is crash looping and fix it."

It is your responsibility to query the Kubernetes API to determine the issue, and possibly apply a set of Kubernetes templates to fulfill the task. Use the function call put_kubernetes_api.

If and only if the issue is already solved, you must apply an empty list of Kubernetes objects. If you user provides a prompt that is not well-defined (i.e it is not related to Kubernetes, just provide an empty list of Kubernetes objects, with an human explanation to put_kubernetes_api that the user provided a weird prompt.

Given the following conversation:
---
<list of objects currently on the Kubernetes cluster in JSON format>
<user prompt>
---
You MUST make a single call to put_kubernetes_api afterwards.
"""


class KubeAPI(Protocol):
    def get_task(self, name: NamespacedName) -> Task: ...

    def list_objects(self, path: str) -> dict[str, Any]: ...

    def update_task_status(self, task: Task) -> Task: ...

    def raw_request(
        self, verb: str, uri: str, data: Mapping[str, Any] | None
    ) -> httpx.Response: ...


class ChatAPI(Protocol):
    def create_chat_completion(self, request: Mapping[str, Any]) -> dict[str, Any]: ...


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconciliation; ``requeue_after`` is in seconds."""

    requeue_after: float | None = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


@dataclass
class PutKubernetesAPIArguments:
    """Arguments the model passes to the put_kubernetes_api tool."""

    data: dict[str, Any] | None = None
    uri: str = ""
    human_explanation: str = ""
    succeeded: bool = False
    verb: str = ""

    @classmethod
    def from_json(cls, text: str) -> PutKubernetesAPIArguments:
        """Decode tool arguments, raising ValueError on malformed input."""
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid tool arguments: {exc}") from exc
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ValueError("tool arguments must be a JSON object")

        def text_field(name: str) -> str:
            value = raw.get(name)
            if value is None:
                return ""
            if not isinstance(value, str):
                raise ValueError(f"tool argument {name!r} must be a string")
            return value

        data = raw.get("data")
        if data is not None and not isinstance(data, dict):
            raise ValueError("tool argument 'data' must be an object")
        succeeded = raw.get("succeeded")
        if succeeded is None:
            succeeded = False
        elif not isinstance(succeeded, bool):
            raise ValueError("tool argument 'succeeded' must be a boolean")
        return cls(
            data=data,
            uri=text_field("uri"),
            human_explanation=text_field("human_explanation"),
            succeeded=succeeded,
            verb=text_field("verb"),
        )


def build_tool_definition() -> dict[str, Any]:
    """Return the definition of the put_kubernetes_api tool."""
    return {
        "type": TOOL_TYPE_FUNCTION,
        "function": {
            "name": TOOL_NAME,
            "description": "Make a call to the Kubernetes API server of this cluster.",
            "parameters": {
                "type": "object",
                "properties": {
                    "verb": {
                        "type": "string",
                        "description": "Kubernetes Verb, most likely POST",
                    },
                    "uri": {
                        "type": "string",
                        "description": "Kubernetes object URI",
                    },
                    "data": {
                        "type": "object",
                        "description": (
                            "The application/json content to POST. This should be exactly the "
                            "JSON template of the Kubernetes resource(s) to POST. Recall that you "
                            "can apply a List of Kubernetes resources, do you don't need to make "
                            "multiple put_kubernetes_api calls. You MUST create resources under "
                            "the default namespace."
                        ),
                    },
                    "human_explanation": {
                        "type": "string",
                        "description": (
                            "Describe in concise, plain, and accurate plain language why you are "
                            "putting this Kubernetes resource, and exactly how this solves the "
                            "user's request."
                        ),
                    },
                    "succeeded": {
                        "type": "boolean",
                        "description": (
                            "If the task is already complete or the user's request is "
                            "out-of-scope (i.it is not actually about this Kubernetes cluster), "
                            "set this property to true. This should be true if and only if the "
                            "Kubernetes templates applied in the data property is empty."
                        ),
                    },
                },
                "required": ["uri", "data", "human_explanation", "verb", "succeeded"],
            },
        },
    }


def _compact(document: Any) -> str:
    return json.dumps(document, separators=(",", ":"))


def _tool_arguments(response: Mapping[str, Any]) -> Iterator[str]:
    """Yield the arguments of the first matching tool call of each choice."""
    for choice in response.get("choices") or []:
        message = choice.get("message") or {}
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            if call.get("type") == TOOL_TYPE_FUNCTION and function.get("name") == TOOL_NAME:
                yield function.get("arguments") or ""
                break


class TaskReconciler:
    """Drives a Task towards completion by asking the model for API calls."""

    def __init__(self, kube: KubeAPI, openai: ChatAPI, *, out: TextIO | None = None) -> None:
        self.kube = kube
        self.openai = openai
        self._out = out

    @property
    def _stream(self) -> TextIO:
        return self._out if self._out is not None else sys.stdout

    def reconcile(self, request: NamespacedName) -> ReconcileResult:
        """Run one reconciliation step for the named task."""
        log.info("reconcile name=%s namespace=%s", request.name, request.namespace)
        task = self.kube.get_task(request)

        state = task.status.state
        if state and state != TaskStatusState.IN_PROGRESS:
            log.info("found failed or succeeded task name=%s", request.name)
            return ReconcileResult()

        if task.status.iteration > MAX_ITERATIONS:
            log.info("task exceeded %d iterations, stopping name=%s", MAX_ITERATIONS, request.name)
            return ReconcileResult()

        new_task = task.deep_copy()
        new_task.status.iteration = task.status.iteration + 1
        if not state:
            new_task.status.state = TaskStatusState.IN_PROGRESS

        completion = self.openai.create_chat_completion(
            self.chat_completion_request(task.spec.prompt)
        )

        args = PutKubernetesAPIArguments()
        found = False
        for arguments in _tool_arguments(completion):
            log.info("found func call name=%s", request.name)
            args = PutKubernetesAPIArguments.from_json(arguments)
            found = True
        if not found:
            log.info("not found name=%s", request.name)

        new_task.status.human_explanation = args.human_explanation
        if args.succeeded:
            log.info("task has succeeded, stopping name=%s", request.name)
            new_task.status.state = TaskStatusState.SUCCEEDED

        print(f"put_kubernetes_api: {args}", file=self._stream)
        self.put_kubernetes_api(args)
        self.kube.update_task_status(new_task)
        return ReconcileResult(requeue_after=REQUEUE_AFTER)

    def put_kubernetes_api(self, args: PutKubernetesAPIArguments) -> str:
        """Send the model's request to the API server and return the response body."""
        out = self._stream
        print("request:", file=out)
        print(f"{args.verb or 'GET'} {args.uri or '/'} HTTP/1.1\n\n{_compact(args.data)}", file=out)
        response = self.kube.raw_request(args.verb, args.uri, args.data)
        print(response.text, file=out)
        return response.text

    def chat_completion_request(self, prompt: str) -> dict[str, Any]:
        """Build the chat completion request describing the cluster and the prompt."""
        pods = self.kube.list_objects(PODS_PATH)
        # Nodes are fetched so that a missing permission fails the step, but
        # the pod list stands in their place in the prompt.
        self.kube.list_objects(NODES_PATH)
        deployments = self.kube.list_objects(DEPLOYMENTS_PATH)
        replica_sets = self.kube.list_objects(REPLICA_SETS_PATH)
        config_maps = self.kube.list_objects(CONFIG_MAPS_PATH)

        sections = [pods, pods, deployments, replica_sets, config_maps]
        content = BASE_CONTENT + "\n".join(_compact(section) for section in sections)
        return {
            "model": MODEL,
            "messages": [
                {"role": "system", "content": content},
                {"role": "user", "content": prompt},
            ],
            "tools": [build_tool_definition()],
        }


__all__ = [
    "BASE_CONTENT",
    "PutKubernetesAPIArguments",
    "ReconcileResult",
    "TaskReconciler",
    "build_tool_definition",
]


_default_status = field  # keeps dataclasses.field import meaningful for subclasses