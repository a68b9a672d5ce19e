import io
import json

import httpx
import pytest

from k8sai.api import Task, TaskSpec, TaskStatus, TaskStatusState
from k8sai.clients import KubeError, NamespacedName
from k8sai.controller import (
    BASE_CONTENT,
    CONFIG_MAPS_PATH,
    DEPLOYMENTS_PATH,
    MODEL,
    NODES_PATH,
    PODS_PATH,
    REPLICA_SETS_PATH,
    REQUEUE_AFTER,
    TOOL_NAME,
    PutKubernetesAPIArguments,
    ReconcileResult,
    TaskReconciler,
    build_tool_definition,
)

KEY = NamespacedName(namespace="default", name="test-resource")


class FakeKube:
    def __init__(self, task=None, objects=None, error=None, raw_error=None):
        self.task = task or Task(metadata={"name": KEY.name, "namespace": KEY.namespace})
        self.objects = objects or {}
        self.error = error
        self.raw_error = raw_error
        self.updated = []
        self.raw = []
        self.listed = []

    def get_task(self, name):
        if self.error is not None:
            raise self.error
        return self.task.deep_copy()

    def list_objects(self, path):
        self.listed.append(path)
        return self.objects.get(path, {"kind": "List", "items": []})

    def update_task_status(self, task):
        self.updated.append(task)
        return task

    def raw_request(self, verb, uri, data):
        if self.raw_error is not None:
            raise self.raw_error
        self.raw.append((verb, uri, data))
        return httpx.Response(200, text='{"kind":"Status"}')


class FakeOpenAI:
    def __init__(self, response=None):
        self.response = response if response is not None else {"choices": []}
        self.requests = []

    def create_chat_completion(self, request):
        self.requests.append(request)
        return self.response


def tool_response(arguments, *, tool_type="function", name=TOOL_NAME):
    return {
        "choices": [
            {
                "message": {
                    "tool_calls": [
                        {"type": tool_type, "function": {"name": name, "arguments": arguments}}
                    ]
                }
            }
        ]
    }


def make_reconciler(kube, openai):
    return TaskReconciler(kube, openai, out=io.StringIO())


def test_reconcile_created_resource_succeeds():
    kube = FakeKube()
    reconciler = make_reconciler(kube, FakeOpenAI())

    result = reconciler.reconcile(KEY)

    assert result == ReconcileResult(requeue_after=REQUEUE_AFTER)
    assert len(kube.updated) == 1
    status = kube.updated[0].status
    assert status.iteration == 1
    assert status.state == TaskStatusState.IN_PROGRESS
    assert kube.raw == [("", "", None)]


def test_reconcile_applies_tool_call_and_marks_success():
    arguments = json.dumps(
        {
            "verb": "POST",
            "uri": "/api/v1/namespaces/default/pods",
            "data": {"kind": "Pod"},
            "human_explanation": "created a pod",
            "succeeded": True,
        }
    )
    kube = FakeKube(task=Task(metadata={"name": KEY.name}, spec=TaskSpec(prompt="make a pod")))
    openai = FakeOpenAI(tool_response(arguments))

    make_reconciler(kube, openai).reconcile(KEY)

    assert kube.raw == [("POST", "/api/v1/namespaces/default/pods", {"kind": "Pod"})]
    status = kube.updated[0].status
    assert status.state == TaskStatusState.SUCCEEDED
    assert status.human_explanation == "created a pod"
    assert openai.requests[0]["messages"][1] == {"role": "user", "content": "make a pod"}


def test_reconcile_keeps_in_progress_state():
    task = Task(
        metadata={"name": KEY.name},
        status=TaskStatus(iteration=3, state=TaskStatusState.IN_PROGRESS),
    )
    kube = FakeKube(task=task)
    make_reconciler(kube, FakeOpenAI()).reconcile(KEY)
    assert kube.updated[0].status.iteration == 4
    assert kube.updated[0].status.state == TaskStatusState.IN_PROGRESS


@pytest.mark.parametrize("state", [TaskStatusState.SUCCEEDED, TaskStatusState.FAILED])
def test_finished_task_is_left_alone(state):
    kube = FakeKube(task=Task(metadata={"name": KEY.name}, status=TaskStatus(state=state)))
    openai = FakeOpenAI()

    result = make_reconciler(kube, openai).reconcile(KEY)

    assert result == ReconcileResult()
    assert result.requeue is False
    assert kube.updated == []
    assert openai.requests == []


def test_task_over_iteration_limit_stops():
    task = Task(metadata={"name": KEY.name}, status=TaskStatus(iteration=11, state="InProgress"))
    kube = FakeKube(task=task)
    openai = FakeOpenAI()

    result = make_reconciler(kube, openai).reconcile(KEY)

    assert result.requeue_after is None
    assert openai.requests == []
    assert kube.updated == []


def test_task_at_iteration_limit_still_runs():
    task = Task(metadata={"name": KEY.name}, status=TaskStatus(iteration=10, state="InProgress"))
    kube = FakeKube(task=task)
    make_reconciler(kube, FakeOpenAI()).reconcile(KEY)
    assert kube.updated[0].status.iteration == 11


def test_get_error_propagates():
    kube = FakeKube(error=KubeError("missing", status_code=404))
    with pytest.raises(KubeError) as info:
        make_reconciler(kube, FakeOpenAI()).reconcile(KEY)
    assert info.value.not_found


def test_malformed_arguments_raise_and_skip_update():
    kube = FakeKube()
    with pytest.raises(ValueError):
        make_reconciler(kube, FakeOpenAI(tool_response("{not json"))).reconcile(KEY)
    assert kube.updated == []
    assert kube.raw == []


def test_raw_request_failure_skips_update():
    kube = FakeKube(raw_error=KubeError("unreachable"))
    with pytest.raises(KubeError):
        make_reconciler(kube, FakeOpenAI()).reconcile(KEY)
    assert kube.updated == []


@pytest.mark.parametrize(
    "tool_type, name", [("retrieval", TOOL_NAME), ("function", "other_function")]
)
def test_unrelated_tool_calls_are_ignored(tool_type, name):
    arguments = json.dumps({"verb": "DELETE", "uri": "/x", "succeeded": True})
    kube = FakeKube()
    make_reconciler(kube, FakeOpenAI(tool_response(arguments, tool_type=tool_type, name=name))).reconcile(KEY)
    assert kube.raw == [("", "", None)]
    assert kube.updated[0].status.state == TaskStatusState.IN_PROGRESS


def test_reconcile_prints_arguments():
    out = io.StringIO()
    arguments = json.dumps({"verb": "POST", "uri": "/api/v1/x", "human_explanation": "why"})
    TaskReconciler(FakeKube(), FakeOpenAI(tool_response(arguments)), out=out).reconcile(KEY)
    text = out.getvalue()
    assert "put_kubernetes_api:" in text
    assert "POST /api/v1/x HTTP/1.1" in text
    assert '{"kind":"Status"}' in text


def test_put_kubernetes_api_returns_body():
    kube = FakeKube()
    reconciler = make_reconciler(kube, FakeOpenAI())
    body = reconciler.put_kubernetes_api(
        PutKubernetesAPIArguments(data={"a": 1}, uri="/api/v1/pods", verb="PUT")
    )
    assert body == '{"kind":"Status"}'
    assert kube.raw == [("PUT", "/api/v1/pods", {"a": 1})]


def test_chat_completion_request_layout():
    objects = {
        PODS_PATH: {"kind": "PodList", "items": [{"metadata": {"name": "web"}}]},
        NODES_PATH: {"kind": "NodeList", "items": [{"metadata": {"name": "node-a"}}]},
        DEPLOYMENTS_PATH: {"kind": "DeploymentList", "items": []},
        REPLICA_SETS_PATH: {"kind": "ReplicaSetList", "items": []},
        CONFIG_MAPS_PATH: {"kind": "ConfigMapList", "items": []},
    }
    kube = FakeKube(objects=objects)
    request = make_reconciler(kube, FakeOpenAI()).chat_completion_request("fix it")

    assert request["model"] == MODEL
    assert request["tools"] == [build_tool_definition()]
    system, user = request["messages"]
    assert system["role"] == "system"
    assert user == {"role": "user", "content": "fix it"}
    content = system["content"]
    assert content.startswith(BASE_CONTENT)
    sections = [json.loads(line) for line in content[len(BASE_CONTENT):].split("\n")]
    assert sections == [
        objects[PODS_PATH],
        objects[PODS_PATH],
        objects[DEPLOYMENTS_PATH],
        objects[REPLICA_SETS_PATH],
        objects[CONFIG_MAPS_PATH],
    ]
    assert sorted(kube.listed) == sorted(objects)


def test_chat_completion_request_propagates_list_error():
    class FailingKube(FakeKube):
        def list_objects(self, path):
            raise KubeError("forbidden", status_code=403)

    with pytest.raises(KubeError) as info:
        make_reconciler(FailingKube(), FakeOpenAI()).chat_completion_request("x")
    assert info.value.status_code == 403


def test_tool_definition_fields():
    tool = build_tool_definition()
    assert tool["type"] == "function"
    assert tool["function"]["name"] == "put_kubernetes_api"
    parameters = tool["function"]["parameters"]
    assert parameters["required"] == ["uri", "data", "human_explanation", "verb", "succeeded"]
    assert parameters["properties"]["succeeded"]["type"] == "boolean"
    assert parameters["properties"]["data"]["type"] == "object"


def test_arguments_from_json_full():
    args = PutKubernetesAPIArguments.from_json(
        json.dumps(
            {"data": {"k": "v"}, "uri": "/u", "human_explanation": "h", "succeeded": True, "verb": "POST"}
        )
    )
    assert args == PutKubernetesAPIArguments(
        data={"k": "v"}, uri="/u", human_explanation="h", succeeded=True, verb="POST"
    )


def test_arguments_from_json_defaults():
    assert PutKubernetesAPIArguments.from_json("{}") == PutKubernetesAPIArguments()
    assert PutKubernetesAPIArguments.from_json("null") == PutKubernetesAPIArguments()


@pytest.mark.parametrize(
    "text",
    ["", "[1, 2]", '{"succeeded": "yes"}', '{"uri": 5}', '{"data": [1]}'],
)
def test_arguments_from_json_rejects_bad_input(text):
    with pytest.raises(ValueError):
        PutKubernetesAPIArguments.from_json(text)