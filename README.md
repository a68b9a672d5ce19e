# k8sai

A controller for Kubernetes clusters that works on `Task` resources written
in plain English. For each task it collects a snapshot of the cluster, asks
a chat model what to do, and sends the one API request the model proposes
to the cluster's API server.

## Tasks

`Task` resources belong to the API group `ai.k8s-ai.albertzhong.com`,
version `v1alpha1` (plural `tasks`). A task holds a `prompt` in its spec and
reports in its status:

- `state` – empty at first, `InProgress` once the controller has worked on
  it, `Succeeded` when the model reports the work done;
- `iteration` – how many times the task has been reconciled;
- `explanation` – the model's account of what it did and why;
- `lastError` – carried in the type, not filled in by the controller.

## What one reconciliation does

`TaskReconciler.reconcile` in `k8sai.controller`:

1. fetches the task; tasks whose state is set to anything other than
   `InProgress` are left alone, as are tasks already past ten iterations;
2. lists pods, deployments, replica sets and config maps in the `default`
   namespace, and nodes (nodes are fetched but the pod list is what goes
   into the prompt in their place);
3. sends these, compact JSON one per line after a fixed system message,
   together with the task's prompt to the model `gpt-4`, offering the single
   tool `put_kubernetes_api` (see `build_tool_definition()`), which takes a
   verb, a URI, a JSON body, a human explanation and a `succeeded` flag;
4. decodes the tool call's arguments into `PutKubernetesAPIArguments`
   (malformed arguments raise `ValueError`), prints them, and sends the
   proposed request through `TaskReconciler.put_kubernetes_api`, printing the
   request and the response body;
5. writes the task's status back with the iteration raised by one, the
   explanation, and `Succeeded` if the model said so.

It returns a `ReconcileResult`; a task that went through the whole step is
due again after five minutes.

## Running the controller

`k8sai` is meant to run in a pod. It reads the service-account token and CA
certificate from `/var/run/secrets/kubernetes.io/serviceaccount`, talks to
`https://kubernetes.default.svc`, and needs `OPENAI_API_KEY` in the
environment:

```
export OPENAI_API_KEY=placeholder
k8sai
```

The `Manager` in `k8sai.main` lists tasks in all namespaces at a fixed
interval and reconciles, one at a time, each task that is new, whose
`metadata.generation` has changed, or that has come due. A failed
reconciliation is retried after five seconds. It runs until SIGINT or
SIGTERM.

Options:

- `--health-probe-bind-address` (default `:8081`) – serves `/healthz` and
  `/readyz`, both answering `ok`;
- `--metrics-bind-address` (default `:8080`) – serves `/metrics` with counts
  of successful and failed reconciliations;
- `--poll-interval` (default `5`) – seconds between listings of the tasks.

An address of `0` or an empty address turns the endpoint off. The options
`--leader-elect`, `--metrics-secure` and `--enable-http2` are accepted but
change nothing.

## Library use

- `k8sai.api` – `GroupVersion`, `TaskStatusState`, `TaskSpec`, `TaskStatus`,
  `Task` and `TaskList`, with `from_dict` / `to_dict` for their JSON form and
  `Task.deep_copy`.
- `k8sai.clients` – `KubeClient` (`get_task`, `list_tasks`, `list_objects`,
  `update_task_status`, `raw_request`), raising `KubeError` on failed
  requests; `OpenAIClient.create_chat_completion`; `NamespacedName`; and
  `in_cluster_client()`.
- `k8sai.controller` – `TaskReconciler`, `ReconcileResult`,
  `PutKubernetesAPIArguments` and `build_tool_definition()`.
- `k8sai.main` – `Manager`, `parse_args` and `main`.

## Limits

- There is no leader election: run a single replica.
- Tasks are found by polling, not by watching the API server.
- No CustomResourceDefinition or RBAC manifests are included; the `Task`
  resource must already be installed in the cluster.
- Endpoints are served over plain HTTP/1.1 only.

## Caution

The controller carries out whatever request the model proposes, with the
permissions of its service account. Give it an account no broader than you
are willing to hand to the model.

## Tests

```
pip install "k8sai[test]"
pytest
```