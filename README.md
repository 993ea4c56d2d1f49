# modelpuller

`modelpuller` sits between a model mesh and a model-serving runtime. When a
model is to be loaded it reads the storage configuration for the model, has
the model files pulled into a local directory, rewrites the load request so
that it points at the local copy, and hands the request on to the runtime.
When a model is unloaded it asks the runtime to drop it and removes its
local files.

It is a library: you supply the object that downloads files and the client
that talks to the runtime (see "What the package does not do").

## Configuration

`modelpuller.config` reads settings from a mapping of environment variables
(`os.environ` when none is given):

| Variable                | Default            | Meaning                                    |
|-------------------------|--------------------|--------------------------------------------|
| `ROOT_MODEL_DIR`        | `/models`          | Directory that holds one entry per model   |
| `STORAGE_CONFIG_DIR`    | `/storage-config`  | Directory of storage configuration files   |
| `PORT`                  | `8084`             | Port setting of the server configuration   |
| `MODEL_SERVER_ENDPOINT` | `port:8085`        | Endpoint of the model runtime              |

```python
from modelpuller.config import puller_config_from_env, server_config_from_env

puller_config = puller_config_from_env()          # PullerConfiguration
server_config = server_config_from_env()          # PullerServerConfiguration
```

A `PORT` that is not an integer raises `ValueError`.

Each file in the storage configuration directory is a JSON object named by
its storage key, for example:

```json
{"type": "s3", "access_key_id": "placeholder", "secret_access_key": "secret",
 "endpoint_url": "https://storage.example.com", "bucket": "models"}
```

`PullerConfiguration.get_storage_configuration(storage_key)` reads one of
these files and returns it as a dict. A missing, unreadable or malformed
file raises `StorageConfigError`. Keys are joined under the directory with
`secure_join(root, path)`, which clamps `..` at the root and raises
`PathEscapeError` if a symbolic link would lead outside it. For `s3`
storage a legacy `default_bucket` is copied to `bucket` when `bucket` is
not set.

## Per-request storage parameters

A load request may carry `storage_params` in its model key. They override
the stored configuration with dotted paths, creating nested objects as
needed:

```python
from modelpuller.dotpath import apply_parameter_overrides

params = {"type": "s3", "bucket": "models"}
apply_parameter_overrides(params, {"bucket": "other", "extra.region": "eu"})
# params == {"type": "s3", "bucket": "other", "extra": {"region": "eu"}}
```

Only string values can be overwritten; trying to replace an object, or to
walk through an array, raises `OverrideError`.

## Pulling models

`modelpuller.puller.Puller(config, pull_manager)` takes a
`PullerConfiguration` and any object with a `pull(command)` method (the
`PullManager` protocol). `process_load_model_request(request)`:

1. parses the request's model key with `ModelKeyInfo.from_json`;
2. picks the storage configuration: the one named by `storage_key`, or else
   `default_<type>` / `default` if such a file exists;
3. applies the key's `storage_params` as overrides and requires a `type`;
4. calls `pull_manager.pull(PullCommand(...))` with one `Target` for the
   model path and, if given, one for the schema path (named `_schema.json`
   when its file name would clash with the model's);
5. rewrites `request.model_path` (and the schema path) to local paths under
   `<root_model_dir>/<model_id>`, records `disk_size_bytes` as computed by
   `model_disk_size`, and drops `storage_key`, `storage_params` and
   `bucket` from the key written back by `ModelKeyInfo.to_json`.

An invalid model key or missing storage type raises `ValueError`; a failing
pull is raised as `ModelMeshError` carrying a `StatusCode`.

```python
from modelpuller.puller import LoadModelRequest, Puller, PullCommand

class Downloader:
    def pull(self, command: PullCommand) -> None:
        ...  # fetch each command.targets entry into command.directory

puller = Puller(puller_config, Downloader())
request = LoadModelRequest(model_id="m1", model_path="path/model.zip",
                           model_key='{"storage_params": {"type": "s3"}}')
request = puller.process_load_model_request(request)
```

`Puller.list_models()` returns the sorted entries of the model directory,
`Puller.cleanup_model(model_id)` deletes one model's files (a missing model
is not an error) and `Puller.clear_local_model_storage(exclude)` removes
everything except the entry named `exclude`.

## Serving

`modelpuller.server.PullerServer(config, puller, runtime_client)` wraps a
`Puller` and any object following the `ModelRuntimeClient` protocol
(`load_model`, `unload_model`, `predict_model_size`, `model_size`,
`runtime_status`).

- `load_model(request, timeout=None)` pulls the model and passes the
  rewritten request to the runtime.
- `unload_model(request, timeout=None)` unloads from the runtime, then
  deletes the local files; a runtime error with `StatusCode.NOT_FOUND` is
  not a failure.
- `predict_model_size` and `model_size` are passed straight to the runtime.
- `runtime_status(request)` returns the runtime's `RuntimeStatusResponse`;
  when its status is `RuntimeStatus.READY`, `unload_all()` first unloads and
  deletes every model left on disk, apart from entries whose names start
  with `_`. Errors from that purge are raised.

Loads and unloads go through a `modelstate.ModelStateManager`: requests for
the same model run one at a time in arrival order, requests for different
models run side by side. At most 25 requests may wait per model; more raise
`RequestRejected`. If `timeout` seconds pass before a response, `TimeoutError`
is raised.

```python
from modelpuller.server import PullerServer

server = PullerServer(server_config, puller, runtime_client)
response = server.load_model(request, timeout=30)
```

## What the package does not do

- It ships no downloaders for any storage service; the `PullManager` you
  pass in does the actual fetching.
- It ships no network client for the model runtime and does not listen on
  `PORT`: there is no RPC server and no command to start one. You call
  `PullerServer` methods from your own serving code.

## Running the tests

Install the `test` extra and run `pytest` from the project directory.