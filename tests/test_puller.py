import json
import os

import pytest

from modelpuller.config import PullerConfiguration, StorageConfigError
from modelpuller.dotpath import OverrideError
from modelpuller.puller import (
    LoadModelRequest,
    ModelKeyInfo,
    ModelMeshError,
    PullCommand,
    Puller,
    StatusCode,
    Target,
    model_disk_size,
)


class RecordingPullManager:
    def __init__(self, files=None, error=None):
        self.commands = []
        self.files = files or {}
        self.error = error

    def pull(self, command):
        self.commands.append(command)
        if self.error is not None:
            raise self.error
        for rel, data in self.files.items():
            path = os.path.join(command.directory, rel)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as handle:
                handle.write(data)


STORAGE = {
    "type": "s3",
    "access_key_id": "placeholder",
    "secret_access_key": "secret",
    "endpoint_url": "http://localhost:9000",
    "bucket": "default-bucket",
}


def make_puller(tmp_path, manager):
    root = tmp_path / "models"
    storage = tmp_path / "storage-config"
    root.mkdir()
    storage.mkdir()
    (storage / "myStorage").write_text(json.dumps(STORAGE))
    config = PullerConfiguration(
        root_model_dir=str(root), storage_configuration_dir=str(storage)
    )
    return Puller(config, manager)


def test_model_key_to_json_matches_source_format():
    info = ModelKeyInfo(model_type={"name": "tensorflow"}, disk_size_bytes=60)
    assert info.to_json() == '{"model_type":{"name":"tensorflow"},"disk_size_bytes":60}'


def test_model_key_round_trip():
    info = ModelKeyInfo(
        model_type={"name": "onnx", "version": "1"},
        bucket="bucket1",
        disk_size_bytes=10,
        schema_path="schema.json",
        storage_key="myStorage",
        storage_params={"type": "s3"},
    )
    assert ModelKeyInfo.from_json(info.to_json()) == info


def test_model_key_from_json_rejects_bad_types():
    with pytest.raises(ValueError):
        ModelKeyInfo.from_json('{"disk_size_bytes": "big"}')
    with pytest.raises(ValueError):
        ModelKeyInfo.from_json("[1, 2]")


@pytest.mark.parametrize(
    "model_id, model_path, files",
    [
        ("singlefile", "model.zip", {"model.zip": b"x" * 60}),
        ("multifile", "model", {"model/a.bin": b"a" * 20, "model/b.bin": b"b" * 40}),
    ],
)
def test_process_load_model_request(tmp_path, model_id, model_path, files):
    manager = RecordingPullManager(files=files)
    puller = make_puller(tmp_path, manager)
    request = LoadModelRequest(
        model_id=model_id,
        model_path=model_path,
        model_type="mt:tensorflow",
        model_key='{"model_type": {"name": "tensorflow"}, "storage_key": "myStorage", "bucket": "bucket1"}',
    )

    result = puller.process_load_model_request(request)

    root = str(tmp_path / "models")
    assert result is request
    assert result.model_path == os.path.join(root, model_id, model_path)
    assert result.model_type == "mt:tensorflow"
    assert result.model_key == '{"model_type":{"name":"tensorflow"},"disk_size_bytes":60}'

    (command,) = manager.commands
    assert command.storage_type == "s3"
    assert command.storage_config["bucket"] == "bucket1"
    assert command.directory == os.path.join(root, model_id)
    assert command.targets == [Target(remote_path=model_path, local_path=model_path)]


def test_schema_with_same_name_gets_internal_name(tmp_path):
    manager = RecordingPullManager(files={"model.json": b"{}"})
    puller = make_puller(tmp_path, manager)
    request = LoadModelRequest(
        model_id="m1",
        model_path="dir/model.json",
        model_key='{"storage_key": "myStorage", "schema_path": "other/model.json"}',
    )

    puller.process_load_model_request(request)

    command = manager.commands[0]
    assert command.targets[1] == Target(
        remote_path="other/model.json", local_path="_schema.json"
    )
    key = json.loads(request.model_key)
    assert key["schema_path"] == os.path.join(
        str(tmp_path / "models"), "m1", "_schema.json"
    )
    assert "storage_key" not in key


def test_storage_params_without_config(tmp_path):
    manager = RecordingPullManager()
    puller = make_puller(tmp_path, manager)
    request = LoadModelRequest(
        model_id="m2",
        model_path="path/to/model",
        model_key='{"storage_params": {"type": "gcs", "bucket": "b"}}',
    )

    puller.process_load_model_request(request)

    command = manager.commands[0]
    assert command.storage_type == "gcs"
    assert command.storage_config == {"type": "gcs", "bucket": "b"}
    assert json.loads(request.model_key) == {"disk_size_bytes": 0}


def test_default_storage_key_used_when_unspecified(tmp_path):
    manager = RecordingPullManager()
    puller = make_puller(tmp_path, manager)
    (tmp_path / "storage-config" / "default").write_text(json.dumps(STORAGE))
    request = LoadModelRequest(model_id="m3", model_path="model", model_key="{}")

    puller.process_load_model_request(request)

    assert manager.commands[0].storage_config == STORAGE


def test_missing_storage_type_is_an_error(tmp_path):
    puller = make_puller(tmp_path, RecordingPullManager())
    request = LoadModelRequest(model_id="m", model_path="model", model_key="{}")
    with pytest.raises(ValueError, match="Predictor Storage field missing"):
        puller.process_load_model_request(request)


def test_unknown_storage_key_is_an_error(tmp_path):
    puller = make_puller(tmp_path, RecordingPullManager())
    request = LoadModelRequest(
        model_id="m", model_path="model", model_key='{"storage_key": "nope"}'
    )
    with pytest.raises(StorageConfigError):
        puller.process_load_model_request(request)


def test_invalid_model_key_is_an_error(tmp_path):
    puller = make_puller(tmp_path, RecordingPullManager())
    request = LoadModelRequest(model_id="m", model_path="model", model_key="not json")
    with pytest.raises(ValueError, match="Invalid modelKey"):
        puller.process_load_model_request(request)


def test_override_conflict_is_an_error(tmp_path):
    puller = make_puller(tmp_path, RecordingPullManager())
    (tmp_path / "storage-config" / "nested").write_text(
        json.dumps({"type": "s3", "opts": {"a": "b"}})
    )
    request = LoadModelRequest(
        model_id="m",
        model_path="model",
        model_key='{"storage_key": "nested", "storage_params": {"opts": "x"}}',
    )
    with pytest.raises(OverrideError):
        puller.process_load_model_request(request)


@pytest.mark.parametrize(
    "error, code",
    [
        (ModelMeshError(StatusCode.NOT_FOUND, "missing"), StatusCode.NOT_FOUND),
        (RuntimeError("boom"), StatusCode.UNKNOWN),
    ],
)
def test_pull_failure_carries_status(tmp_path, error, code):
    puller = make_puller(tmp_path, RecordingPullManager(error=error))
    request = LoadModelRequest(
        model_id="m", model_path="model", model_key='{"storage_key": "myStorage"}'
    )
    with pytest.raises(ModelMeshError) as info:
        puller.process_load_model_request(request)
    assert info.value.code == code
    assert str(error) in str(info.value)


def test_model_disk_size_sums_files(tmp_path):
    (tmp_path / "sub").mkdir()
    (tmp_path / "a").write_bytes(b"abc")
    (tmp_path / "sub" / "b").write_bytes(b"defgh")
    assert model_disk_size(str(tmp_path)) == len(b"abc") + len(b"defgh")
    assert model_disk_size(str(tmp_path / "a")) == len(b"abc")


def test_model_disk_size_missing_path(tmp_path):
    with pytest.raises(OSError):
        model_disk_size(str(tmp_path / "absent"))


def test_cleanup_model(tmp_path):
    puller = make_puller(tmp_path, RecordingPullManager())
    model_dir = tmp_path / "models" / "gone"
    model_dir.mkdir()
    (model_dir / "f").write_bytes(b"1")

    puller.cleanup_model("gone")
    assert not model_dir.exists()

    puller.cleanup_model("never-existed")
    assert puller.list_models() == []


def test_list_and_clear_models(tmp_path):
    puller = make_puller(tmp_path, RecordingPullManager())
    root = tmp_path / "models"
    (root / "b-model").mkdir()
    (root / "a-model").mkdir()
    (root / "_keep").write_bytes(b"")

    assert puller.list_models() == ["_keep", "a-model", "b-model"]

    puller.clear_local_model_storage("_keep")
    assert puller.list_models() == ["_keep"]


def test_pull_command_defaults_to_no_targets():
    command = PullCommand(storage_type="s3", storage_config={}, directory="/tmp/x")
    assert command.targets == []