import pytest
from pydantic import ValidationError

from slm_manager.schemas import InferenceBackend, InstanceConfig, InstanceStatus, ModelRole
from slm_manager.status_board import StatusBoard


def test_instance_config_accepts_both_spellings():
    by_alias = InstanceConfig.model_validate({"role": "reasoner", "port": 8001, "autoStart": True, "customArgs": ["-v"]})
    by_name = InstanceConfig(role=ModelRole.REASONER, port=8001, auto_start=True, custom_args=["-v"])
    assert by_alias.auto_start is by_name.auto_start is True
    assert by_alias.custom_args == by_name.custom_args == ["-v"]
    assert by_alias.backend == InferenceBackend.MLX
    assert by_alias.id != by_name.id


@pytest.mark.parametrize(
    "fields",
    [
        {"role": "reasoner", "port": 0},
        {"role": "reasoner", "port": 65536},
        {"role": "reasoner", "port": 8001, "id": "  "},
        {"role": "wizard", "port": 8001},
        {"role": "reasoner", "port": 8001, "backend": "tpu"},
    ],
)
def test_instance_config_rejects_bad_fields(fields):
    with pytest.raises(ValidationError):
        InstanceConfig.model_validate(fields)


def test_status_health():
    ok = InstanceStatus(id="a", role=ModelRole.EMBEDDER, backend=InferenceBackend.OLLAMA, running=True)
    assert ok.healthy
    assert not ok.model_copy(update={"error": "HTTP 500"}).healthy
    assert not ok.model_copy(update={"running": False}).healthy


def test_status_board_notifies_on_change():
    changed = []
    board = StatusBoard(on_change=changed.append)
    status = InstanceStatus(id="a", role=ModelRole.EMBEDDER, backend=InferenceBackend.MLX)

    board.set(status)
    assert board.get("a") == status
    assert not board.is_running("a")
    board.remove("a")
    board.remove("a")

    assert changed == ["a", "a"]
    assert board.snapshot() == {}
