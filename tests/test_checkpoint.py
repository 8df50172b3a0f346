import numpy as np
import pytest
import torch

from src.models.components.checkpoint import (
    load_coordinates,
    load_weight_files,
    save_coordinates,
    save_weight_files,
    tensor_from_bytes,
    tensor_to_bytes,
)
from src.models.components.egnn import EGNNDynamics
from src.utils.utils import DataIntegrityError


def test_tensor_bytes_are_flat_little_endian_float32():
    tensor = torch.arange(6, dtype=torch.float64).reshape(2, 3)
    data = tensor_to_bytes(tensor)
    assert len(data) == 24
    assert np.array_equal(np.frombuffer(data, dtype="<f4"), np.arange(6, dtype=np.float32))
    assert torch.equal(tensor_from_bytes(data, (2, 3)), tensor.float())


def test_undersized_payload_is_zero_padded():
    data = np.array([1.0, 2.0, 3.0], dtype="<f4").tobytes() + b"\x01\x02"
    values = tensor_from_bytes(data, (2, 3))
    assert torch.equal(values, torch.tensor([[1.0, 2.0, 3.0], [0.0, 0.0, 0.0]]))


def test_oversized_payload_is_replaced_by_zeros():
    data = np.ones(8, dtype="<f4").tobytes()
    assert torch.equal(tensor_from_bytes(data, (2, 3)), torch.zeros(2, 3))


def test_strict_decoding_rejects_size_mismatch():
    with pytest.raises(DataIntegrityError):
        tensor_from_bytes(b"\x00" * 20, (2, 3), strict=True)


def test_weight_files_round_trip(tmp_path):
    torch.manual_seed(0)
    source = EGNNDynamics(hidden_dim=8, num_layers=2)
    paths = save_weight_files(source, tmp_path)
    assert (tmp_path / "embedding.weight.bin").exists()
    assert (tmp_path / "layers.1.coord_mlp.2.bias.bin").exists()
    assert len(paths) == len(source.state_dict())
    assert (tmp_path / "embedding.weight.bin").stat().st_size == 10 * 8 * 4

    torch.manual_seed(1)
    target = EGNNDynamics(hidden_dim=8, num_layers=2)
    report = load_weight_files(target, tmp_path, strict=True)
    assert report.complete
    for name, tensor in source.state_dict().items():
        assert torch.equal(target.state_dict()[name], tensor), name


def test_missing_and_short_weight_files(tmp_path):
    source = EGNNDynamics(hidden_dim=8, num_layers=1)
    save_weight_files(source, tmp_path)
    (tmp_path / "embedding.weight.bin").unlink()
    short = tmp_path / "layers.0.node_mlp.0.bias.bin"
    short.write_bytes(short.read_bytes()[:12])

    target = EGNNDynamics(hidden_dim=8, num_layers=1)
    report = load_weight_files(target, tmp_path)
    assert report.missing == ["embedding.weight"]
    assert report.padded == ["layers.0.node_mlp.0.bias"]
    assert torch.equal(target.embedding.weight, torch.zeros(10, 8))
    bias = target.layers[0].node_mlp[0].bias
    assert torch.equal(bias[:3], source.layers[0].node_mlp[0].bias[:3])
    assert torch.equal(bias[3:], torch.zeros(5))

    with pytest.raises(DataIntegrityError):
        load_weight_files(target, tmp_path, strict=True)


def test_missing_weight_directory(tmp_path):
    with pytest.raises(DataIntegrityError):
        load_weight_files(EGNNDynamics(hidden_dim=8, num_layers=1), tmp_path / "absent")


def test_coordinate_files(tmp_path):
    pos = torch.randn(5, 3)
    path = tmp_path / "molecule_coords.bin"
    save_coordinates(path, pos)
    assert path.stat().st_size == 5 * 3 * 4
    assert torch.equal(load_coordinates(path, 5), pos)
    with pytest.raises(DataIntegrityError):
        load_coordinates(path, 4)
