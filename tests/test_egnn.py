import math

import numpy as np
import pytest
import torch

from src.datamodules.components.qm9_binary import molecule_to_data
from src.models.components.buffers import TensorBufferSet, check_gradient_buffers
from src.models.components.egnn import EGNNDynamics, EGNNLayer, TimestepConditioner
from src.utils.utils import ConfigurationError, DataIntegrityError

from tests.conftest import random_molecule


def random_rotation(seed: int) -> torch.Tensor:
    generator = torch.Generator().manual_seed(seed)
    q, r = torch.linalg.qr(torch.randn(3, 3, generator=generator, dtype=torch.float64))
    q = q * torch.sign(torch.diagonal(r))
    if torch.det(q) < 0:
        q[:, 0] = -q[:, 0]
    return q.float()


def test_parameter_names_and_shapes(dynamics):
    state_dict = dynamics.state_dict()
    assert state_dict["embedding.weight"].shape == (10, 16)
    assert state_dict["layers.0.message_mlp.0.weight"].shape == (16, 2 * 16 + 1)
    assert state_dict["layers.0.coord_mlp.2.weight"].shape == (1, 16)
    assert state_dict["layers.2.node_mlp.0.weight"].shape == (16, 32)
    assert state_dict["time_conditioner.time_mlp.2.bias"].shape == (16,)
    assert not any("buffer" in name for name in state_dict)


def test_initialization():
    torch.manual_seed(0)
    layer = EGNNLayer(64)
    assert torch.all(layer.message_mlp[0].bias == 0)
    # He-normal weights have std sqrt(2 / fan_in)
    std = layer.node_mlp[0].weight.std().item()
    assert std == pytest.approx(math.sqrt(2.0 / 128), rel=0.1)
    # the coordinate head starts out tiny
    assert layer.coord_mlp[-1].weight.abs().max().item() < 1e-3


@pytest.mark.parametrize("hidden_dim", [0, 2, 3, 15])
def test_invalid_hidden_dim(hidden_dim):
    with pytest.raises(ConfigurationError):
        EGNNDynamics(hidden_dim=hidden_dim)


def test_sinusoidal_embedding():
    emb = TimestepConditioner.sinusoidal_embedding(0, 8)
    assert emb.shape == (1, 8)
    assert torch.allclose(emb, torch.tensor([[0.0, 0.0, 0.0, 0.0, 1.0, 1.0, 1.0, 1.0]]))

    emb = TimestepConditioner.sinusoidal_embedding(7, 8)
    freqs = torch.exp(-torch.arange(4, dtype=torch.float64) * math.log(10000.0) / 3)
    expected = torch.cat([torch.sin(7 * freqs), torch.cos(7 * freqs)]).float()
    assert torch.allclose(emb[0], expected, atol=1e-6)


def test_layer_updates_positions_in_place(methane):
    torch.manual_seed(0)
    layer = EGNNLayer(8, coord_init_gain=1.0)
    buffers = TensorBufferSet(5, 8, 8, 1).layers[0]
    pos = methane.pos.clone()
    h = torch.randn(5, 8)
    h_out, cache = layer(h, pos, methane.edge_index, buffers)
    assert h_out.shape == (5, 8)
    assert not torch.equal(pos, methane.pos)
    assert torch.allclose(pos - methane.pos, buffers.agg_x)
    # translations are summed into the destination node of each edge
    expected = torch.zeros(5, 3).index_add_(0, methane.edge_index[1], cache.rel * cache.w)
    assert torch.allclose(buffers.agg_x, expected, atol=1e-6)


def test_translation_and_rotation_covariance(dynamics, methane):
    pos = methane.pos
    rotation = random_rotation(11)
    shift = torch.tensor([3.0, -1.5, 7.25])
    with torch.no_grad():
        disp, _ = dynamics(methane.atom_types, pos, methane.edge_index, 17)
        disp_moved, _ = dynamics(methane.atom_types, pos @ rotation.T + shift, methane.edge_index, 17)
    assert torch.allclose(disp_moved, disp @ rotation.T, atol=1e-4)
    assert torch.allclose((pos @ rotation.T + shift) + disp_moved, (pos + disp) @ rotation.T + shift, atol=1e-4)


def test_layer_features_ignore_translation_and_rotation(methane):
    torch.manual_seed(0)
    layer = EGNNLayer(8, coord_init_gain=1.0).double()
    buffers = TensorBufferSet(5, 8, 8, 1, dtype=torch.float64).layers[0]
    h = torch.randn(5, 8, dtype=torch.float64)
    pos = methane.pos.double()
    rotation = random_rotation(5).double()
    shift = torch.tensor([-4.0, 2.5, 0.75], dtype=torch.float64)

    with torch.no_grad():
        pos_out = pos.clone()
        h_out, _ = layer(h, pos_out, methane.edge_index, buffers)
        shifted = pos + shift
        h_shifted, _ = layer(h, shifted, methane.edge_index, buffers)
        rotated = pos @ rotation.T
        h_rotated, _ = layer(h, rotated, methane.edge_index, buffers)

    assert torch.allclose(h_shifted, h_out, atol=1e-10)
    assert torch.allclose(shifted, pos_out + shift, atol=1e-10)
    assert torch.allclose(h_rotated, h_out, atol=1e-10)
    assert torch.allclose(rotated, pos_out @ rotation.T, atol=1e-10)


def test_output_is_centered(dynamics):
    data = molecule_to_data(random_molecule(6, np.random.default_rng(0)))
    with torch.no_grad():
        disp, _ = dynamics(data.atom_types, data.pos, data.edge_index, 3)
    assert torch.allclose(disp.mean(dim=0), torch.zeros(3), atol=1e-6)


def test_forward_leaves_input_positions_untouched(dynamics, methane):
    pos = methane.pos.clone()
    with torch.no_grad():
        dynamics(methane.atom_types, pos, methane.edge_index, 5)
    assert torch.equal(pos, methane.pos)


def test_rejects_out_of_range_atom_types(dynamics, methane):
    with pytest.raises(DataIntegrityError):
        dynamics(torch.tensor([6, 1, 1, 1, 10]), methane.pos, methane.edge_index, 1)
    with pytest.raises(DataIntegrityError):
        dynamics(torch.tensor([6.0, 1.0, 1.5, 1.0, 1.0]), methane.pos, methane.edge_index, 1)


def test_float_atom_types_are_accepted(dynamics, methane):
    with torch.no_grad():
        disp_long, _ = dynamics(methane.atom_types, methane.pos, methane.edge_index, 9)
        disp_float, _ = dynamics(methane.atom_types.float(), methane.pos, methane.edge_index, 9)
    assert torch.equal(disp_long, disp_float)


def test_nan_displacement_is_reset(dynamics, methane):
    pos = methane.pos.clone()
    pos[0, 0] = float("nan")
    with torch.no_grad():
        disp, cache = dynamics(methane.atom_types, pos, methane.edge_index, 1)
    assert cache.output_reset
    assert torch.equal(disp, torch.zeros_like(disp))
    dynamics.zero_grad()
    dynamics.backward(cache, torch.ones_like(disp))
    assert all(p.grad is None for p in dynamics.parameters())


def test_buffer_sets_are_reused_per_graph_size(dynamics, methane):
    with torch.no_grad():
        dynamics(methane.atom_types, methane.pos, methane.edge_index, 1)
        first = dynamics.buffers_for(5, 8, methane.pos.device, methane.pos.dtype)
        dynamics(methane.atom_types, methane.pos, methane.edge_index, 2)
    assert dynamics.buffers_for(5, 8, methane.pos.device, methane.pos.dtype) is first
    assert dynamics.buffers_for(6, 30, methane.pos.device, methane.pos.dtype) is not first
    assert len(first) == dynamics.num_layers
    assert first.signature == TensorBufferSet.make_signature(
        5, 8, dynamics.hidden_dim, dynamics.num_layers, methane.pos.device, methane.pos.dtype
    )
    # validation runs under inference mode and gets its own accumulators
    with torch.inference_mode():
        assert dynamics.buffers_for(5, 8, methane.pos.device, methane.pos.dtype) is not first


@pytest.mark.parametrize("center_output", [True, False])
def test_manual_backward_matches_autograd(center_output):
    torch.manual_seed(0)
    model = EGNNDynamics(num_atom_types=10, hidden_dim=8, num_layers=3, coord_init_gain=1.0, center_output=center_output)
    model = model.double()

    rng = np.random.default_rng(3)
    molecules = [random_molecule(4, rng), random_molecule(3, rng)]
    data = [molecule_to_data(m) for m in molecules]
    atom_types = torch.cat([d.atom_types for d in data])
    pos = torch.cat([d.pos for d in data]).double()
    edge_index = torch.cat([data[0].edge_index, data[1].edge_index + 4], dim=1)
    mol_batch = torch.tensor([0, 0, 0, 0, 1, 1, 1])
    target = torch.randn(7, 3, dtype=torch.float64)
    t = 23

    # hand-written gradients
    model.zero_grad()
    with torch.no_grad():
        disp, cache = model(atom_types, pos, edge_index, t, mol_batch=mol_batch, num_mols=2)
        diff = disp - target
        model.backward(cache, 2.0 * diff / diff.numel())
    check_gradient_buffers(model)
    manual = {name: p.grad.clone() for name, p in model.named_parameters()}

    # autograd reference
    model.zero_grad()
    disp, _ = model(atom_types, pos, edge_index, t, mol_batch=mol_batch, num_mols=2)
    loss = ((disp - target) ** 2).mean()
    names, params = zip(*model.named_parameters())
    expected = torch.autograd.grad(loss, params, allow_unused=True)

    # the last layer's node update never reaches the coordinates
    unused = [name for name, grad in zip(names, expected) if grad is None]
    assert sorted(unused) == sorted(
        name for name in names if name.startswith(f"layers.{model.num_layers - 1}.node_mlp.")
    )
    for name, grad in zip(names, expected):
        if grad is None:
            assert torch.count_nonzero(manual[name]) == 0, name
        else:
            assert torch.allclose(manual[name], grad, rtol=1e-6, atol=1e-9), name
