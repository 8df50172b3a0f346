import numpy as np
import pytest
import torch

from torch_geometric.data import Data

from src.datamodules.components.qm9_binary import Molecule, build_methane, molecule_to_data
from src.models.components.ddpm import EquivariantDDPM
from src.models.components.egnn import EGNNDynamics


def random_molecule(num_nodes: int, rng: np.random.Generator, max_atom_type: int = 9) -> Molecule:
    """A fully connected molecule with random coordinates and atom types."""
    pos = rng.normal(scale=1.5, size=(num_nodes, 3)).astype(np.float32)
    atom_types = rng.integers(1, max_atom_type + 1, size=num_nodes).astype(np.float32)
    edges = np.array(
        [(src, dst) for src in range(num_nodes) for dst in range(num_nodes) if src != dst],
        dtype=np.int32
    ).reshape(-1, 2)
    return Molecule(pos=pos, atom_types=atom_types, edges=edges)


@pytest.fixture
def methane() -> Data:
    return molecule_to_data(build_methane())


@pytest.fixture
def molecules():
    rng = np.random.default_rng(7)
    return [build_methane()] + [random_molecule(n, rng) for n in (3, 6, 4, 5)]


@pytest.fixture
def dynamics() -> EGNNDynamics:
    torch.manual_seed(0)
    return EGNNDynamics(num_atom_types=10, hidden_dim=16, num_layers=3)


@pytest.fixture
def ddpm(dynamics) -> EquivariantDDPM:
    return EquivariantDDPM(dynamics, num_timesteps=50)
