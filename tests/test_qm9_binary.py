import os

import numpy as np
import pytest
import torch

from src.datamodules.components.qm9_binary import (
    EDGES_FILENAME,
    METADATA_DTYPE,
    METADATA_FILENAME,
    NODES_FILENAME,
    QM9BinaryDataset,
    build_methane,
    write_binary_dataset,
)
from src.datamodules.qm9_datamodule import QM9BinaryDataModule
from src.utils.utils import ConfigurationError, DataIntegrityError

from omegaconf import OmegaConf


def test_record_sizes(tmp_path, molecules):
    write_binary_dataset(tmp_path, molecules)
    num_nodes = sum(m.num_nodes for m in molecules)
    num_edges = sum(m.num_edges for m in molecules)
    assert os.path.getsize(tmp_path / NODES_FILENAME) == 16 * num_nodes
    assert os.path.getsize(tmp_path / EDGES_FILENAME) == 8 * num_edges
    assert os.path.getsize(tmp_path / METADATA_FILENAME) == 12 * len(molecules)


def test_methane_template():
    methane = build_methane()
    assert methane.atom_types.tolist() == [6, 1, 1, 1, 1]
    assert methane.num_edges == 8
    bond_lengths = np.linalg.norm(methane.pos[1:] - methane.pos[0], axis=-1)
    assert np.allclose(bond_lengths, 1.09, atol=1e-5)


def test_molecules_are_read_back(tmp_path, molecules):
    write_binary_dataset(tmp_path, molecules)
    dataset = QM9BinaryDataset(tmp_path)
    assert len(dataset) == len(molecules)
    for i, molecule in enumerate(molecules):
        graph = dataset.molecule(i)
        assert graph.num_nodes == molecule.num_nodes
        assert torch.allclose(graph.pos, torch.from_numpy(molecule.pos))
        assert graph.atom_types.dtype == torch.long
        assert graph.atom_types.tolist() == molecule.atom_types.astype(int).tolist()
        assert graph.edge_index.T.tolist() == molecule.edges.tolist()


def test_split_falls_on_molecule_boundaries(tmp_path, molecules):
    write_binary_dataset(tmp_path, molecules)
    dataset = QM9BinaryDataset(tmp_path)
    train, val = dataset.split(0.5)

    # ceil(0.5 * 5) = 3 molecules for training
    assert train.mol_batch.max().item() == 2
    assert train.num_nodes == sum(m.num_nodes for m in molecules[:3])
    assert val.num_nodes == sum(m.num_nodes for m in molecules[3:])
    assert val.mol_batch.tolist() == [0] * molecules[3].num_nodes + [1] * molecules[4].num_nodes
    for graph in (train, val):
        assert graph.edge_index.min() >= 0 and graph.edge_index.max() < graph.num_nodes
        # edges never cross molecules
        assert torch.equal(graph.mol_batch[graph.edge_index[0]], graph.mol_batch[graph.edge_index[1]])


def test_split_keeps_at_least_one_training_molecule(tmp_path, molecules):
    write_binary_dataset(tmp_path, molecules[:2])
    dataset = QM9BinaryDataset(tmp_path)
    train, val = dataset.split(0.01)
    assert train.mol_batch.max().item() == 0
    assert val is not None

    train, val = dataset.split(1.0)
    assert val is None
    with pytest.raises(ConfigurationError):
        dataset.split(0.0)


def test_missing_file(tmp_path, molecules):
    write_binary_dataset(tmp_path, molecules)
    os.remove(tmp_path / EDGES_FILENAME)
    with pytest.raises(DataIntegrityError):
        QM9BinaryDataset(tmp_path)


def test_truncated_record(tmp_path, molecules):
    write_binary_dataset(tmp_path, molecules)
    path = tmp_path / NODES_FILENAME
    path.write_bytes(path.read_bytes()[:-3])
    with pytest.raises(DataIntegrityError):
        QM9BinaryDataset(tmp_path)


def test_non_contiguous_metadata(tmp_path, molecules):
    write_binary_dataset(tmp_path, molecules)
    metadata = np.fromfile(tmp_path / METADATA_FILENAME, dtype=METADATA_DTYPE)
    metadata["node_start"][1] += 1
    metadata.tofile(tmp_path / METADATA_FILENAME)
    with pytest.raises(DataIntegrityError):
        QM9BinaryDataset(tmp_path)


def test_edge_outside_its_molecule(tmp_path, molecules):
    molecules[1].edges[0] = (0, molecules[1].num_nodes)
    write_binary_dataset(tmp_path, molecules)
    with pytest.raises(DataIntegrityError):
        QM9BinaryDataset(tmp_path)


def test_datamodule_serves_full_batches(tmp_path, molecules):
    write_binary_dataset(tmp_path, molecules)
    datamodule = QM9BinaryDataModule(OmegaConf.create({"data_dir": str(tmp_path), "train_fraction": 0.8}))
    datamodule.prepare_data()
    datamodule.setup()

    train_batches = list(datamodule.train_dataloader())
    assert len(train_batches) == 1
    assert train_batches[0].num_nodes == sum(m.num_nodes for m in molecules[:4])
    assert train_batches[0].mol_batch.max().item() == 3
    assert len(list(datamodule.val_dataloader())) == 1
    assert list(datamodule.test_dataloader())[0].num_nodes == molecules[4].num_nodes


def test_datamodule_reports_missing_files(tmp_path):
    datamodule = QM9BinaryDataModule(OmegaConf.create({"data_dir": str(tmp_path), "train_fraction": 0.8}))
    with pytest.raises(DataIntegrityError):
        datamodule.prepare_data()
