# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import math
import os
import torch

import numpy as np

from dataclasses import dataclass
from pathlib import Path
from torch_geometric.data import Data
from typing import Optional, Sequence, Tuple, Union

from src.utils.pylogger import get_pylogger
from src.utils.utils import ConfigurationError, DataIntegrityError

log = get_pylogger(__name__)

NODES_FILENAME = "qm9_nodes.bin"
EDGES_FILENAME = "qm9_edges.bin"
METADATA_FILENAME = "qm9_metadata.bin"

# x, y, z, atom type
NODE_DTYPE = np.dtype([("pos", "<f4", (3,)), ("atom_type", "<f4")])
# global source and destination node indices
EDGE_DTYPE = np.dtype([("src", "<i4"), ("dst", "<i4")])
# per-molecule node range and edge count
METADATA_DTYPE = np.dtype([("node_start", "<i4"), ("node_count", "<i4"), ("edge_count", "<i4")])


@dataclass
class Molecule:
    """A single molecule with node-local edge indices."""
    pos: np.ndarray  # [num_nodes, 3]
    atom_types: np.ndarray  # [num_nodes]
    edges: np.ndarray  # [num_edges, 2] as (src, dst)

    @property
    def num_nodes(self) -> int:
        return len(self.atom_types)

    @property
    def num_edges(self) -> int:
        return len(self.edges)


def build_methane() -> Molecule:
    """Tetrahedral methane (C-H bond length 1.09 Angstrom) with both directions of every C-H bond."""
    bond = 1.09 / math.sqrt(3.0)
    pos = np.array(
        [
            [0.0, 0.0, 0.0],
            [bond, bond, bond],
            [bond, -bond, -bond],
            [-bond, bond, -bond],
            [-bond, -bond, bond],
        ],
        dtype=np.float32
    )
    atom_types = np.array([6, 1, 1, 1, 1], dtype=np.float32)
    edges = []
    for hydrogen in range(1, 5):
        edges.append((0, hydrogen))
        edges.append((hydrogen, 0))
    return Molecule(pos=pos, atom_types=atom_types, edges=np.array(edges, dtype=np.int32))


def molecule_to_data(molecule: Molecule) -> Data:
    num_nodes = molecule.num_nodes
    return Data(
        pos=torch.from_numpy(np.ascontiguousarray(molecule.pos, dtype=np.float32)),
        atom_types=torch.from_numpy(np.rint(molecule.atom_types).astype(np.int64)),
        edge_index=torch.from_numpy(np.ascontiguousarray(molecule.edges, dtype=np.int64).reshape(-1, 2).T.copy()),
        mol_batch=torch.zeros(num_nodes, dtype=torch.long),
        num_nodes=num_nodes
    )


def write_binary_dataset(directory: Union[str, Path], molecules: Sequence[Molecule]):
    """Pack `molecules` into the three record files, rewriting edges to global node indices."""
    os.makedirs(directory, exist_ok=True)
    num_nodes = sum(m.num_nodes for m in molecules)
    num_edges = sum(m.num_edges for m in molecules)
    nodes = np.zeros(num_nodes, dtype=NODE_DTYPE)
    edges = np.zeros(num_edges, dtype=EDGE_DTYPE)
    metadata = np.zeros(len(molecules), dtype=METADATA_DTYPE)

    node_start, edge_start = 0, 0
    for i, molecule in enumerate(molecules):
        node_stop, edge_stop = node_start + molecule.num_nodes, edge_start + molecule.num_edges
        nodes["pos"][node_start:node_stop] = molecule.pos
        nodes["atom_type"][node_start:node_stop] = molecule.atom_types
        local_edges = np.asarray(molecule.edges, dtype=np.int64).reshape(-1, 2)
        edges["src"][edge_start:edge_stop] = local_edges[:, 0] + node_start
        edges["dst"][edge_start:edge_stop] = local_edges[:, 1] + node_start
        metadata[i] = (node_start, molecule.num_nodes, molecule.num_edges)
        node_start, edge_start = node_stop, edge_stop

    nodes.tofile(os.path.join(directory, NODES_FILENAME))
    edges.tofile(os.path.join(directory, EDGES_FILENAME))
    metadata.tofile(os.path.join(directory, METADATA_FILENAME))
    log.info(f"Wrote {len(molecules)} molecules ({num_nodes} nodes, {num_edges} edges) to {directory}")


def read_records(path: Union[str, Path], dtype: np.dtype) -> np.ndarray:
    if not os.path.exists(path):
        raise DataIntegrityError(f"Dataset file {path} does not exist")
    num_bytes = os.path.getsize(path)
    if num_bytes % dtype.itemsize != 0:
        raise DataIntegrityError(
            f"Dataset file {path} holds {num_bytes} bytes, which is not a multiple of its {dtype.itemsize}-byte records"
        )
    if num_bytes == 0:
        # empty files cannot be memory-mapped
        return np.zeros(0, dtype=dtype)
    return np.memmap(path, dtype=dtype, mode="r")


class QM9BinaryDataset:
    """Memory-mapped view of a packed set of molecules.

    Node records hold coordinates and a float atom type, edge records hold global node indices,
    and one metadata record per molecule gives its node range and edge count. Edges are stored
    contiguously per molecule, in metadata order.
    """

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir)
        self.nodes = read_records(self.data_dir / NODES_FILENAME, NODE_DTYPE)
        self.edges = read_records(self.data_dir / EDGES_FILENAME, EDGE_DTYPE)
        self.metadata = read_records(self.data_dir / METADATA_FILENAME, METADATA_DTYPE)

        self.node_starts = np.asarray(self.metadata["node_start"], dtype=np.int64)
        self.node_counts = np.asarray(self.metadata["node_count"], dtype=np.int64)
        self.edge_counts = np.asarray(self.metadata["edge_count"], dtype=np.int64)
        self.edge_starts = np.concatenate([[0], np.cumsum(self.edge_counts)[:-1]]).astype(np.int64)
        self.validate()
        log.info(
            f"Loaded {self.num_graphs} molecules ({len(self.nodes)} nodes, {len(self.edges)} edges) from {self.data_dir}"
        )

    @property
    def num_graphs(self) -> int:
        return len(self.metadata)

    def __len__(self) -> int:
        return self.num_graphs

    def validate(self):
        if self.num_graphs == 0:
            if len(self.nodes) or len(self.edges):
                raise DataIntegrityError("Node or edge records exist without any molecule metadata")
            return
        if (self.node_counts < 0).any() or (self.edge_counts < 0).any():
            raise DataIntegrityError("Molecule metadata holds negative node or edge counts")
        expected_starts = np.concatenate([[0], np.cumsum(self.node_counts)[:-1]])
        if not np.array_equal(self.node_starts, expected_starts):
            bad = int(np.argmax(self.node_starts != expected_starts))
            raise DataIntegrityError(
                f"Molecule {bad} starts at node {self.node_starts[bad]}, but the node ranges are contiguous "
                f"and it should start at {expected_starts[bad]}"
            )
        if self.node_counts.sum() != len(self.nodes):
            raise DataIntegrityError(
                f"Molecule metadata covers {self.node_counts.sum()} nodes, but {len(self.nodes)} node records exist"
            )
        if self.edge_counts.sum() != len(self.edges):
            raise DataIntegrityError(
                f"Molecule metadata covers {self.edge_counts.sum()} edges, but {len(self.edges)} edge records exist"
            )

        # each edge must stay within its own molecule's node range
        edge_mols = np.repeat(np.arange(self.num_graphs), self.edge_counts)
        low = self.node_starts[edge_mols]
        high = low + self.node_counts[edge_mols]
        for key in ("src", "dst"):
            endpoints = np.asarray(self.edges[key], dtype=np.int64)
            outside = (endpoints < low) | (endpoints >= high)
            if outside.any():
                bad = int(np.argmax(outside))
                raise DataIntegrityError(
                    f"Edge {bad} has {key} node {endpoints[bad]} outside molecule {edge_mols[bad]}'s "
                    f"node range [{low[bad]}, {high[bad]})"
                )

        atom_types = np.asarray(self.nodes["atom_type"])
        if not np.isfinite(atom_types).all() or not np.array_equal(atom_types, np.rint(atom_types)):
            raise DataIntegrityError("Atom types must be finite integral values")

    def pack(self, start: int, stop: int) -> Optional[Data]:
        """Pack molecules `[start, stop)` into one graph with edges rebased to its first node."""
        if not 0 <= start <= stop <= self.num_graphs:
            raise IndexError(f"Molecule range [{start}, {stop}) lies outside [0, {self.num_graphs})")
        if start == stop:
            return None
        node_lo = int(self.node_starts[start])
        node_hi = int(self.node_starts[stop - 1] + self.node_counts[stop - 1])
        edge_lo = int(self.edge_starts[start])
        edge_hi = int(self.edge_starts[stop - 1] + self.edge_counts[stop - 1])

        nodes = self.nodes[node_lo:node_hi]
        edges = self.edges[edge_lo:edge_hi]
        edge_index = np.stack([
            np.asarray(edges["src"], dtype=np.int64) - node_lo,
            np.asarray(edges["dst"], dtype=np.int64) - node_lo,
        ])
        mol_batch = np.repeat(np.arange(stop - start), self.node_counts[start:stop])
        return Data(
            pos=torch.from_numpy(np.array(nodes["pos"], dtype=np.float32)),
            atom_types=torch.from_numpy(np.rint(nodes["atom_type"]).astype(np.int64)),
            edge_index=torch.from_numpy(edge_index),
            mol_batch=torch.from_numpy(mol_batch.astype(np.int64)),
            num_nodes=node_hi - node_lo
        )

    def molecule(self, graph_id: int) -> Data:
        if not 0 <= graph_id < self.num_graphs:
            raise IndexError(f"Molecule {graph_id} lies outside [0, {self.num_graphs})")
        return self.pack(graph_id, graph_id + 1)

    def split(self, train_fraction: float = 0.8) -> Tuple[Data, Optional[Data]]:
        """Pack the leading molecules into a train graph and the remainder into a validation graph."""
        if self.num_graphs == 0:
            raise DataIntegrityError(f"Dataset at {self.data_dir} holds no molecules")
        if not 0.0 < train_fraction <= 1.0:
            raise ConfigurationError(f"The train fraction must lie in (0, 1], not {train_fraction}")
        num_train = min(max(math.ceil(train_fraction * self.num_graphs), 1), self.num_graphs)
        return self.pack(0, num_train), self.pack(num_train, self.num_graphs)

