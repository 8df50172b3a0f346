# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import torch

from pathlib import Path
from torch_geometric.utils import scatter
from typing import Dict, Optional, Tuple, Union

from torchtyping import TensorType, patch_typeguard
from typeguard import typechecked

from src.utils.pylogger import get_pylogger

patch_typeguard()  # use before @typechecked

log = get_pylogger(__name__)

# atom types are stored as atomic numbers
ATOM_SYMBOLS: Dict[int, str] = {1: "H", 6: "C", 7: "N", 8: "O", 9: "F"}


@typechecked
def centralize(
    x: TensorType["num_nodes", "num_dims"],
    mol_batch: Optional[TensorType["num_nodes"]] = None,
    num_mols: Optional[int] = None
) -> Tuple[torch.Tensor, TensorType["num_nodes", "num_dims"]]:
    """Subtract from each row the mean of the rows belonging to the same molecule.

    Without `mol_batch` all rows are treated as one molecule. Returns the
    per-molecule centroids alongside the centered values.
    """
    if x.shape[0] == 0:
        return x.new_zeros((num_mols or 0, x.shape[-1])), x.clone()
    if mol_batch is None:
        entities_centroid = x.mean(dim=0, keepdim=True)
        return entities_centroid, x - entities_centroid
    # derive centroid of each molecule, and center entities using corresponding centroids
    entities_centroid = scatter(x, mol_batch, dim=0, dim_size=num_mols, reduce="mean")  # e.g., [num_mols, 3]
    entities_centered = x - entities_centroid[mol_batch]
    return entities_centroid, entities_centered


@typechecked
def sample_center_gravity_zero_gaussian(
    size: Union[torch.Size, Tuple[int, ...]],
    device: Union[torch.device, str],
    mol_batch: Optional[TensorType["num_nodes"]] = None,
    num_mols: Optional[int] = None,
    generator: Optional[torch.Generator] = None
) -> torch.Tensor:
    assert len(size) == 2
    # draw on the generator's own device so that seeded runs agree across accelerators
    draw_device = generator.device if generator is not None else device
    x = torch.randn(size, generator=generator, device=draw_device).to(device)
    # note: this projection only works because Gaussians are
    # rotation-invariant around zero and their samples are independent!
    _, x_projected = centralize(x, mol_batch, num_mols)
    return x_projected


@typechecked
def assert_mean_zero(
    x: TensorType["num_nodes", 3],
    mol_batch: Optional[TensorType["num_nodes"]] = None,
    num_mols: Optional[int] = None,
    eps: float = 1e-10
):
    if x.shape[0] == 0:
        return
    largest_value = x.abs().max().item()
    centroid, _ = centralize(x, mol_batch, num_mols)
    error = centroid.abs().max().item()
    rel_error = error / (largest_value + eps)
    assert rel_error < 1e-2, f"Mean is not zero, as relative_error {rel_error}"


@typechecked
def write_xyz_file(
    positions: TensorType["num_nodes", 3],
    atom_types: TensorType["num_nodes"],
    filename: Union[str, Path],
    comment: str = ""
):
    out = f"{len(positions)}\n{comment}\n"
    for i in range(len(positions)):
        atom = ATOM_SYMBOLS.get(int(atom_types[i]), "X")
        out += f"{atom} {positions[i, 0]:.6f} {positions[i, 1]:.6f} {positions[i, 2]:.6f}\n"
    with open(filename, "w") as f:
        f.write(out)
    log.info(f"Wrote {len(positions)} atoms to XYZ file {filename}")
