# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import os
import torch
import hydra
import pyrootutils

import pytorch_lightning as pl

from omegaconf import DictConfig
from pytorch_lightning import LightningModule
from torch_geometric.data import Data
from typing import Tuple

root = pyrootutils.setup_root(
    search_from=__file__,
    indicator=[".git", "pyproject.toml", "setup.py"],
    pythonpath=True,
    dotenv=True,
)

from src import utils
from src.datamodules.components.qm9_binary import QM9BinaryDataset, build_methane, molecule_to_data
from src.models.components import write_xyz_file
from src.models.components.checkpoint import load_coordinates, save_coordinates
from src.utils.pylogger import get_pylogger
from src.utils.utils import ConfigurationError

log = get_pylogger(__name__)


def load_template(cfg: DictConfig) -> Data:
    """Pick the molecule whose atom types and bonds the sampled coordinates will be attached to."""
    if cfg.template == "methane":
        return molecule_to_data(build_methane())
    if cfg.template == "dataset":
        dataset = QM9BinaryDataset(cfg.datamodule.dataloader_cfg.data_dir)
        return dataset.molecule(cfg.graph_id)
    raise ConfigurationError(f"Unknown template molecule `{cfg.template}`; expected `methane` or `dataset`")


@utils.task_wrapper
def sample(cfg: DictConfig) -> Tuple[dict, dict]:
    """Generates coordinates for a template molecule by reverse diffusion from a trained model.

    This method is wrapped in optional @task_wrapper decorator which applies extra utilities
    before and after the call.

    Args:
        cfg (DictConfig): Configuration composed by Hydra.

    Returns:
        Tuple[dict, dict]: Dict with metrics and dict with all instantiated objects.
    """

    device = utils.resolve_device(cfg.device)
    log.info(f"Sampling on device <{device}>")

    if cfg.get("seed"):
        pl.seed_everything(cfg.seed, workers=True)

    log.info(f"Instantiating model <{cfg.model._target_}>")
    model: LightningModule = hydra.utils.instantiate(cfg.model, path_cfg=cfg.paths)
    if cfg.get("ckpt_path") is not None:
        if not os.path.exists(cfg.ckpt_path):
            raise ConfigurationError(f"Requested ckpt {cfg.ckpt_path} not found")
        log.info(f"Loading checkpoint {cfg.ckpt_path}")
        model = type(model).load_from_checkpoint(cfg.ckpt_path, map_location="cpu", path_cfg=cfg.paths)
    elif cfg.get("weights_dir") is not None:
        log.info(f"Loading weight files from {cfg.weights_dir}")
        model.load_weights(cfg.weights_dir)
    else:
        log.warning("Neither `ckpt_path` nor `weights_dir` was given -> sampling with untrained weights")
    model = model.to(device)
    model.eval()

    graph = load_template(cfg).to(device)
    pos = None
    if cfg.get("init_coords_path") is not None:
        pos = load_coordinates(cfg.init_coords_path, graph.num_nodes).to(device)

    generator = None
    if cfg.get("seed"):
        generator = torch.Generator().manual_seed(cfg.seed)

    log.info(f"Running {model.ddpm.T} reverse diffusion steps on a {graph.num_nodes}-atom template")
    chain = model.sample(graph, pos=pos, generator=generator, return_frames=cfg.return_frames)
    coords = chain if cfg.return_frames == 1 else chain[0]

    os.makedirs(cfg.output_dir, exist_ok=True)
    coords_path = os.path.join(cfg.output_dir, f"{cfg.output_name}_coords.bin")
    xyz_path = os.path.join(cfg.output_dir, f"{cfg.output_name}.xyz")
    save_coordinates(coords_path, coords.cpu())
    write_xyz_file(coords.cpu(), graph.atom_types.cpu(), xyz_path, comment=f"{cfg.output_name} t=0")
    if cfg.return_frames > 1:
        for frame_index, frame in enumerate(chain):
            frame_path = os.path.join(cfg.output_dir, f"{cfg.output_name}_frame_{frame_index:03d}.xyz")
            write_xyz_file(frame.cpu(), graph.atom_types.cpu(), frame_path, comment=f"{cfg.output_name} frame {frame_index}")
    log.info(f"Saved sampled coordinates to {coords_path} and {xyz_path}")

    metric_dict = {
        "num_nodes": graph.num_nodes,
        "finite": bool(torch.isfinite(coords).all()),
        "max_abs_coord": coords.abs().max().item() if coords.numel() > 0 else 0.0,
    }
    object_dict = {
        "cfg": cfg,
        "model": model,
        "graph": graph,
        "coords": coords,
    }

    return metric_dict, object_dict


@hydra.main(version_base="1.2", config_path=str(root / "configs"), config_name="sample.yaml")
def main(cfg: DictConfig) -> None:
    sample(cfg)


if __name__ == "__main__":
    main()
