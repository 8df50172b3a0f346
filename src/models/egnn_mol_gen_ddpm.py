# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import os
import torch
import torchmetrics

from pathlib import Path
from pytorch_lightning import LightningModule
from torch_geometric.data import Data
from typing import Any, Dict, Optional, Union
from omegaconf import DictConfig

from src.models import get_grad_norm
from src.models.components.buffers import check_gradient_buffers
from src.models.components.checkpoint import WeightLoadReport, load_weight_files, save_weight_files
from src.models.components.ddpm import EquivariantDDPM, StepOutput
from src.models.components.egnn import EGNNDynamics

from typeguard import typechecked
from torchtyping import TensorType, patch_typeguard

from src.utils.pylogger import get_pylogger

patch_typeguard()  # use before @typechecked


log = get_pylogger(__name__)


class EGNNMoleculeGenerationDDPM(LightningModule):
    """LightningModule for denoising small-molecule coordinates using an EGNN-based DDPM.

    Gradients come from the diffusion engine's own backward pass, so this module optimizes
    manually. This LightningModule organizes the PyTorch code into 8 sections:
        - Computations (init)
        - Forward (forward)
        - Train loop (training_step)
        - Validation loop (validation_step)
        - Test loop (test_step)
        - End of each training epoch (on_train_epoch_end)
        - Optimizers and LR schedulers (configure_optimizers)
        - End of model training (on_fit_end)
    """

    def __init__(
        self,
        optimizer: torch.optim.Optimizer,
        scheduler: torch.optim.lr_scheduler,
        model_cfg: DictConfig,
        diffusion_cfg: DictConfig,
        path_cfg: DictConfig = None,
        **kwargs
    ):
        super().__init__()

        # this line allows to access init params with `self.hparams` attribute
        # also ensures init params will be stored in ckpt
        self.save_hyperparameters(logger=False)

        # gradients are produced by the engine's manual backward pass
        self.automatic_optimization = False

        # network and diffusion #
        dynamics = EGNNDynamics(
            num_atom_types=model_cfg.num_atom_types,
            hidden_dim=model_cfg.hidden_dim,
            num_layers=model_cfg.num_layers,
            coord_init_gain=model_cfg.coord_init_gain,
            center_output=model_cfg.center_output
        )
        self.ddpm = EquivariantDDPM(
            dynamics,
            num_timesteps=diffusion_cfg.num_timesteps,
            beta_start=diffusion_cfg.beta_start,
            beta_end=diffusion_cfg.beta_end
        )
        self.val_seed = diffusion_cfg.get("val_seed", 0)

        # metrics #
        self.train_phase, self.val_phase, self.test_phase = "train", "val", "test"
        self.phases = [self.train_phase, self.val_phase, self.test_phase]
        self.metrics_to_monitor = ["loss", "t"]
        for phase in self.phases:
            for metric in self.metrics_to_monitor:
                # note: individual metrics e.g., for averaging loss across batches
                setattr(self, f"{phase}_{metric}", torchmetrics.MeanMetric())
        self.train_grad_norm = torchmetrics.MeanMetric()

        # latest scalar losses, reported once per epoch
        self.last_losses: Dict[str, Optional[float]] = {self.train_phase: None, self.val_phase: None}

    @typechecked
    def forward(self, batch: Data) -> StepOutput:
        # fixed timestep and noise on every call
        generator = torch.Generator().manual_seed(self.val_seed)
        return self.ddpm.evaluate(batch, generator=generator)

    def update_metrics(self, phase: str, output: StepOutput):
        getattr(self, f"{phase}_loss")(output.loss)
        getattr(self, f"{phase}_t")(float(output.t))
        for metric in self.metrics_to_monitor:
            self.log(
                f"{phase}/{metric}",
                getattr(self, f"{phase}_{metric}"),
                on_step=False,
                on_epoch=True,
                prog_bar=(metric == "loss"),
                batch_size=1
            )

    def training_step(self, batch: Data, batch_idx: int) -> Optional[Dict[str, Any]]:
        optimizer = self.optimizers()
        optimizer.zero_grad()
        try:
            output = self.ddpm.training_step(batch)
        except RuntimeError as e:
            if "CUDA out of memory" not in str(e):
                raise(e)
            torch.cuda.empty_cache()
            log.info(f"Skipping training batch with index {batch_idx} due to OOM error...")
            return

        check_gradient_buffers(self.ddpm.dynamics)
        self.train_grad_norm(get_grad_norm(self.ddpm.dynamics.parameters()))
        self.log("train/grad_norm", self.train_grad_norm, on_step=False, on_epoch=True, batch_size=1)
        optimizer.step()

        # the host waits on the loss once per step
        self.last_losses[self.train_phase] = output.loss.item()
        self.update_metrics(self.train_phase, output)
        return {"loss": output.loss, "t": output.t}

    def validation_step(self, batch: Data, batch_idx: int) -> Dict[str, Any]:
        output = self(batch)
        self.last_losses[self.val_phase] = output.loss.item()
        self.update_metrics(self.val_phase, output)
        return {"loss": output.loss, "t": output.t}

    def test_step(self, batch: Data, batch_idx: int) -> Dict[str, Any]:
        output = self(batch)
        self.update_metrics(self.test_phase, output)
        return {"loss": output.loss, "t": output.t}

    @property
    def current_lr(self) -> float:
        return self.optimizers().optimizer.param_groups[0]["lr"]

    def on_train_epoch_end(self):
        # the learning rate in the summary line is the one the finished epoch trained with
        lr = self.current_lr
        scheduler = self.lr_schedulers()
        if scheduler is not None:
            scheduler.step()

        train_loss, val_loss = self.last_losses[self.train_phase], self.last_losses[self.val_phase]
        log.info(
            f"Epoch {self.current_epoch + 1} | "
            f"Train: {'n/a' if train_loss is None else f'{train_loss:.6f}'} | "
            f"Val: {'n/a' if val_loss is None else f'{val_loss:.6f}'} | "
            f"LR: {lr:.2e}"
        )

    @torch.no_grad()
    @typechecked
    def sample(
        self,
        graph: Data,
        pos: Optional[TensorType["num_nodes", 3]] = None,
        generator: Optional[torch.Generator] = None,
        return_frames: int = 1
    ) -> torch.Tensor:
        return self.ddpm.sample(graph, pos=pos, generator=generator, return_frames=return_frames)

    @typechecked
    def save_weights(self, directory: Union[str, Path]):
        save_weight_files(self.ddpm.dynamics, directory)

    @typechecked
    def load_weights(self, directory: Union[str, Path], strict: bool = False) -> WeightLoadReport:
        return load_weight_files(self.ddpm.dynamics, directory, strict=strict)

    def configure_optimizers(self) -> Dict[str, Any]:
        """Choose what optimizers and learning-rate schedulers to use in your optimization.

        Examples:
            https://pytorch-lightning.readthedocs.io/en/latest/common/lightning_module.html#configure-optimizers
        """
        optimizer = self.hparams.optimizer(params=self.ddpm.dynamics.parameters())
        if self.hparams.scheduler is not None:
            scheduler = self.hparams.scheduler(optimizer=optimizer)
            return {
                "optimizer": optimizer,
                "lr_scheduler": {
                    "scheduler": scheduler,
                    "interval": "epoch",
                    "frequency": 1,
                },
            }
        return {"optimizer": optimizer}

    def on_fit_end(self):
        """Lightning calls this upon completion of the user's call to `trainer.fit()` for model training.
        For example, Lightning will call this hook upon exceeding `trainer.max_epochs` in model training.
        """
        if self.trainer.is_global_zero:
            path_cfg = self.hparams.path_cfg
            if path_cfg is not None and path_cfg.get("output_dir") is not None:
                self.save_weights(os.path.join(path_cfg.output_dir, "weights"))
        return super().on_fit_end()


if __name__ == "__main__":
    import hydra
    import omegaconf
    import pyrootutils

    root = pyrootutils.setup_root(__file__, indicator=[".git", "pyproject.toml", "setup.py"], pythonpath=True)
    cfg = omegaconf.OmegaConf.load(root / "configs" / "model" / "egnn_mol_gen_ddpm.yaml")
    _ = hydra.utils.instantiate(cfg)
