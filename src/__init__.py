# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import pytorch_lightning as pl

from typing import Literal, Optional

from typeguard import typechecked
from torchtyping import patch_typeguard

patch_typeguard()  # use before @typechecked

MODEL_WATCHING_LOGGERS = [pl.loggers.wandb.WandbLogger]


@typechecked
def watch_model(
    model: pl.LightningModule,
    logger: pl.loggers.logger.Logger,
    log: Optional[Literal["gradients", "parameters", "all"]] = "parameters",
    log_freq: int = 30,
    log_graph: bool = False
):
    logger.watch(model, log=log, log_freq=log_freq, log_graph=log_graph)


@typechecked
def unwatch_model(
    model: pl.LightningModule,
    logger: pl.loggers.logger.Logger
):
    logger.experiment.unwatch(model)
