# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import os

from typing import Any, Dict, Optional
from omegaconf import DictConfig

from pytorch_lightning import LightningDataModule
from torch_geometric.data import Data
from torch_geometric.loader import DataLoader

from src.datamodules.components.qm9_binary import (
    EDGES_FILENAME,
    METADATA_FILENAME,
    NODES_FILENAME,
    QM9BinaryDataset
)
from src.utils.pylogger import get_pylogger
from src.utils.utils import DataIntegrityError

log = get_pylogger(__name__)


class QM9BinaryDataModule(LightningDataModule):
    """
    A data wrapper for the packed binary QM9 record files. Each split is
    served as a single full batch holding all of its molecules.

    :param dataloader_cfg: configuration arguments for the QM9 dataloaders.
    """

    def __init__(self, dataloader_cfg: DictConfig):
        super().__init__()

        # this line allows to access init params with `self.hparams` attribute
        # also ensures init params will be stored in ckpt
        self.save_hyperparameters(logger=False)

        self.dataset: Optional[QM9BinaryDataset] = None
        self.data_train: Optional[Data] = None
        self.data_val: Optional[Data] = None

    def prepare_data(self):
        """Check that the record files are in place.

        Do not use it to assign state (e.g., self.x = y).
        """
        data_dir = self.hparams.dataloader_cfg.data_dir
        missing = [
            filename for filename in (NODES_FILENAME, EDGES_FILENAME, METADATA_FILENAME)
            if not os.path.exists(os.path.join(data_dir, filename))
        ]
        if missing:
            raise DataIntegrityError(f"Dataset directory {data_dir} is missing {', '.join(missing)}")

    def setup(self, stage: Optional[str] = None):
        """Load data. Set variables: `self.data_train`, `self.data_val`.

        Note: This method is called by Lightning with both `trainer.fit()` and `trainer.test()`.
        """
        # load splits only if not loaded already
        if self.data_train is None:
            self.dataset = QM9BinaryDataset(self.hparams.dataloader_cfg.data_dir)
            self.data_train, self.data_val = self.dataset.split(self.hparams.dataloader_cfg.train_fraction)
            if self.data_val is None:
                log.warning("Validation split is empty -> validating on the train split instead")
                self.data_val = self.data_train
            log.info(
                f"Train split: {self.data_train.num_nodes} nodes, {self.data_train.num_edges} edges | "
                f"Val split: {self.data_val.num_nodes} nodes, {self.data_val.num_edges} edges"
            )

    def full_batch_loader(self, data: Data) -> DataLoader:
        return DataLoader(
            [data],
            batch_size=1,
            shuffle=False,
            num_workers=self.hparams.dataloader_cfg.get("num_workers", 0),
            pin_memory=self.hparams.dataloader_cfg.get("pin_memory", False)
        )

    def train_dataloader(self):
        return self.full_batch_loader(self.data_train)

    def val_dataloader(self):
        return self.full_batch_loader(self.data_val)

    def test_dataloader(self):
        return self.full_batch_loader(self.data_val)

    def state_dict(self):
        """Extra things to save to checkpoint."""
        return {}

    def load_state_dict(self, state_dict: Dict[str, Any]):
        """Things to do when loading checkpoint."""
        pass
