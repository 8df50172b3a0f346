# -------------------------------------------------------------------------------------------------------------------------------------
# Following code curated for EGNN-Diffusion:
# -------------------------------------------------------------------------------------------------------------------------------------

import os
import torch

import numpy as np
import torch.nn as nn

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence, Union

from torchtyping import TensorType, patch_typeguard
from typeguard import typechecked

from src.utils.pylogger import get_pylogger
from src.utils.utils import DataIntegrityError

patch_typeguard()  # use before @typechecked

log = get_pylogger(__name__)

FLOAT32 = np.dtype("<f4")
WEIGHT_FILE_EXTENSION = ".bin"


@dataclass
class WeightLoadReport:
    loaded: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    padded: List[str] = field(default_factory=list)
    replaced: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not (self.missing or self.padded or self.replaced)


def tensor_to_bytes(tensor: torch.Tensor) -> bytes:
    """Serialize a tensor as flat little-endian float32 values."""
    return tensor.detach().to("cpu", torch.float32).contiguous().numpy().astype(FLOAT32, copy=False).tobytes()


@typechecked
def tensor_from_bytes(
    data: bytes,
    shape: Sequence[int],
    strict: bool = False,
    name: str = "tensor"
) -> torch.Tensor:
    """Decode flat float32 values into a tensor of `shape`, checking the byte length first.

    Outside of strict mode, a short payload is zero-padded (dropping any trailing partial value)
    and an oversized one is replaced by zeros.
    """
    numel = int(np.prod(shape)) if len(shape) > 0 else 1
    expected = numel * FLOAT32.itemsize
    if len(data) == expected:
        values = np.frombuffer(data, dtype=FLOAT32).copy()
    elif strict:
        raise DataIntegrityError(f"{name} holds {len(data)} bytes, but {tuple(shape)} requires {expected}")
    elif len(data) < expected:
        log.warning(f"{name} holds {len(data)} of {expected} bytes -> zero-padding the remainder")
        usable = len(data) - len(data) % FLOAT32.itemsize
        values = np.zeros(numel, dtype=FLOAT32)
        values[:usable // FLOAT32.itemsize] = np.frombuffer(data[:usable], dtype=FLOAT32)
    else:
        log.warning(f"{name} holds {len(data)} bytes, more than the {expected} expected -> using zeros")
        values = np.zeros(numel, dtype=FLOAT32)
    return torch.from_numpy(values.reshape(tuple(shape)))


def weight_file_path(directory: Union[str, Path], name: str) -> Path:
    return Path(directory, name + WEIGHT_FILE_EXTENSION)


@typechecked
def save_weight_files(module: nn.Module, directory: Union[str, Path]) -> List[Path]:
    """Write each named tensor of `module` to `<directory>/<name>.bin`."""
    os.makedirs(directory, exist_ok=True)
    paths = []
    for name, tensor in module.state_dict().items():
        path = weight_file_path(directory, name)
        with open(path, "wb") as f:
            f.write(tensor_to_bytes(tensor))
        paths.append(path)
    log.info(f"Saved {len(paths)} weight files to {directory}")
    return paths


@typechecked
def load_weight_files(
    module: nn.Module,
    directory: Union[str, Path],
    strict: bool = False
) -> WeightLoadReport:
    """Fill every named tensor of `module` from `<directory>/<name>.bin`.

    Absent files leave a zero-filled tensor behind, with a warning, unless `strict` is set.
    """
    if not os.path.isdir(directory):
        raise DataIntegrityError(f"Weight directory {directory} does not exist")

    report = WeightLoadReport()
    state_dict = module.state_dict()
    new_state_dict = {}
    for name, tensor in state_dict.items():
        path = weight_file_path(directory, name)
        if not path.exists():
            if strict:
                raise DataIntegrityError(f"Weight file {path} is missing")
            log.warning(f"Weight file {path} is missing -> using zeros for {name}")
            new_state_dict[name] = torch.zeros_like(tensor)
            report.missing.append(name)
            continue
        data = path.read_bytes()
        expected = tensor.numel() * FLOAT32.itemsize
        values = tensor_from_bytes(data, tuple(tensor.shape), strict=strict, name=name)
        if len(data) < expected:
            report.padded.append(name)
        elif len(data) > expected:
            report.replaced.append(name)
        else:
            report.loaded.append(name)
        new_state_dict[name] = values.to(device=tensor.device, dtype=tensor.dtype)
    module.load_state_dict(new_state_dict)
    log.info(
        f"Loaded {len(report.loaded)} weight tensors from {directory} "
        f"({len(report.missing)} missing, {len(report.padded)} padded, {len(report.replaced)} replaced)"
    )
    return report


@typechecked
def save_coordinates(path: Union[str, Path], pos: TensorType["num_nodes", 3]):
    with open(path, "wb") as f:
        f.write(tensor_to_bytes(pos))


@typechecked
def load_coordinates(path: Union[str, Path], num_nodes: int) -> TensorType["num_nodes", 3]:
    if not os.path.exists(path):
        raise DataIntegrityError(f"Coordinate file {path} does not exist")
    with open(path, "rb") as f:
        return tensor_from_bytes(f.read(), (num_nodes, 3), strict=True, name=str(path))
